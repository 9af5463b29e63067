"""Async SQLAlchemy engine, declarative bases and tenant-scoped sessions.

Two metadata objects split the tables: ``shared`` (the tenant registry)
and the placeholder schema ``tenant``, remapped per connection with
schema_translate_map to ``tenant_<slug>``. Every tenant session also sets
``app.current_tenant_id`` so the RLS policies on tenant tables admit only
that tenant's rows; connections are ``RESET ALL`` on checkout so the
setting never survives into another request.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import MetaData, event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.app.config import get_settings
from src.app.core.tenant import TenantContext, get_current_tenant

NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_N_name)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

_engine: AsyncEngine | None = None


def _reset_session_state(dbapi_conn: Any, connection_record: Any, connection_proxy: Any) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("RESET ALL")
    cursor.close()


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
        event.listen(_engine.sync_engine, "checkout", _reset_session_state)
    return _engine


class SharedBase(DeclarativeBase):
    metadata = MetaData(schema="shared", naming_convention=NAMING_CONVENTION)


class TenantBase(DeclarativeBase):
    """Per-tenant tables, declared under the placeholder schema ``tenant``."""

    metadata = MetaData(schema="tenant", naming_convention=NAMING_CONVENTION)


async def get_tenant_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session bound to the current tenant's schema and RLS context.

    Raises RuntimeError outside a tenant scope.
    """
    tenant = get_current_tenant()

    async with get_engine().connect() as conn:
        conn = await conn.execution_options(schema_translate_map={"tenant": tenant.schema_name})
        await conn.execute(
            text("SELECT set_config('app.current_tenant_id', :tid, false)"),
            {"tid": tenant.tenant_id},
        )
        # Session-level setting survives the commit; the session then owns
        # its own transactions on this connection.
        await conn.commit()

        async with AsyncSession(bind=conn, expire_on_commit=False) as session:
            yield session


async def list_active_tenants() -> list[TenantContext]:
    """Every active tenant, oldest first. Used by the escrow sweeps."""
    async with get_engine().connect() as conn:
        result = await conn.execute(
            text(
                "SELECT id, slug, schema_name FROM shared.tenants "
                "WHERE is_active = true ORDER BY created_at"
            )
        )
        return [
            TenantContext(tenant_id=str(row.id), tenant_slug=row.slug, schema_name=row.schema_name)
            for row in result
        ]


async def init_db() -> None:
    """Create the shared schema and registry table when missing."""
    from src.app.models import shared  # noqa: F401  registers shared.tenants

    async with get_engine().begin() as conn:
        await conn.execute(text("CREATE SCHEMA IF NOT EXISTS shared"))
        await conn.run_sync(SharedBase.metadata.create_all)


async def close_db() -> None:
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
