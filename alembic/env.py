"""Alembic environment for the shared schema and per-tenant schemas.

    alembic -x schema=shared upgrade shared@head
    alembic -x schema=tenant_acme_capital upgrade tenant@head

The ``shared`` branch owns shared.tenants; the ``tenant`` branch owns
users, api_keys, deals and escrow tables and is replayed into each tenant
schema via schema_translate_map. Every schema keeps its own
alembic_version table, so tenants can sit at different revisions while a
rollout is in progress.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool, text

from src.app.config import get_settings
from src.app.core.database import SharedBase, TenantBase

# Imported for their side effect of registering tables on the two metadatas.
from src.app.deals import models as _deal_models  # noqa: F401
from src.app.escrow import models as _escrow_models  # noqa: F401
from src.app.models import shared as _shared_models  # noqa: F401
from src.app.models import tenant as _tenant_models  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

SCHEMA = context.get_x_argument(as_dictionary=True).get("schema", "shared")
IS_SHARED = SCHEMA == "shared"


def _sync_url() -> str:
    return get_settings().DATABASE_URL.replace("+asyncpg", "")


def _configure_kwargs() -> dict:
    return {
        "target_metadata": SharedBase.metadata if IS_SHARED else TenantBase.metadata,
        "version_table_schema": SCHEMA,
    }


def run_migrations_offline() -> None:
    context.configure(
        url=_sync_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(_sync_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        # The version table lives in the target schema, so it must exist first.
        connection.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{SCHEMA}"'))
        connection.commit()

        context.configure(
            connection=connection,
            include_schemas=True,
            schema_translate_map=None if IS_SHARED else {"tenant": SCHEMA},
            **_configure_kwargs(),
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
