"""Tenant provisioning service.

Handles creating new tenants with isolated PostgreSQL schemas, RLS
policies, and Redis namespaces, plus listing and (de)activating them.
This is the core of the multi-tenant onboarding flow.

Every tenant table gets ENABLE + FORCE row level security and the same
``tenant_isolation`` policy keyed on ``app.current_tenant_id``.
"""

from __future__ import annotations

import logging
import re
import uuid

from fastapi import HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from src.app.core.database import get_engine
from src.app.core.redis import get_redis_pool
from src.app.core.security import hash_password
from src.app.core.tenant import schema_name_for

logger = logging.getLogger(__name__)

# Slug validation: lowercase alphanumeric + hyphens, 3-50 chars
SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{1,48}[a-z0-9]$")

TENANT_TABLES = ("users", "api_keys", "deals", "escrow_investments", "escrow_events")


def _table_ddl(schema: str) -> list[str]:
    """CREATE TABLE / INDEX statements for one tenant schema, in dependency order."""
    return [
        f"""
        CREATE TABLE IF NOT EXISTS "{schema}".users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL,
            email VARCHAR(255) NOT NULL,
            name VARCHAR(200),
            hashed_password VARCHAR(255),
            role VARCHAR(50) NOT NULL DEFAULT 'investor',
            is_active BOOLEAN NOT NULL DEFAULT true,
            wallet_address VARCHAR(64),
            kyc_status VARCHAR(20) NOT NULL DEFAULT 'not_started',
            kyc_reference VARCHAR(200),
            kyc_updated_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT ck_users_role CHECK (role IN ('investor', 'issuer', 'admin')),
            CONSTRAINT ck_users_kyc_status
                CHECK (kyc_status IN ('not_started', 'pending', 'approved', 'rejected'))
        )
        """,
        f'CREATE INDEX IF NOT EXISTS idx_users_tenant ON "{schema}".users(tenant_id)',
        f'CREATE UNIQUE INDEX IF NOT EXISTS idx_users_email_tenant ON "{schema}".users(tenant_id, lower(email))',
        f'CREATE INDEX IF NOT EXISTS idx_users_kyc_reference ON "{schema}".users(tenant_id, kyc_reference)',
        f"""
        CREATE TABLE IF NOT EXISTS "{schema}".api_keys (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL,
            user_id UUID NOT NULL REFERENCES "{schema}".users(id) ON DELETE CASCADE,
            key_hash VARCHAR(255) NOT NULL,
            name VARCHAR(200) NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT true,
            last_used_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT now()
        )
        """,
        f'CREATE INDEX IF NOT EXISTS idx_api_keys_tenant ON "{schema}".api_keys(tenant_id)',
        f'CREATE UNIQUE INDEX IF NOT EXISTS idx_api_keys_tenant_hash ON "{schema}".api_keys(tenant_id, key_hash)',
        f"""
        CREATE TABLE IF NOT EXISTS "{schema}".deals (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL,
            issuer_id UUID NOT NULL,
            issuer_wallet VARCHAR(64) NOT NULL,
            title VARCHAR(300) NOT NULL,
            description TEXT,
            token_symbol VARCHAR(16) NOT NULL,
            token_address VARCHAR(64),
            currency VARCHAR(16) NOT NULL DEFAULT 'USDC',
            price_per_token NUMERIC(38, 18) NOT NULL,
            target_amount NUMERIC(38, 18) NOT NULL,
            min_investment NUMERIC(38, 18) NOT NULL DEFAULT 0,
            max_investment NUMERIC(38, 18),
            amount_reserved NUMERIC(38, 18) NOT NULL DEFAULT 0,
            amount_raised NUMERIC(38, 18) NOT NULL DEFAULT 0,
            status VARCHAR(20) NOT NULL DEFAULT 'draft',
            version INTEGER NOT NULL DEFAULT 1,
            opens_at TIMESTAMPTZ,
            closes_at TIMESTAMPTZ,
            metadata_json JSON NOT NULL DEFAULT '{{}}'::json,
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT ck_deals_allocation CHECK (amount_reserved + amount_raised <= target_amount)
        )
        """,
        f'CREATE INDEX IF NOT EXISTS idx_deals_tenant_status ON "{schema}".deals(tenant_id, status)',
        f"""
        CREATE TABLE IF NOT EXISTS "{schema}".escrow_investments (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL,
            deal_id UUID NOT NULL REFERENCES "{schema}".deals(id),
            investor_id UUID NOT NULL REFERENCES "{schema}".users(id),
            investor_wallet VARCHAR(64) NOT NULL,
            amount NUMERIC(38, 18) NOT NULL,
            currency VARCHAR(16) NOT NULL DEFAULT 'USDC',
            status VARCHAR(30) NOT NULL DEFAULT 'intent',
            version INTEGER NOT NULL DEFAULT 1,
            chain_id INTEGER NOT NULL DEFAULT 1,
            escrow_address VARCHAR(64),
            create_tx_hash VARCHAR(80),
            deposit_tx_hash VARCHAR(80),
            release_tx_hash VARCHAR(80),
            refund_tx_hash VARCHAR(80),
            refund_reason VARCHAR(30),
            note TEXT,
            expires_at TIMESTAMPTZ NOT NULL,
            review_deadline TIMESTAMPTZ,
            funded_at TIMESTAMPTZ,
            kyc_approved_at TIMESTAMPTZ,
            settled_at TIMESTAMPTZ,
            refunded_at TIMESTAMPTZ,
            tx_attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT ck_escrow_amount_positive CHECK (amount > 0)
        )
        """,
        f'CREATE INDEX IF NOT EXISTS idx_escrow_tenant_status ON "{schema}".escrow_investments(tenant_id, status)',
        f'CREATE INDEX IF NOT EXISTS idx_escrow_deal ON "{schema}".escrow_investments(tenant_id, deal_id)',
        f'CREATE INDEX IF NOT EXISTS idx_escrow_investor ON "{schema}".escrow_investments(tenant_id, investor_id)',
        f'CREATE INDEX IF NOT EXISTS idx_escrow_expires ON "{schema}".escrow_investments(tenant_id, expires_at)',
        f'CREATE UNIQUE INDEX IF NOT EXISTS idx_escrow_address ON "{schema}".escrow_investments(tenant_id, lower(escrow_address))',
        f"""
        CREATE TABLE IF NOT EXISTS "{schema}".escrow_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL,
            investment_id UUID NOT NULL REFERENCES "{schema}".escrow_investments(id) ON DELETE CASCADE,
            from_status VARCHAR(30),
            to_status VARCHAR(30) NOT NULL,
            actor VARCHAR(100) NOT NULL,
            reason VARCHAR(200),
            metadata_json JSON NOT NULL DEFAULT '{{}}'::json,
            created_at TIMESTAMPTZ DEFAULT now()
        )
        """,
        f'CREATE INDEX IF NOT EXISTS idx_escrow_events_investment ON "{schema}".escrow_events(tenant_id, investment_id, created_at)',
    ]


async def _enable_rls(conn: AsyncConnection, schema: str, table: str) -> None:
    """Enable and FORCE RLS on one table and attach the tenant policy."""
    await conn.execute(text(f'ALTER TABLE "{schema}".{table} ENABLE ROW LEVEL SECURITY'))
    await conn.execute(text(f'ALTER TABLE "{schema}".{table} FORCE ROW LEVEL SECURITY'))
    await conn.execute(text(f'DROP POLICY IF EXISTS tenant_isolation ON "{schema}".{table}'))
    await conn.execute(text(f"""
        CREATE POLICY tenant_isolation ON "{schema}".{table}
        FOR ALL
        USING (tenant_id::text = current_setting('app.current_tenant_id', true))
        WITH CHECK (tenant_id::text = current_setting('app.current_tenant_id', true))
    """))


async def provision_tenant(slug: str, name: str) -> dict:
    """Provision a new tenant with isolated schema, RLS, and Redis namespace.

    Steps:
    1. Validate slug format
    2. Compute schema_name
    3. Check for duplicate slug
    4. Create PostgreSQL schema
    5. Create tables and enable RLS
    6. Insert tenant record in shared.tenants
    7. Initialize Redis namespace
    8. Return tenant data

    Raises:
        HTTPException(400): Invalid slug format
        HTTPException(409): Tenant with slug already exists
    """
    if not SLUG_PATTERN.match(slug):
        raise HTTPException(
            status_code=400,
            detail="Slug must be 3-50 chars, lowercase alphanumeric and hyphens only, "
                   "must start and end with alphanumeric character.",
        )

    schema_name = schema_name_for(slug)

    engine = get_engine()
    async with engine.begin() as conn:
        result = await conn.execute(
            text("SELECT id FROM shared.tenants WHERE slug = :slug"),
            {"slug": slug},
        )
        if result.first():
            raise HTTPException(status_code=409, detail=f"Tenant with slug '{slug}' already exists")

        await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"'))

        for statement in _table_ddl(schema_name):
            await conn.execute(text(statement))
        for table in TENANT_TABLES:
            await _enable_rls(conn, schema_name, table)

        tenant_id = uuid.uuid4()
        await conn.execute(
            text("""
                INSERT INTO shared.tenants (id, slug, name, schema_name, is_active, created_at)
                VALUES (:id, :slug, :name, :schema_name, true, now())
            """),
            {"id": tenant_id, "slug": slug, "name": name, "schema_name": schema_name},
        )

    try:
        redis = get_redis_pool()
        await redis.set(f"t:{tenant_id}:initialized", "true")
    except Exception:
        logger.warning("Failed to initialize Redis namespace for tenant %s", slug)

    logger.info("Provisioned tenant %s (%s)", slug, schema_name)
    return {
        "tenant_id": str(tenant_id),
        "slug": slug,
        "name": name,
        "schema_name": schema_name,
    }


async def create_tenant_admin(tenant_id: str, schema_name: str, email: str, password: str) -> str:
    """Insert the tenant's first admin user and return its id.

    Runs under the tenant's RLS context so the insert passes the policy
    WITH CHECK clause.

    Raises:
        HTTPException(409): Email already registered in this tenant.
    """
    user_id = uuid.uuid4()
    async with get_engine().begin() as conn:
        await conn.execute(
            text("SELECT set_config('app.current_tenant_id', :tid, true)"),
            {"tid": tenant_id},
        )
        existing = await conn.execute(
            text(f'SELECT 1 FROM "{schema_name}".users WHERE lower(email) = :email'),
            {"email": email.lower()},
        )
        if existing.first():
            raise HTTPException(status_code=409, detail="Email already registered")
        await conn.execute(
            text(f"""
                INSERT INTO "{schema_name}".users
                    (id, tenant_id, email, name, role, hashed_password)
                VALUES (:id, :tenant_id, :email, :name, 'admin', :hashed_password)
            """),
            {
                "id": user_id,
                "tenant_id": uuid.UUID(tenant_id),
                "email": email.lower(),
                "name": "Tenant admin",
                "hashed_password": hash_password(password),
            },
        )
    logger.info("Created admin %s for tenant %s", email.lower(), tenant_id)
    return str(user_id)

def _row_to_dict(row) -> dict:
    return {
        "id": str(row.id),
        "slug": row.slug,
        "name": row.name,
        "schema_name": row.schema_name,
        "is_active": row.is_active,
        "deactivated_at": row.deactivated_at.isoformat() if row.deactivated_at else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def list_tenants(include_inactive: bool = False) -> list[dict]:
    """List tenants, active ones only unless ``include_inactive``."""
    query = "SELECT id, slug, name, schema_name, is_active, deactivated_at, created_at FROM shared.tenants"
    if not include_inactive:
        query += " WHERE is_active = true"
    query += " ORDER BY created_at"

    engine = get_engine()
    async with engine.connect() as conn:
        result = await conn.execute(text(query))
        return [_row_to_dict(row) for row in result.fetchall()]


async def set_tenant_active(tenant_id: str, is_active: bool) -> dict:
    """Activate or deactivate a tenant and drop its cached lookup.

    Deactivated tenants stop resolving in the tenant middleware and are
    skipped by the escrow sweeps.

    Raises:
        HTTPException(404): Unknown tenant id.
    """
    try:
        tenant_uuid = uuid.UUID(tenant_id)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Tenant not found: {tenant_id}")

    engine = get_engine()
    async with engine.begin() as conn:
        result = await conn.execute(
            text("""
                UPDATE shared.tenants
                SET is_active = :active,
                    deactivated_at = CASE WHEN :active THEN NULL ELSE COALESCE(deactivated_at, now()) END,
                    updated_at = now()
                WHERE id = :id
                RETURNING id, slug, name, schema_name, is_active, deactivated_at, created_at
            """),
            {"active": is_active, "id": tenant_uuid},
        )
        row = result.first()
        if row is None:
            raise HTTPException(status_code=404, detail=f"Tenant not found: {tenant_id}")

    try:
        await get_redis_pool().delete(f"tenant:lookup:{tenant_id}")
    except Exception:
        logger.warning("Failed to invalidate tenant cache for %s", tenant_id)

    logger.info("Tenant %s is_active=%s", tenant_id, is_active)
    return _row_to_dict(row)
