"""Initial tenant schema: users and api_keys tables with RLS.

Revision ID: 002_initial_tenant
Revises:
Create Date: 2026-02-11

Note: This migration uses schema="tenant" placeholder. When run via
schema_translate_map, "tenant" is replaced with the actual tenant schema.
However, for RLS and index DDL we use the actual schema name from -x args.
"""

from typing import Sequence, Union

from alembic import context, op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "002_initial_tenant"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = ("tenant",)
depends_on: Union[str, Sequence[str], None] = None


def _enable_rls(schema: str, table: str) -> None:
    op.execute(f'ALTER TABLE "{schema}".{table} ENABLE ROW LEVEL SECURITY')
    op.execute(f'ALTER TABLE "{schema}".{table} FORCE ROW LEVEL SECURITY')
    op.execute(f"""
        CREATE POLICY tenant_isolation ON "{schema}".{table}
        FOR ALL
        USING (tenant_id::text = current_setting('app.current_tenant_id', true))
        WITH CHECK (tenant_id::text = current_setting('app.current_tenant_id', true))
    """)


def upgrade() -> None:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    # ── users table ─────────────────────────────────────────────────────

    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("hashed_password", sa.String(255), nullable=True),
        sa.Column("role", sa.String(50), server_default=sa.text("'investor'"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("wallet_address", sa.String(64), nullable=True),
        sa.Column("kyc_status", sa.String(20), server_default=sa.text("'not_started'"), nullable=False),
        sa.Column("kyc_reference", sa.String(200), nullable=True),
        sa.Column("kyc_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("role IN ('investor', 'issuer', 'admin')", name="ck_users_role"),
        sa.CheckConstraint(
            "kyc_status IN ('not_started', 'pending', 'approved', 'rejected')",
            name="ck_users_kyc_status",
        ),
        schema="tenant",
    )
    _enable_rls(schema, "users")
    op.execute(f'CREATE INDEX idx_users_tenant ON "{schema}".users(tenant_id)')
    op.execute(f'CREATE UNIQUE INDEX idx_users_email_tenant ON "{schema}".users(tenant_id, lower(email))')
    op.execute(f'CREATE INDEX idx_users_kyc_reference ON "{schema}".users(tenant_id, kyc_reference)')

    # ── api_keys table ──────────────────────────────────────────────────

    op.create_table(
        "api_keys",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tenant.users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("key_hash", sa.String(255), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        schema="tenant",
    )
    _enable_rls(schema, "api_keys")
    op.execute(f'CREATE INDEX idx_api_keys_tenant ON "{schema}".api_keys(tenant_id)')
    op.execute(f'CREATE UNIQUE INDEX idx_api_keys_tenant_hash ON "{schema}".api_keys(tenant_id, key_hash)')


def downgrade() -> None:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    for table in ("api_keys", "users"):
        op.execute(f'DROP POLICY IF EXISTS tenant_isolation ON "{schema}".{table}')
        op.drop_table(table, schema="tenant")
