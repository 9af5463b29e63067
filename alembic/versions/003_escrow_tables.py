"""Add deals, escrow investments and the escrow event log.

Revision ID: 003_escrow_tables
Revises: 002_initial_tenant
Create Date: 2026-02-18

Creates three tables in the tenant schema:
- deals: token offerings with allocation counters (reserved / raised)
- escrow_investments: one row per investment, driven by the escrow state machine
- escrow_events: append-only transition log, one row per state change

Allocation is guarded by a CHECK so reserved + raised can never exceed
the deal target even if two reservations race.
"""

from typing import Sequence, Union

from alembic import context, op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "003_escrow_tables"
down_revision: Union[str, None] = "002_initial_tenant"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AMOUNT = sa.Numeric(38, 18)


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

    # ── deals table ─────────────────────────────────────────────────────

    op.create_table(
        "deals",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("issuer_id", UUID(as_uuid=True), nullable=False),
        sa.Column("issuer_wallet", sa.String(64), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("token_symbol", sa.String(16), nullable=False),
        sa.Column("token_address", sa.String(64), nullable=True),
        sa.Column("currency", sa.String(16), server_default=sa.text("'USDC'"), nullable=False),
        sa.Column("price_per_token", AMOUNT, nullable=False),
        sa.Column("target_amount", AMOUNT, nullable=False),
        sa.Column("min_investment", AMOUNT, server_default=sa.text("0"), nullable=False),
        sa.Column("max_investment", AMOUNT, nullable=True),
        sa.Column("amount_reserved", AMOUNT, server_default=sa.text("0"), nullable=False),
        sa.Column("amount_raised", AMOUNT, server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'draft'"), nullable=False),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("opens_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closes_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "amount_reserved + amount_raised <= target_amount",
            name="ck_deals_allocation",
        ),
        schema="tenant",
    )
    _enable_rls(schema, "deals")
    op.execute(f'CREATE INDEX idx_deals_tenant_status ON "{schema}".deals(tenant_id, status)')

    # ── escrow_investments table ────────────────────────────────────────

    op.create_table(
        "escrow_investments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("deal_id", UUID(as_uuid=True), sa.ForeignKey("tenant.deals.id"), nullable=False),
        sa.Column("investor_id", UUID(as_uuid=True), sa.ForeignKey("tenant.users.id"), nullable=False),
        sa.Column("investor_wallet", sa.String(64), nullable=False),
        sa.Column("amount", AMOUNT, nullable=False),
        sa.Column("currency", sa.String(16), server_default=sa.text("'USDC'"), nullable=False),
        sa.Column("status", sa.String(30), server_default=sa.text("'intent'"), nullable=False),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("chain_id", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("escrow_address", sa.String(64), nullable=True),
        sa.Column("create_tx_hash", sa.String(80), nullable=True),
        sa.Column("deposit_tx_hash", sa.String(80), nullable=True),
        sa.Column("release_tx_hash", sa.String(80), nullable=True),
        sa.Column("refund_tx_hash", sa.String(80), nullable=True),
        sa.Column("refund_reason", sa.String(30), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("review_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("funded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("kyc_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tx_attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_escrow_amount_positive"),
        schema="tenant",
    )
    _enable_rls(schema, "escrow_investments")
    op.execute(
        f'CREATE INDEX idx_escrow_tenant_status '
        f'ON "{schema}".escrow_investments(tenant_id, status)'
    )
    op.execute(f'CREATE INDEX idx_escrow_deal ON "{schema}".escrow_investments(tenant_id, deal_id)')
    op.execute(f'CREATE INDEX idx_escrow_investor ON "{schema}".escrow_investments(tenant_id, investor_id)')
    op.execute(f'CREATE INDEX idx_escrow_expires ON "{schema}".escrow_investments(tenant_id, expires_at)')
    op.execute(
        f'CREATE UNIQUE INDEX idx_escrow_address '
        f'ON "{schema}".escrow_investments(tenant_id, lower(escrow_address))'
    )

    # ── escrow_events table ─────────────────────────────────────────────

    op.create_table(
        "escrow_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "investment_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tenant.escrow_investments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_status", sa.String(30), nullable=True),
        sa.Column("to_status", sa.String(30), nullable=False),
        sa.Column("actor", sa.String(100), nullable=False),
        sa.Column("reason", sa.String(200), nullable=True),
        sa.Column("metadata_json", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        schema="tenant",
    )
    _enable_rls(schema, "escrow_events")
    op.execute(
        f'CREATE INDEX idx_escrow_events_investment '
        f'ON "{schema}".escrow_events(tenant_id, investment_id, created_at)'
    )


def downgrade() -> None:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    for table in ("escrow_events", "escrow_investments", "deals"):
        op.execute(f'DROP POLICY IF EXISTS tenant_isolation ON "{schema}".{table}')
        op.drop_table(table, schema="tenant")
