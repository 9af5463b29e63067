"""Escrow persistence models -- tenant-scoped tables for the investment lifecycle.

Two SQLAlchemy models using TenantBase for schema_translate_map isolation:
- EscrowInvestmentModel: One investment and its per-investment escrow
- EscrowEventModel: Append-only audit trail, one row per status transition

The ``version`` column backs compare-and-set transitions: every status
change is an UPDATE ... WHERE status = :from AND version = :v, so two
concurrent writers can never both move the same investment.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import TenantBase


class EscrowInvestmentModel(TenantBase):
    """An investor's commitment to a deal and the escrow holding its funds.

    Linked to its deal and investor via deal_id / investor_id
    (application-level referential integrity, consistent with the other
    tenant tables).
    """

    __tablename__ = "escrow_investments"
    __table_args__ = (
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    investor_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    investor_wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    currency: Mapped[str] = mapped_column(
        String(16), default="USDC", server_default=text("'USDC'")
    )
    status: Mapped[str] = mapped_column(
        String(30), default="intent", server_default=text("'intent'")
    )
    version: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"))
    chain_id: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"))
    escrow_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    create_tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    deposit_tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    release_tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    refund_tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(String(30), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    review_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    kyc_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tx_attempts: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class EscrowEventModel(TenantBase):
    """Audit row written in the same transaction as each status change."""

    __tablename__ = "escrow_events"
    __table_args__ = (
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    investment_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
    metadata_json: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
