"""Deal persistence model -- tenant-scoped table for tokenized deals.

Allocation is tracked with two running totals:
- amount_reserved: held by investments that have not settled or been refunded
- amount_raised: settled on chain

The repository only ever changes them with single-statement conditional
UPDATEs, so ``amount_reserved + amount_raised <= target_amount`` holds
under concurrent investors without row locks.
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


class DealModel(TenantBase):
    """Tokenized investment opportunity offered by an issuer."""

    __tablename__ = "deals"
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
    issuer_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    issuer_wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_symbol: Mapped[str] = mapped_column(String(16), nullable=False)
    token_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(
        String(16), default="USDC", server_default=text("'USDC'")
    )
    price_per_token: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    target_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    min_investment: Mapped[Decimal] = mapped_column(
        Numeric(38, 18), default=Decimal("0"), server_default=text("0")
    )
    max_investment: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)
    amount_reserved: Mapped[Decimal] = mapped_column(
        Numeric(38, 18), default=Decimal("0"), server_default=text("0")
    )
    amount_raised: Mapped[Decimal] = mapped_column(
        Numeric(38, 18), default=Decimal("0"), server_default=text("0")
    )
    status: Mapped[str] = mapped_column(
        String(20), default="draft", server_default=text("'draft'")
    )
    version: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"))
    opens_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closes_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
