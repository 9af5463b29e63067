"""Pydantic schemas for deals.

Defines:
- Enums: DealStatus
- Payloads: DealCreate, DealUpdate, DealRead, DealFilter
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class DealStatus(str, Enum):
    """Deal lifecycle states."""

    DRAFT = "draft"
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class DealCreate(BaseModel):
    """Schema for creating a deal (always starts in DRAFT)."""

    title: str = Field(min_length=1, max_length=300)
    description: str | None = None
    token_symbol: str = Field(min_length=1, max_length=16)
    token_address: str | None = None
    currency: str = "USDC"
    issuer_wallet: str = Field(min_length=1, max_length=64)
    price_per_token: Decimal = Field(gt=0)
    target_amount: Decimal = Field(gt=0)
    min_investment: Decimal = Field(default=Decimal("0"), ge=0)
    max_investment: Decimal | None = Field(default=None, gt=0)
    opens_at: datetime | None = None
    closes_at: datetime | None = None

    @model_validator(mode="after")
    def _check_bounds(self) -> DealCreate:
        if self.max_investment is not None and self.max_investment < self.min_investment:
            raise ValueError("max_investment must be >= min_investment")
        if self.min_investment > self.target_amount:
            raise ValueError("min_investment cannot exceed target_amount")
        if self.opens_at and self.closes_at and self.closes_at <= self.opens_at:
            raise ValueError("closes_at must be after opens_at")
        return self


class DealUpdate(BaseModel):
    """Partial update for a DRAFT deal (all fields optional)."""

    title: str | None = None
    description: str | None = None
    token_address: str | None = None
    issuer_wallet: str | None = None
    price_per_token: Decimal | None = Field(default=None, gt=0)
    target_amount: Decimal | None = Field(default=None, gt=0)
    min_investment: Decimal | None = Field(default=None, ge=0)
    max_investment: Decimal | None = Field(default=None, gt=0)
    opens_at: datetime | None = None
    closes_at: datetime | None = None


class DealRead(BaseModel):
    """Schema for reading a deal (includes all persisted fields)."""

    id: str
    tenant_id: str
    issuer_id: str
    issuer_wallet: str
    title: str
    description: str | None = None
    token_symbol: str
    token_address: str | None = None
    currency: str = "USDC"
    price_per_token: Decimal
    target_amount: Decimal
    min_investment: Decimal = Decimal("0")
    max_investment: Decimal | None = None
    amount_reserved: Decimal = Decimal("0")
    amount_raised: Decimal = Decimal("0")
    status: DealStatus = DealStatus.DRAFT
    version: int = 1
    opens_at: datetime | None = None
    closes_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DealFilter(BaseModel):
    """Filter criteria for listing deals."""

    status: DealStatus | None = None
    issuer_id: str | None = None
