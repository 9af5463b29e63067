"""Pydantic schemas for escrow investments.

Defines the structured types for the escrow lifecycle:
- Enums: InvestmentStatus, RefundReason, RefundMechanism
- Investment payloads: EscrowInvestmentCreate, EscrowInvestmentRead, InvestmentFilter
- Audit trail: EscrowEventRead
- Collaborator views: InvestorProfile (what the lifecycle needs from a user row)

Amounts are Decimal end to end; they are never round-tripped through float.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class InvestmentStatus(str, Enum):
    """Escrow investment lifecycle states."""

    INTENT = "intent"
    ESCROWED = "escrowed"
    KYC_APPROVED = "kyc_approved"
    RELEASE_PENDING = "release_pending"
    RELEASED = "released"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class RefundMechanism(str, Enum):
    """The three refund paths: rejection, timeout, manual."""

    REJECTION = "rejection"
    TIMEOUT = "timeout"
    MANUAL = "manual"


class RefundReason(str, Enum):
    """Why funds are being returned (or an intent abandoned)."""

    KYC_REJECTED = "kyc_rejected"
    ADMIN_REJECTED = "admin_rejected"
    ESCROW_TIMEOUT = "escrow_timeout"
    REVIEW_TIMEOUT = "review_timeout"
    MANUAL = "manual"
    DEAL_CANCELLED = "deal_cancelled"
    INVESTOR_CANCELLED = "investor_cancelled"


class KycStatus(str, Enum):
    """Investor verification state as stored on the user row."""

    NOT_STARTED = "not_started"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# ── Investment Schemas ──────────────────────────────────────────────────────


class EscrowInvestmentCreate(BaseModel):
    """Fields persisted when an investment intent is accepted."""

    deal_id: str
    investor_id: str
    investor_wallet: str
    amount: Decimal = Field(gt=0)
    currency: str = "USDC"
    chain_id: int = 1
    expires_at: datetime


class EscrowInvestmentRead(BaseModel):
    """Full persisted view of an escrow investment."""

    id: str
    tenant_id: str
    deal_id: str
    investor_id: str
    investor_wallet: str
    amount: Decimal
    currency: str = "USDC"
    status: InvestmentStatus = InvestmentStatus.INTENT
    version: int = 1
    chain_id: int = 1
    escrow_address: str | None = None
    create_tx_hash: str | None = None
    deposit_tx_hash: str | None = None
    release_tx_hash: str | None = None
    refund_tx_hash: str | None = None
    refund_reason: RefundReason | None = None
    note: str | None = None
    expires_at: datetime
    review_deadline: datetime | None = None
    funded_at: datetime | None = None
    kyc_approved_at: datetime | None = None
    settled_at: datetime | None = None
    refunded_at: datetime | None = None
    tx_attempts: int = 0
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class InvestmentFilter(BaseModel):
    """Filter criteria for listing investments."""

    deal_id: str | None = None
    investor_id: str | None = None
    statuses: list[InvestmentStatus] | None = None


class EscrowEventRead(BaseModel):
    """One row of the append-only transition audit trail."""

    id: str
    investment_id: str
    from_status: InvestmentStatus | None = None
    to_status: InvestmentStatus
    actor: str
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


# ── Collaborator Views ──────────────────────────────────────────────────────


class InvestorProfile(BaseModel):
    """Subset of a user row the lifecycle depends on."""

    id: str
    email: str
    wallet_address: str | None = None
    kyc_status: KycStatus = KycStatus.NOT_STARTED
    kyc_reference: str | None = None
