"""Deadline arithmetic for the escrow lifecycle.

Two clocks bound every investment:
- the escrow duration (30 days by default), counted from intent creation,
  after which unfunded intents are cancelled and funded escrows refunded;
- the admin review deadline (14 days by default), counted from KYC
  approval, after which an unreleased investment is refunded.

The review deadline never outlives the escrow itself.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.app.escrow.schemas import InvestmentStatus, RefundReason

DEFAULT_ESCROW_DURATION_DAYS = 30
DEFAULT_REVIEW_DEADLINE_DAYS = 14


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def escrow_expiry(created_at: datetime, days: int = DEFAULT_ESCROW_DURATION_DAYS) -> datetime:
    """When an escrow created at ``created_at`` times out."""
    return ensure_utc(created_at) + timedelta(days=days)


def review_deadline(
    kyc_approved_at: datetime,
    escrow_expires_at: datetime,
    days: int = DEFAULT_REVIEW_DEADLINE_DAYS,
) -> datetime:
    """Admin release deadline: approval + ``days``, capped at escrow expiry."""
    candidate = ensure_utc(kyc_approved_at) + timedelta(days=days)
    return min(candidate, ensure_utc(escrow_expires_at))


def is_overdue(deadline: datetime | None, now: datetime) -> bool:
    """A deadline is overdue once it has been reached."""
    if deadline is None:
        return False
    return ensure_utc(deadline) <= ensure_utc(now)


def timeout_reason(status: InvestmentStatus) -> RefundReason | None:
    """Which timeout applies to an investment in ``status``, if any."""
    if status in (InvestmentStatus.INTENT, InvestmentStatus.ESCROWED):
        return RefundReason.ESCROW_TIMEOUT
    if status == InvestmentStatus.KYC_APPROVED:
        return RefundReason.REVIEW_TIMEOUT
    return None
