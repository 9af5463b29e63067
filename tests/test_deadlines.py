"""Tests for escrow expiry and admin review deadline arithmetic."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from src.app.deals.lifecycle import is_accepting_investments, remaining_allocation
from src.app.deals.schemas import DealRead, DealStatus
from src.app.escrow.deadlines import (
    ensure_utc,
    escrow_expiry,
    is_overdue,
    review_deadline,
    timeout_reason,
)
from src.app.escrow.schemas import InvestmentStatus, RefundReason

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_escrow_expires_after_thirty_days():
    assert escrow_expiry(NOW) == NOW + timedelta(days=30)


def test_escrow_expiry_honours_configured_duration():
    assert escrow_expiry(NOW, days=7) == NOW + timedelta(days=7)


def test_naive_datetimes_are_treated_as_utc():
    naive = datetime(2026, 3, 2, 9, 0)
    assert ensure_utc(naive) == NOW
    assert escrow_expiry(naive) == NOW + timedelta(days=30)


def test_review_deadline_is_fourteen_days_after_approval():
    expires = NOW + timedelta(days=30)
    assert review_deadline(NOW, expires) == NOW + timedelta(days=14)


def test_review_deadline_capped_at_escrow_expiry():
    approved = NOW + timedelta(days=25)
    expires = NOW + timedelta(days=30)
    assert review_deadline(approved, expires) == expires


def test_deadline_reached_is_overdue():
    assert is_overdue(NOW, NOW)
    assert is_overdue(NOW - timedelta(seconds=1), NOW)
    assert not is_overdue(NOW + timedelta(seconds=1), NOW)


def test_missing_deadline_is_never_overdue():
    assert not is_overdue(None, NOW)


def test_timeout_reasons():
    assert timeout_reason(InvestmentStatus.INTENT) == RefundReason.ESCROW_TIMEOUT
    assert timeout_reason(InvestmentStatus.ESCROWED) == RefundReason.ESCROW_TIMEOUT
    assert timeout_reason(InvestmentStatus.KYC_APPROVED) == RefundReason.REVIEW_TIMEOUT
    assert timeout_reason(InvestmentStatus.RELEASE_PENDING) is None
    assert timeout_reason(InvestmentStatus.REFUNDED) is None


def _deal(**overrides) -> DealRead:
    fields = dict(
        id="d1",
        tenant_id="t1",
        issuer_id="i1",
        issuer_wallet="0xissuer",
        title="Deal",
        token_symbol="TKN",
        price_per_token=Decimal("1"),
        target_amount=Decimal("1000"),
        status=DealStatus.OPEN,
    )
    fields.update(overrides)
    return DealRead(**fields)


class TestDealWindow:
    def test_open_without_window_accepts(self):
        assert is_accepting_investments(_deal(), NOW)

    def test_draft_does_not_accept(self):
        assert not is_accepting_investments(_deal(status=DealStatus.DRAFT), NOW)

    def test_before_opens_at(self):
        assert not is_accepting_investments(_deal(opens_at=NOW + timedelta(hours=1)), NOW)

    def test_closes_at_is_exclusive(self):
        assert not is_accepting_investments(_deal(closes_at=NOW), NOW)
        assert is_accepting_investments(_deal(closes_at=NOW + timedelta(seconds=1)), NOW)


class TestRemainingAllocation:
    def test_counts_reserved_and_raised(self):
        deal = _deal(amount_reserved=Decimal("300"), amount_raised=Decimal("200"))
        assert remaining_allocation(deal) == Decimal("500")

    def test_never_negative(self):
        deal = _deal(amount_reserved=Decimal("900"), amount_raised=Decimal("200"))
        assert remaining_allocation(deal) == Decimal("0")
