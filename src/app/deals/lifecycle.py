"""Deal status lifecycle and allocation arithmetic.

A deal accepts investments only while OPEN and inside its optional
[opens_at, closes_at) window. CLOSED and CANCELLED are terminal; a
closed deal still settles the escrows it already holds, a cancelled one
refunds them.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from src.app.deals.schemas import DealRead, DealStatus
from src.app.escrow.deadlines import ensure_utc
from src.app.escrow.errors import InvalidTransitionError

DEAL_TRANSITIONS: dict[DealStatus, set[DealStatus]] = {
    DealStatus.DRAFT: {DealStatus.OPEN, DealStatus.CANCELLED},
    DealStatus.OPEN: {DealStatus.CLOSED, DealStatus.CANCELLED},
    DealStatus.CLOSED: set(),
    DealStatus.CANCELLED: set(),
}


def validate_deal_transition(from_status: DealStatus, to_status: DealStatus) -> None:
    """Raise InvalidTransitionError unless from_status -> to_status is allowed."""
    allowed = DEAL_TRANSITIONS.get(from_status, set())
    if to_status not in allowed:
        raise InvalidTransitionError(
            from_status.value,
            to_status.value,
            [s.value for s in allowed],
        )


def is_accepting_investments(deal: DealRead, now: datetime) -> bool:
    """True when the deal is OPEN and ``now`` falls inside its window."""
    if deal.status != DealStatus.OPEN:
        return False
    now = ensure_utc(now)
    if deal.opens_at is not None and now < ensure_utc(deal.opens_at):
        return False
    if deal.closes_at is not None and now >= ensure_utc(deal.closes_at):
        return False
    return True


def remaining_allocation(deal: DealRead) -> Decimal:
    """Amount still available under the hard cap."""
    remaining = deal.target_amount - deal.amount_reserved - deal.amount_raised
    return max(remaining, Decimal("0"))
