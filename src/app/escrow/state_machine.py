"""Escrow investment state machine.

Maps each status to the statuses it may move TO. Funds only ever leave an
escrow through RELEASED (to the issuer) or REFUNDED (back to the
investor); CANCELLED is reserved for intents that never received a
deposit, so no refund transaction is needed.

RELEASE_PENDING -> REFUND_PENDING exists only for manual refunds while no
release transaction has been submitted; the service enforces that extra
condition since it depends on row data, not on status alone.
"""

from __future__ import annotations

from src.app.escrow.errors import InvalidTransitionError
from src.app.escrow.schemas import InvestmentStatus, RefundMechanism, RefundReason

VALID_TRANSITIONS: dict[InvestmentStatus, set[InvestmentStatus]] = {
    InvestmentStatus.INTENT: {InvestmentStatus.ESCROWED, InvestmentStatus.CANCELLED},
    InvestmentStatus.ESCROWED: {InvestmentStatus.KYC_APPROVED, InvestmentStatus.REFUND_PENDING},
    InvestmentStatus.KYC_APPROVED: {
        InvestmentStatus.RELEASE_PENDING,
        InvestmentStatus.REFUND_PENDING,
    },
    InvestmentStatus.RELEASE_PENDING: {
        InvestmentStatus.RELEASED,
        InvestmentStatus.REFUND_PENDING,
    },
    InvestmentStatus.REFUND_PENDING: {InvestmentStatus.REFUNDED},
    InvestmentStatus.RELEASED: set(),  # Terminal
    InvestmentStatus.REFUNDED: set(),  # Terminal
    InvestmentStatus.CANCELLED: set(),  # Terminal
}

TERMINAL_STATUSES: frozenset[InvestmentStatus] = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)

# Statuses that still hold a share of the deal's allocation.
ALLOCATION_HOLDING_STATUSES: frozenset[InvestmentStatus] = frozenset({
    InvestmentStatus.INTENT,
    InvestmentStatus.ESCROWED,
    InvestmentStatus.KYC_APPROVED,
    InvestmentStatus.RELEASE_PENDING,
})

# Statuses in which investor funds sit in the escrow contract.
FUNDED_STATUSES: frozenset[InvestmentStatus] = frozenset({
    InvestmentStatus.ESCROWED,
    InvestmentStatus.KYC_APPROVED,
    InvestmentStatus.RELEASE_PENDING,
})

_REFUND_MECHANISMS: dict[RefundReason, RefundMechanism] = {
    RefundReason.KYC_REJECTED: RefundMechanism.REJECTION,
    RefundReason.ADMIN_REJECTED: RefundMechanism.REJECTION,
    RefundReason.ESCROW_TIMEOUT: RefundMechanism.TIMEOUT,
    RefundReason.REVIEW_TIMEOUT: RefundMechanism.TIMEOUT,
    RefundReason.MANUAL: RefundMechanism.MANUAL,
    RefundReason.DEAL_CANCELLED: RefundMechanism.MANUAL,
    RefundReason.INVESTOR_CANCELLED: RefundMechanism.MANUAL,
}


def validate_transition(from_status: InvestmentStatus, to_status: InvestmentStatus) -> None:
    """Validate that a status transition is allowed.

    Args:
        from_status: Current status.
        to_status: Target status.

    Raises:
        InvalidTransitionError: If the transition is not in VALID_TRANSITIONS.
    """
    if from_status == to_status:
        return

    allowed = VALID_TRANSITIONS.get(from_status, set())
    if to_status not in allowed:
        raise InvalidTransitionError(
            from_status.value,
            to_status.value,
            [s.value for s in allowed],
        )


def is_terminal(status: InvestmentStatus) -> bool:
    """True for RELEASED, REFUNDED and CANCELLED."""
    return status in TERMINAL_STATUSES


def holds_allocation(status: InvestmentStatus) -> bool:
    return status in ALLOCATION_HOLDING_STATUSES


def refund_mechanism(reason: RefundReason) -> RefundMechanism:
    """Classify a refund reason into rejection, timeout, or manual."""
    return _REFUND_MECHANISMS[reason]
