"""Domain error taxonomy for deals and escrow investments.

Every error carries the HTTP status the API layer should answer with, so
routers translate them with a single helper instead of per-endpoint
branching. Errors that describe a bad request shape subclass ValueError
so callers outside HTTP can treat them as validation failures.
"""

from __future__ import annotations


class EscrowError(Exception):
    """Base class for lifecycle errors."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvestmentNotFoundError(EscrowError):
    status_code = 404


class DealNotFoundError(EscrowError):
    status_code = 404


class InvalidTransitionError(EscrowError, ValueError):
    """Raised when a status change is not in the transition table."""

    status_code = 409

    def __init__(self, from_status: str, to_status: str, allowed: list[str] | None = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        allowed_text = ", ".join(sorted(allowed or [])) or "none (terminal)"
        super().__init__(
            f"Invalid transition: {from_status} -> {to_status}. "
            f"Allowed from {from_status}: {allowed_text}"
        )


class ConcurrentModificationError(EscrowError):
    """Compare-and-set update lost a race with another writer."""

    status_code = 409


class DealNotOpenError(EscrowError):
    status_code = 409


class AllocationExceededError(EscrowError):
    status_code = 409


class InvestmentAmountError(EscrowError, ValueError):
    status_code = 422


class WalletRequiredError(EscrowError, ValueError):
    status_code = 422


class DepositMismatchError(EscrowError, ValueError):
    status_code = 422


class KycBlockedError(EscrowError):
    status_code = 403


class ReviewDeadlinePassedError(EscrowError):
    status_code = 409


class SettlementInFlightError(EscrowError):
    """A release is already on chain; refunds or deal cancellation would race it."""

    status_code = 409


class ChainGatewayError(EscrowError):
    """The EscrowFactory relayer could not complete an operation after retries."""

    status_code = 502


class KycProviderError(EscrowError):
    """The KYC provider could not start a verification after retries."""

    status_code = 502
