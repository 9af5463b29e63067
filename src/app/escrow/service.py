"""EscrowLifecycleService -- drives investments from intent to settlement or refund.

Lifecycle:
    intent -> escrowed -> kyc_approved -> release_pending -> released
                  |            |               |
                  +------------+---------------+--> refund_pending -> refunded
    intent -> cancelled

Refunds take one of three paths:
- rejection: KYC rejected, or an admin rejects the investment
- timeout: the 30-day escrow expires, or the 14-day admin review deadline passes
- manual: an admin refunds, or the issuer cancels the deal

Every status change is a compare-and-set through
EscrowRepository.transition, which writes the audit row in the same
transaction. The deal's allocation changes in that same transaction, so
only the winner of the race moves it: it is released when an investment
is cancelled or enters refund_pending, and moved from reserved to raised
when it is released.

Chain calls happen after the status change commits. A failed call never
rolls the status back; it records tx_attempts/last_error and leaves the
missing transaction hash for retry_pending_transactions to resubmit.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog

from src.app.chain.client import EscrowFactoryClient
from src.app.core.monitoring import record_chain_failure, record_refund, record_transition
from src.app.deals.lifecycle import is_accepting_investments, remaining_allocation
from src.app.deals.repository import AllocationChange, DealRepository
from src.app.deals.schemas import DealFilter, DealStatus
from src.app.escrow.deadlines import (
    DEFAULT_ESCROW_DURATION_DAYS,
    DEFAULT_REVIEW_DEADLINE_DAYS,
    escrow_expiry,
    is_overdue,
    review_deadline,
    timeout_reason,
    utcnow,
)
from src.app.escrow.errors import (
    AllocationExceededError,
    ChainGatewayError,
    ConcurrentModificationError,
    DealNotFoundError,
    DealNotOpenError,
    DepositMismatchError,
    InvalidTransitionError,
    InvestmentAmountError,
    InvestmentNotFoundError,
    KycBlockedError,
    ReviewDeadlinePassedError,
    SettlementInFlightError,
    WalletRequiredError,
)
from src.app.escrow.repository import EscrowRepository
from src.app.escrow.schemas import (
    EscrowEventRead,
    EscrowInvestmentCreate,
    EscrowInvestmentRead,
    InvestmentFilter,
    InvestmentStatus,
    KycStatus,
    RefundReason,
)
from src.app.escrow.state_machine import VALID_TRANSITIONS, holds_allocation, validate_transition
from src.app.events.bus import TenantEventBus
from src.app.events.schemas import ESCROW_STREAM, DomainEvent, EventType
from src.app.kyc.repository import InvestorRepository

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system"
CHAIN_ACTOR = "chain"
UNWIND_PASSES = 3


def admin_actor(admin_id: str) -> str:
    return f"admin:{admin_id}"


def investor_actor(investor_id: str) -> str:
    return f"investor:{investor_id}"


def _not_allowed(inv: EscrowInvestmentRead, to_status: InvestmentStatus) -> InvalidTransitionError:
    allowed = VALID_TRANSITIONS.get(inv.status, set())
    return InvalidTransitionError(inv.status.value, to_status.value, [s.value for s in allowed])


class EscrowLifecycleService:
    """Orchestrates escrow investments across the repository, deals, KYC and chain.

    Args:
        escrow_repository: Investment and audit-trail persistence.
        deal_repository: Deal lookups and allocation accounting.
        investor_repository: Investor wallet/KYC state.
        chain_client: EscrowFactory relayer.
        escrow_duration_days: Escrow lifetime from intent creation.
        review_deadline_days: Admin review window after KYC approval.
        max_tx_attempts: Chain submissions allowed before manual handling.
        event_bus_factory: Optional ``tenant_id -> TenantEventBus``.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        escrow_repository: EscrowRepository,
        deal_repository: DealRepository,
        investor_repository: InvestorRepository,
        chain_client: EscrowFactoryClient,
        *,
        escrow_duration_days: int = DEFAULT_ESCROW_DURATION_DAYS,
        review_deadline_days: int = DEFAULT_REVIEW_DEADLINE_DAYS,
        max_tx_attempts: int = 5,
        event_bus_factory: Callable[[str], TenantEventBus] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._escrows = escrow_repository
        self._deals = deal_repository
        self._investors = investor_repository
        self._chain = chain_client
        self._escrow_days = escrow_duration_days
        self._review_days = review_deadline_days
        self._max_tx_attempts = max_tx_attempts
        self._event_bus_factory = event_bus_factory
        self._clock = clock

    @property
    def max_tx_attempts(self) -> int:
        return self._max_tx_attempts

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get_investment(self, tenant_id: str, investment_id: str) -> EscrowInvestmentRead:
        """Raises InvestmentNotFoundError for unknown ids and other tenants' rows."""
        inv = await self._escrows.get(tenant_id, investment_id)
        if inv is None:
            raise InvestmentNotFoundError(f"Investment not found: {investment_id}")
        return inv

    async def list_investments(
        self, tenant_id: str, filters: InvestmentFilter | None = None
    ) -> list[EscrowInvestmentRead]:
        return await self._escrows.list_investments(tenant_id, filters)

    async def list_events(self, tenant_id: str, investment_id: str) -> list[EscrowEventRead]:
        await self.get_investment(tenant_id, investment_id)
        return await self._escrows.list_events(tenant_id, investment_id)

    async def review_queue(self, tenant_id: str) -> list[EscrowInvestmentRead]:
        """KYC-approved investments awaiting an admin decision, most urgent first."""
        pending = await self._escrows.list_investments(
            tenant_id, InvestmentFilter(statuses=[InvestmentStatus.KYC_APPROVED])
        )
        return sorted(pending, key=lambda inv: (inv.review_deadline is None, inv.review_deadline or inv.expires_at))

    async def _get_by_address(self, tenant_id: str, escrow_address: str) -> EscrowInvestmentRead:
        inv = await self._escrows.get_by_escrow_address(tenant_id, escrow_address)
        if inv is None:
            raise InvestmentNotFoundError(f"No investment for escrow {escrow_address}")
        return inv

    # ── Intent ──────────────────────────────────────────────────────────────

    async def create_investment(
        self,
        tenant_id: str,
        investor_id: str,
        deal_id: str,
        amount: Decimal,
    ) -> EscrowInvestmentRead:
        """Accept an investment intent, reserve allocation, and request an escrow.

        Raises:
            WalletRequiredError: Investor has no wallet bound.
            KycBlockedError: Investor is unknown or their KYC was rejected.
            DealNotFoundError / DealNotOpenError: Deal missing or not accepting.
            InvestmentAmountError: Outside the deal's min/max per investor.
            AllocationExceededError: Hard cap would be exceeded.
        """
        now = self._clock()
        investor = await self._investors.get_profile(tenant_id, investor_id)
        if investor is None:
            raise KycBlockedError(f"Investor {investor_id} is not registered in this tenant")
        if not investor.wallet_address:
            raise WalletRequiredError("Bind a wallet before investing")
        if investor.kyc_status == KycStatus.REJECTED:
            raise KycBlockedError("KYC was rejected for this investor")

        deal = await self._deals.get(tenant_id, deal_id)
        if deal is None:
            raise DealNotFoundError(f"Deal not found: {deal_id}")
        if not is_accepting_investments(deal, now):
            raise DealNotOpenError(f"Deal {deal_id} is not accepting investments")

        if amount <= 0:
            raise InvestmentAmountError("Amount must be positive")
        if amount < deal.min_investment:
            raise InvestmentAmountError(f"Minimum investment is {deal.min_investment}")
        if deal.max_investment is not None:
            existing = await self._escrows.active_amount_for_investor(tenant_id, deal_id, investor_id)
            if existing + amount > deal.max_investment:
                raise InvestmentAmountError(
                    f"Maximum investment per investor is {deal.max_investment} "
                    f"({existing} already committed)"
                )
        if amount > remaining_allocation(deal):
            raise AllocationExceededError(f"Only {remaining_allocation(deal)} remains in this deal")
        if not await self._deals.reserve_allocation(tenant_id, deal_id, amount):
            raise AllocationExceededError("Deal allocation exhausted")

        try:
            inv = await self._escrows.create(
                tenant_id,
                EscrowInvestmentCreate(
                    deal_id=deal_id,
                    investor_id=investor_id,
                    investor_wallet=investor.wallet_address,
                    amount=amount,
                    currency=deal.currency,
                    chain_id=self._chain.chain_id,
                    expires_at=escrow_expiry(now, self._escrow_days),
                ),
                actor=investor_actor(investor_id),
            )
        except Exception:
            await self._deals.release_allocation(tenant_id, deal_id, amount)
            raise

        record_transition("none", InvestmentStatus.INTENT.value, tenant_id)
        logger.info(
            "escrow.intent_created",
            tenant_id=tenant_id,
            investment_id=inv.id,
            deal_id=deal_id,
            investor_id=investor_id,
            amount=str(amount),
        )
        await self._publish(
            tenant_id,
            EventType.INVESTMENT_CREATED,
            inv.id,
            investor_actor(investor_id),
            {"deal_id": deal_id, "amount": str(amount), "expires_at": inv.expires_at.isoformat()},
        )
        return await self._submit_escrow_creation(tenant_id, inv)

    async def cancel_intent(
        self, tenant_id: str, investment_id: str, investor_id: str
    ) -> EscrowInvestmentRead:
        """Investor withdraws an intent that has not been funded yet."""
        inv = await self.get_investment(tenant_id, investment_id)
        if inv.investor_id != investor_id:
            raise InvestmentNotFoundError(f"Investment not found: {investment_id}")
        if inv.status != InvestmentStatus.INTENT:
            raise _not_allowed(inv, InvestmentStatus.CANCELLED)
        return await self._start_refund(
            tenant_id, inv, RefundReason.INVESTOR_CANCELLED, investor_actor(investor_id)
        )

    # ── Chain confirmations ─────────────────────────────────────────────────

    async def confirm_deposit(
        self,
        tenant_id: str,
        escrow_address: str,
        tx_hash: str,
        amount: Decimal,
    ) -> EscrowInvestmentRead:
        """Record the investor's deposit, then apply any KYC decision already on file."""
        inv = await self._get_by_address(tenant_id, escrow_address)
        if inv.deposit_tx_hash == tx_hash:
            return inv
        if inv.status != InvestmentStatus.INTENT:
            logger.warning(
                "escrow.unexpected_deposit",
                tenant_id=tenant_id,
                investment_id=inv.id,
                status=inv.status.value,
                tx_hash=tx_hash,
            )
            raise _not_allowed(inv, InvestmentStatus.ESCROWED)
        if amount < inv.amount:
            raise DepositMismatchError(f"Deposit {amount} is below the committed {inv.amount}")

        now = self._clock()
        inv = await self._transition(
            tenant_id,
            inv,
            InvestmentStatus.ESCROWED,
            CHAIN_ACTOR,
            reason="deposit_confirmed",
            fields={"deposit_tx_hash": tx_hash, "funded_at": now},
            metadata={"tx_hash": tx_hash, "amount": str(amount)},
        )

        investor = await self._investors.get_profile(tenant_id, inv.investor_id)
        if investor is not None and investor.kyc_status == KycStatus.APPROVED:
            inv = await self._mark_kyc_approved(tenant_id, inv)
        elif investor is not None and investor.kyc_status == KycStatus.REJECTED:
            inv = await self._start_refund(tenant_id, inv, RefundReason.KYC_REJECTED, SYSTEM_ACTOR)
        return inv

    async def confirm_release(
        self, tenant_id: str, escrow_address: str, tx_hash: str
    ) -> EscrowInvestmentRead:
        inv = await self._get_by_address(tenant_id, escrow_address)
        if inv.status == InvestmentStatus.RELEASED:
            return inv
        if inv.status != InvestmentStatus.RELEASE_PENDING:
            raise _not_allowed(inv, InvestmentStatus.RELEASED)
        return await self._transition(
            tenant_id,
            inv,
            InvestmentStatus.RELEASED,
            CHAIN_ACTOR,
            reason="release_confirmed",
            fields={"release_tx_hash": tx_hash, "settled_at": self._clock()},
            metadata={"tx_hash": tx_hash},
        )

    async def confirm_refund(
        self, tenant_id: str, escrow_address: str, tx_hash: str
    ) -> EscrowInvestmentRead:
        inv = await self._get_by_address(tenant_id, escrow_address)
        if inv.status == InvestmentStatus.REFUNDED:
            return inv
        if inv.status != InvestmentStatus.REFUND_PENDING:
            raise _not_allowed(inv, InvestmentStatus.REFUNDED)
        return await self._transition(
            tenant_id,
            inv,
            InvestmentStatus.REFUNDED,
            CHAIN_ACTOR,
            reason="refund_confirmed",
            fields={"refund_tx_hash": tx_hash, "refunded_at": self._clock()},
            metadata={"tx_hash": tx_hash},
        )

    async def record_tx_failure(
        self, tenant_id: str, escrow_address: str, tx_hash: str, error: str
    ) -> EscrowInvestmentRead:
        """A submitted transaction reverted or was dropped.

        Only the transaction the investment is currently waiting on counts;
        failures of superseded transactions are logged and ignored.
        """
        inv = await self._get_by_address(tenant_id, escrow_address)
        fields: dict[str, Any] = {"tx_attempts": inv.tx_attempts + 1, "last_error": error}
        if inv.status == InvestmentStatus.RELEASE_PENDING and inv.release_tx_hash == tx_hash:
            operation = "release"
            fields["release_tx_hash"] = None
        elif inv.status == InvestmentStatus.REFUND_PENDING and inv.refund_tx_hash == tx_hash:
            operation = "refund"
            fields["refund_tx_hash"] = None
        elif inv.status == InvestmentStatus.INTENT and inv.create_tx_hash == tx_hash:
            operation = "create_escrow"
            fields["escrow_address"] = None
            fields["create_tx_hash"] = None
        else:
            logger.info(
                "escrow.stale_tx_failure",
                tenant_id=tenant_id,
                investment_id=inv.id,
                status=inv.status.value,
                tx_hash=tx_hash,
            )
            return inv

        record_chain_failure(operation, tenant_id)
        logger.warning(
            "escrow.tx_failed",
            tenant_id=tenant_id,
            investment_id=inv.id,
            operation=operation,
            tx_hash=tx_hash,
            attempts=inv.tx_attempts + 1,
            error=error,
        )
        return await self._escrows.update_fields(
            tenant_id, inv.id, expected_version=inv.version, fields=fields
        )

    # ── KYC ─────────────────────────────────────────────────────────────────

    async def apply_kyc_result(
        self,
        tenant_id: str,
        investor_id: str,
        status: KycStatus,
        reference: str | None = None,
    ) -> list[EscrowInvestmentRead]:
        """Store a KYC decision and move the investor's open investments accordingly.

        Returns:
            The investments whose status changed.
        """
        await self._investors.set_kyc_status(tenant_id, investor_id, status, reference)
        logger.info("kyc.result_applied", tenant_id=tenant_id, investor_id=investor_id, status=status.value)

        if status == KycStatus.APPROVED:
            targets = [InvestmentStatus.ESCROWED]
        elif status == KycStatus.REJECTED:
            targets = [InvestmentStatus.INTENT, InvestmentStatus.ESCROWED, InvestmentStatus.KYC_APPROVED]
        else:
            return []

        candidates = await self._escrows.list_investments(
            tenant_id, InvestmentFilter(investor_id=investor_id, statuses=targets)
        )
        affected: list[EscrowInvestmentRead] = []
        for inv in candidates:
            try:
                if status == KycStatus.APPROVED:
                    affected.append(await self._mark_kyc_approved(tenant_id, inv))
                else:
                    affected.append(
                        await self._start_refund(tenant_id, inv, RefundReason.KYC_REJECTED, SYSTEM_ACTOR)
                    )
            except ConcurrentModificationError:
                logger.warning(
                    "escrow.kyc_transition_conflict",
                    tenant_id=tenant_id,
                    investment_id=inv.id,
                )
        return affected

    async def _mark_kyc_approved(
        self, tenant_id: str, inv: EscrowInvestmentRead
    ) -> EscrowInvestmentRead:
        now = self._clock()
        deadline = review_deadline(now, inv.expires_at, self._review_days)
        return await self._transition(
            tenant_id,
            inv,
            InvestmentStatus.KYC_APPROVED,
            SYSTEM_ACTOR,
            reason="kyc_approved",
            fields={"kyc_approved_at": now, "review_deadline": deadline},
            metadata={"review_deadline": deadline.isoformat()},
        )

    # ── Admin decisions ─────────────────────────────────────────────────────

    async def approve_release(
        self, tenant_id: str, investment_id: str, admin_id: str
    ) -> EscrowInvestmentRead:
        """Approve settlement to the issuer and submit the release transaction.

        Raises:
            InvalidTransitionError: Not in kyc_approved.
            ReviewDeadlinePassedError: The review deadline has been reached.
            DealNotOpenError: The deal was cancelled; its escrows are refunded.
        """
        inv = await self.get_investment(tenant_id, investment_id)
        if inv.status == InvestmentStatus.RELEASE_PENDING:
            return inv
        if inv.status != InvestmentStatus.KYC_APPROVED:
            raise _not_allowed(inv, InvestmentStatus.RELEASE_PENDING)
        if is_overdue(inv.review_deadline, self._clock()):
            raise ReviewDeadlinePassedError(
                f"Review deadline passed at {inv.review_deadline.isoformat()}; investment will be refunded"
            )

        deal = await self._deals.get(tenant_id, inv.deal_id)
        if deal is None:
            raise DealNotFoundError(f"Deal not found: {inv.deal_id}")
        if deal.status == DealStatus.CANCELLED:
            raise DealNotOpenError(f"Deal {inv.deal_id} was cancelled; investment will be refunded")

        inv = await self._transition(
            tenant_id,
            inv,
            InvestmentStatus.RELEASE_PENDING,
            admin_actor(admin_id),
            reason="admin_approved",
            fields={"tx_attempts": 0, "last_error": None},
        )
        return await self._submit_release(tenant_id, inv, deal.issuer_wallet)

    async def reject_investment(
        self,
        tenant_id: str,
        investment_id: str,
        admin_id: str,
        note: str | None = None,
    ) -> EscrowInvestmentRead:
        inv = await self.get_investment(tenant_id, investment_id)
        if inv.status not in (InvestmentStatus.ESCROWED, InvestmentStatus.KYC_APPROVED):
            raise _not_allowed(inv, InvestmentStatus.REFUND_PENDING)
        return await self._start_refund(
            tenant_id, inv, RefundReason.ADMIN_REJECTED, admin_actor(admin_id), note=note
        )

    async def manual_refund(
        self,
        tenant_id: str,
        investment_id: str,
        admin_id: str,
        note: str | None = None,
    ) -> EscrowInvestmentRead:
        """Refund (or cancel, if unfunded) on an admin's say-so.

        Raises:
            SettlementInFlightError: A release transaction is already submitted.
        """
        inv = await self.get_investment(tenant_id, investment_id)
        if inv.status == InvestmentStatus.RELEASE_PENDING and inv.release_tx_hash:
            raise SettlementInFlightError(
                f"Release {inv.release_tx_hash} is in flight; wait for confirmation or failure"
            )
        if inv.status not in (
            InvestmentStatus.INTENT,
            InvestmentStatus.ESCROWED,
            InvestmentStatus.KYC_APPROVED,
            InvestmentStatus.RELEASE_PENDING,
        ):
            raise _not_allowed(inv, InvestmentStatus.REFUND_PENDING)
        return await self._start_refund(
            tenant_id, inv, RefundReason.MANUAL, admin_actor(admin_id), note=note
        )

    async def cancel_deal_investments(
        self, tenant_id: str, deal_id: str, actor: str
    ) -> list[EscrowInvestmentRead]:
        """Unwind every open investment of a deal being cancelled.

        A row that fails to unwind (typically a lost race with a webhook) is
        logged and the list is read again, up to UNWIND_PASSES times.
        Anything still open afterwards is picked up by
        unwind_cancelled_deals.

        Raises:
            SettlementInFlightError: Some investment is already releasing or released.
        """
        unwound: list[EscrowInvestmentRead] = []
        for _ in range(UNWIND_PASSES):
            investments = await self._escrows.list_investments(
                tenant_id,
                InvestmentFilter(
                    deal_id=deal_id,
                    statuses=[
                        InvestmentStatus.INTENT,
                        InvestmentStatus.ESCROWED,
                        InvestmentStatus.KYC_APPROVED,
                        InvestmentStatus.RELEASE_PENDING,
                        InvestmentStatus.RELEASED,
                    ],
                ),
            )
            settling = [
                inv for inv in investments
                if inv.status in (InvestmentStatus.RELEASE_PENDING, InvestmentStatus.RELEASED)
            ]
            if settling:
                raise SettlementInFlightError(
                    f"{len(settling)} investment(s) of deal {deal_id} are settling or settled"
                )
            if not investments:
                break

            for inv in investments:
                try:
                    unwound.append(
                        await self._start_refund(tenant_id, inv, RefundReason.DEAL_CANCELLED, actor)
                    )
                except Exception:
                    logger.exception(
                        "deal.unwind_failed", tenant_id=tenant_id, deal_id=deal_id, investment_id=inv.id
                    )

        logger.info("deal.investments_unwound", tenant_id=tenant_id, deal_id=deal_id, count=len(unwound))
        return unwound

    async def unwind_cancelled_deals(self, tenant_id: str) -> int:
        """Refund or cancel investments still open on cancelled deals."""
        unwound = 0
        cancelled = await self._deals.list_deals(tenant_id, DealFilter(status=DealStatus.CANCELLED))
        for deal in cancelled:
            try:
                unwound += len(await self.cancel_deal_investments(tenant_id, deal.id, SYSTEM_ACTOR))
            except Exception:
                logger.exception("deal.unwind_sweep_failed", tenant_id=tenant_id, deal_id=deal.id)
        return unwound

    # ── Sweeps ──────────────────────────────────────────────────────────────

    async def expire_overdue(self, tenant_id: str) -> int:
        """Cancel or refund everything past its escrow expiry or review deadline."""
        now = self._clock()
        expired = 0
        for inv in await self._escrows.list_overdue(tenant_id, now):
            reason = timeout_reason(inv.status)
            deadline = inv.review_deadline if inv.status == InvestmentStatus.KYC_APPROVED else inv.expires_at
            if reason is None or not is_overdue(deadline, now):
                continue
            try:
                await self._start_refund(tenant_id, inv, reason, SYSTEM_ACTOR)
                expired += 1
            except Exception:
                logger.exception("escrow.expire_failed", tenant_id=tenant_id, investment_id=inv.id)
        if expired:
            logger.info("escrow.expired", tenant_id=tenant_id, count=expired)
        return expired

    async def retry_pending_transactions(self, tenant_id: str) -> int:
        """Resubmit chain transactions that failed or were never sent."""
        resubmitted = 0
        for inv in await self._escrows.list_awaiting_chain(tenant_id):
            if inv.tx_attempts >= self._max_tx_attempts:
                logger.error(
                    "escrow.tx_attempts_exhausted",
                    tenant_id=tenant_id,
                    investment_id=inv.id,
                    status=inv.status.value,
                    attempts=inv.tx_attempts,
                    last_error=inv.last_error,
                )
                continue
            try:
                if inv.status == InvestmentStatus.INTENT:
                    await self._submit_escrow_creation(tenant_id, inv)
                elif inv.status == InvestmentStatus.RELEASE_PENDING:
                    await self._submit_release(tenant_id, inv)
                elif inv.status == InvestmentStatus.REFUND_PENDING:
                    await self._submit_refund(tenant_id, inv)
                else:
                    continue
                resubmitted += 1
            except Exception:
                logger.exception("escrow.retry_failed", tenant_id=tenant_id, investment_id=inv.id)
        return resubmitted

    # ── Internals ───────────────────────────────────────────────────────────

    async def _transition(
        self,
        tenant_id: str,
        inv: EscrowInvestmentRead,
        to_status: InvestmentStatus,
        actor: str,
        *,
        reason: str | None = None,
        fields: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> EscrowInvestmentRead:
        validate_transition(inv.status, to_status)
        allocation = None
        if to_status in (InvestmentStatus.CANCELLED, InvestmentStatus.REFUND_PENDING) and holds_allocation(inv.status):
            allocation = AllocationChange(inv.deal_id, inv.amount)
        elif to_status == InvestmentStatus.RELEASED:
            allocation = AllocationChange(inv.deal_id, inv.amount, settled=True)

        updated = await self._escrows.transition(
            tenant_id,
            inv.id,
            from_status=inv.status,
            to_status=to_status,
            expected_version=inv.version,
            actor=actor,
            reason=reason,
            fields=fields,
            metadata=metadata,
            allocation=allocation,
        )
        record_transition(inv.status.value, to_status.value, tenant_id)

        logger.info(
            "escrow.transitioned",
            tenant_id=tenant_id,
            investment_id=inv.id,
            from_status=inv.status.value,
            to_status=to_status.value,
            actor=actor,
            reason=reason,
        )
        await self._publish(
            tenant_id,
            EventType.INVESTMENT_TRANSITIONED,
            inv.id,
            actor,
            {
                "deal_id": inv.deal_id,
                "from_status": inv.status.value,
                "to_status": to_status.value,
                "reason": reason,
            },
        )
        return updated

    async def _start_refund(
        self,
        tenant_id: str,
        inv: EscrowInvestmentRead,
        reason: RefundReason,
        actor: str,
        note: str | None = None,
    ) -> EscrowInvestmentRead:
        """Cancel an unfunded intent, or move funds toward the investor."""
        if inv.status == InvestmentStatus.INTENT:
            return await self._transition(
                tenant_id,
                inv,
                InvestmentStatus.CANCELLED,
                actor,
                reason=reason.value,
                fields={"refund_reason": reason, "note": note},
            )

        inv = await self._transition(
            tenant_id,
            inv,
            InvestmentStatus.REFUND_PENDING,
            actor,
            reason=reason.value,
            fields={"refund_reason": reason, "note": note, "tx_attempts": 0, "last_error": None},
        )
        record_refund(reason.value, tenant_id)
        return await self._submit_refund(tenant_id, inv)

    async def _record_fields(
        self, tenant_id: str, inv: EscrowInvestmentRead, fields: dict[str, Any]
    ) -> EscrowInvestmentRead:
        """Store chain bookkeeping; on a lost race keep the winner's row.

        A missing hash is harmless: the sweeper resubmits with the same
        attempt number and the relayer deduplicates by idempotency key.
        """
        try:
            return await self._escrows.update_fields(
                tenant_id, inv.id, expected_version=inv.version, fields=fields
            )
        except ConcurrentModificationError:
            logger.warning("escrow.chain_fields_conflict", tenant_id=tenant_id, investment_id=inv.id)
            return await self.get_investment(tenant_id, inv.id)

    async def _chain_failed(
        self, tenant_id: str, inv: EscrowInvestmentRead, operation: str, error: ChainGatewayError
    ) -> EscrowInvestmentRead:
        record_chain_failure(operation, tenant_id)
        logger.warning(
            "escrow.chain_call_failed",
            tenant_id=tenant_id,
            investment_id=inv.id,
            operation=operation,
            attempts=inv.tx_attempts + 1,
            error=error.message,
        )
        return await self._record_fields(
            tenant_id, inv, {"tx_attempts": inv.tx_attempts + 1, "last_error": error.message}
        )

    async def _submit_escrow_creation(
        self, tenant_id: str, inv: EscrowInvestmentRead
    ) -> EscrowInvestmentRead:
        try:
            created = await self._chain.create_escrow(
                inv.id,
                inv.investor_wallet,
                inv.amount,
                inv.currency,
                inv.expires_at,
                attempt=inv.tx_attempts,
            )
        except ChainGatewayError as e:
            return await self._chain_failed(tenant_id, inv, "create_escrow", e)
        return await self._record_fields(
            tenant_id,
            inv,
            {"escrow_address": created.escrow_address, "create_tx_hash": created.tx_hash, "last_error": None},
        )

    async def _submit_release(
        self,
        tenant_id: str,
        inv: EscrowInvestmentRead,
        beneficiary_wallet: str | None = None,
    ) -> EscrowInvestmentRead:
        if beneficiary_wallet is None:
            deal = await self._deals.get(tenant_id, inv.deal_id)
            if deal is None:
                raise DealNotFoundError(f"Deal not found: {inv.deal_id}")
            beneficiary_wallet = deal.issuer_wallet
        try:
            tx_hash = await self._chain.release(inv.escrow_address, beneficiary_wallet, attempt=inv.tx_attempts)
        except ChainGatewayError as e:
            return await self._chain_failed(tenant_id, inv, "release", e)
        return await self._record_fields(tenant_id, inv, {"release_tx_hash": tx_hash, "last_error": None})

    async def _submit_refund(
        self, tenant_id: str, inv: EscrowInvestmentRead
    ) -> EscrowInvestmentRead:
        try:
            tx_hash = await self._chain.refund(inv.escrow_address, inv.investor_wallet, attempt=inv.tx_attempts)
        except ChainGatewayError as e:
            return await self._chain_failed(tenant_id, inv, "refund", e)
        return await self._record_fields(tenant_id, inv, {"refund_tx_hash": tx_hash, "last_error": None})

    async def _publish(
        self,
        tenant_id: str,
        event_type: EventType,
        subject_id: str,
        actor: str,
        data: dict[str, Any],
    ) -> None:
        """Best-effort notification after the change has committed."""
        if self._event_bus_factory is None:
            return
        try:
            bus = self._event_bus_factory(tenant_id)
            await bus.publish(
                ESCROW_STREAM,
                DomainEvent(
                    event_type=event_type,
                    tenant_id=tenant_id,
                    subject_id=subject_id,
                    actor=actor,
                    data=data,
                ),
            )
        except Exception as e:
            logger.warning("escrow.event_publish_failed", tenant_id=tenant_id, subject_id=subject_id, error=str(e))
