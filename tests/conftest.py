"""Shared fixtures and in-memory test doubles.

Provides:
- Settings pinned to test secrets (webhook secrets, admin key)
- InMemoryDealRepository / InMemoryEscrowRepository / InMemoryInvestorRepository
  mirroring the compare-and-set semantics of the SQL repositories
- FakeChainClient recording every relayer call, with switchable failures
- FakeClock for deadline arithmetic
- EscrowLifecycleService and DealService wired to the doubles

No database or Redis is needed; API tests mount a single router on a bare
FastAPI app and override auth dependencies.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from unittest.mock import MagicMock

import pytest

from src.app.chain.schemas import EscrowCreated
from src.app.config import get_settings
from src.app.deals.repository import AllocationChange
from src.app.deals.schemas import DealCreate, DealFilter, DealRead, DealStatus, DealUpdate
from src.app.deals.service import DealService
from src.app.escrow.errors import (
    ChainGatewayError,
    ConcurrentModificationError,
    DealNotFoundError,
    InvalidTransitionError,
)
from src.app.escrow.schemas import (
    EscrowEventRead,
    EscrowInvestmentCreate,
    EscrowInvestmentRead,
    InvestmentFilter,
    InvestmentStatus,
    InvestorProfile,
    KycStatus,
)
from src.app.escrow.service import EscrowLifecycleService
from src.app.escrow.state_machine import ALLOCATION_HOLDING_STATUSES

TENANT_A = str(uuid.uuid4())
TENANT_B = str(uuid.uuid4())

CHAIN_SECRET = "chain-test-secret"
KYC_SECRET = "kyc-test-secret"
ADMIN_KEY = "platform-admin-test-key"

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    """Pin secrets and limits for every test, then drop the cached Settings."""
    monkeypatch.setenv("CHAIN_WEBHOOK_SECRET", CHAIN_SECRET)
    monkeypatch.setenv("KYC_WEBHOOK_SECRET", KYC_SECRET)
    monkeypatch.setenv("PLATFORM_ADMIN_KEY", ADMIN_KEY)
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "120")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _wallet() -> str:
    return "0x" + uuid.uuid4().hex + uuid.uuid4().hex[:8]


def _coerce(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}


# ── Clock ────────────────────────────────────────────────────────────────────


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ── Investors ────────────────────────────────────────────────────────────────


class InMemoryInvestorRepository:
    def __init__(self) -> None:
        self._profiles: dict[tuple[str, str], InvestorProfile] = {}

    def add(
        self,
        tenant_id: str,
        *,
        wallet: str | None = "default",
        kyc_status: KycStatus = KycStatus.NOT_STARTED,
        kyc_reference: str | None = None,
    ) -> InvestorProfile:
        investor_id = str(uuid.uuid4())
        profile = InvestorProfile(
            id=investor_id,
            email=f"{investor_id[:8]}@investors.example",
            wallet_address=_wallet() if wallet == "default" else wallet,
            kyc_status=kyc_status,
            kyc_reference=kyc_reference,
        )
        self._profiles[(tenant_id, investor_id)] = profile
        return profile

    async def get_profile(self, tenant_id: str, user_id: str) -> InvestorProfile | None:
        return self._profiles.get((tenant_id, user_id))

    async def get_by_kyc_reference(self, tenant_id: str, reference: str) -> InvestorProfile | None:
        for (tid, _), profile in self._profiles.items():
            if tid == tenant_id and profile.kyc_reference == reference:
                return profile
        return None

    async def set_kyc_status(
        self, tenant_id: str, user_id: str, status: KycStatus, reference: str | None = None
    ) -> InvestorProfile:
        profile = self._profiles.get((tenant_id, user_id))
        if profile is None:
            raise ValueError(f"User not found: tenant={tenant_id}, id={user_id}")
        update: dict[str, Any] = {"kyc_status": status}
        if reference is not None:
            update["kyc_reference"] = reference
        profile = profile.model_copy(update=update)
        self._profiles[(tenant_id, user_id)] = profile
        return profile

    async def set_wallet(self, tenant_id: str, user_id: str, wallet_address: str) -> InvestorProfile:
        profile = self._profiles.get((tenant_id, user_id))
        if profile is None:
            raise ValueError(f"User not found: tenant={tenant_id}, id={user_id}")
        profile = profile.model_copy(update={"wallet_address": wallet_address})
        self._profiles[(tenant_id, user_id)] = profile
        return profile


# ── Deals ────────────────────────────────────────────────────────────────────


class InMemoryDealRepository:
    def __init__(self) -> None:
        self._deals: dict[str, DealRead] = {}
        self.fail_allocation = False

    def _owned(self, tenant_id: str, deal_id: str) -> DealRead | None:
        deal = self._deals.get(deal_id)
        if deal is None or deal.tenant_id != tenant_id:
            return None
        return deal

    def _save(self, deal: DealRead, **changes: Any) -> DealRead:
        updated = deal.model_copy(update=changes)
        self._deals[deal.id] = updated
        return updated

    async def create(self, tenant_id: str, issuer_id: str, data: DealCreate) -> DealRead:
        deal = DealRead(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            issuer_id=issuer_id,
            status=DealStatus.DRAFT,
            created_at=datetime.now(timezone.utc),
            **data.model_dump(),
        )
        self._deals[deal.id] = deal
        return deal

    async def get(self, tenant_id: str, deal_id: str) -> DealRead | None:
        return self._owned(tenant_id, deal_id)

    async def list_deals(self, tenant_id: str, filters: DealFilter | None = None) -> list[DealRead]:
        deals = [d for d in self._deals.values() if d.tenant_id == tenant_id]
        if filters and filters.status:
            deals = [d for d in deals if d.status == filters.status]
        if filters and filters.issuer_id:
            deals = [d for d in deals if d.issuer_id == filters.issuer_id]
        return deals

    async def update(self, tenant_id: str, deal_id: str, data: DealUpdate) -> DealRead:
        deal = self._owned(tenant_id, deal_id)
        if deal is None:
            raise DealNotFoundError(f"Deal not found: {deal_id}")
        if deal.status != DealStatus.DRAFT:
            raise InvalidTransitionError(deal.status.value, "edited", [])
        return self._save(deal, version=deal.version + 1, **data.model_dump(exclude_none=True))

    async def set_status(
        self,
        tenant_id: str,
        deal_id: str,
        from_status: DealStatus,
        to_status: DealStatus,
        expected_version: int,
    ) -> DealRead:
        deal = self._owned(tenant_id, deal_id)
        if deal is None or deal.status != from_status or deal.version != expected_version:
            raise ConcurrentModificationError(f"Deal {deal_id} changed concurrently")
        return self._save(deal, status=to_status, version=deal.version + 1)

    async def reserve_allocation(self, tenant_id: str, deal_id: str, amount: Decimal) -> bool:
        deal = self._owned(tenant_id, deal_id)
        if deal is None or deal.status != DealStatus.OPEN:
            return False
        if deal.amount_reserved + deal.amount_raised + amount > deal.target_amount:
            return False
        self._save(deal, amount_reserved=deal.amount_reserved + amount)
        return True

    async def release_allocation(self, tenant_id: str, deal_id: str, amount: Decimal) -> None:
        deal = self._owned(tenant_id, deal_id)
        if deal is not None:
            self._save(deal, amount_reserved=max(deal.amount_reserved - amount, Decimal("0")))

    def apply_allocation(self, tenant_id: str, change: AllocationChange) -> None:
        """Counter update run inside InMemoryEscrowRepository.transition."""
        if self.fail_allocation:
            raise ConnectionError("deal counter update failed")
        deal = self._owned(tenant_id, change.deal_id)
        if deal is None:
            return
        changes: dict[str, Any] = {"amount_reserved": max(deal.amount_reserved - change.amount, Decimal("0"))}
        if change.settled:
            changes["amount_raised"] = deal.amount_raised + change.amount
        self._save(deal, **changes)


# ── Escrow investments ───────────────────────────────────────────────────────


class InMemoryEscrowRepository:
    """Mirrors EscrowRepository, including version-checked updates.

    ``before_write`` lets a test run a competing writer right before the
    next transition or field update compares versions. Allocation changes
    go to ``deals`` before the row is written, so a failing counter update
    leaves both untouched, as the shared SQL transaction does.
    """

    def __init__(self, deals: InMemoryDealRepository) -> None:
        self._deals = deals
        self._rows: dict[str, EscrowInvestmentRead] = {}
        self._events: dict[str, list[EscrowEventRead]] = {}
        self.before_write: Callable[[], Awaitable[None]] | None = None

    async def _interleave(self) -> None:
        hook, self.before_write = self.before_write, None
        if hook is not None:
            await hook()

    def _owned(self, tenant_id: str, investment_id: str) -> EscrowInvestmentRead | None:
        inv = self._rows.get(investment_id)
        if inv is None or inv.tenant_id != tenant_id:
            return None
        return inv

    def _event(self, investment_id: str, from_status, to_status, actor, reason, metadata) -> None:
        self._events.setdefault(investment_id, []).append(
            EscrowEventRead(
                id=str(uuid.uuid4()),
                investment_id=investment_id,
                from_status=from_status,
                to_status=to_status,
                actor=actor,
                reason=reason,
                metadata=metadata or {},
                created_at=datetime.now(timezone.utc),
            )
        )

    async def create(self, tenant_id: str, data: EscrowInvestmentCreate, actor: str) -> EscrowInvestmentRead:
        inv = EscrowInvestmentRead(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            status=InvestmentStatus.INTENT,
            created_at=datetime.now(timezone.utc),
            **data.model_dump(),
        )
        self._rows[inv.id] = inv
        self._event(inv.id, None, InvestmentStatus.INTENT, actor, "created", {"amount": str(data.amount)})
        return inv

    async def get(self, tenant_id: str, investment_id: str) -> EscrowInvestmentRead | None:
        return self._owned(tenant_id, investment_id)

    async def get_by_escrow_address(self, tenant_id: str, escrow_address: str) -> EscrowInvestmentRead | None:
        for inv in self._rows.values():
            if (
                inv.tenant_id == tenant_id
                and inv.escrow_address
                and inv.escrow_address.lower() == escrow_address.lower()
            ):
                return inv
        return None

    async def list_investments(
        self, tenant_id: str, filters: InvestmentFilter | None = None
    ) -> list[EscrowInvestmentRead]:
        rows = [inv for inv in self._rows.values() if inv.tenant_id == tenant_id]
        if filters:
            if filters.deal_id:
                rows = [inv for inv in rows if inv.deal_id == filters.deal_id]
            if filters.investor_id:
                rows = [inv for inv in rows if inv.investor_id == filters.investor_id]
            if filters.statuses:
                rows = [inv for inv in rows if inv.status in filters.statuses]
        return rows

    async def list_overdue(self, tenant_id: str, now: datetime) -> list[EscrowInvestmentRead]:
        overdue = []
        for inv in self._rows.values():
            if inv.tenant_id != tenant_id:
                continue
            if inv.status in (InvestmentStatus.INTENT, InvestmentStatus.ESCROWED) and inv.expires_at <= now:
                overdue.append(inv)
            elif (
                inv.status == InvestmentStatus.KYC_APPROVED
                and inv.review_deadline is not None
                and inv.review_deadline <= now
            ):
                overdue.append(inv)
        return overdue

    async def list_awaiting_chain(self, tenant_id: str) -> list[EscrowInvestmentRead]:
        return [
            inv
            for inv in self._rows.values()
            if inv.tenant_id == tenant_id
            and (
                (inv.status == InvestmentStatus.INTENT and inv.escrow_address is None)
                or (inv.status == InvestmentStatus.RELEASE_PENDING and inv.release_tx_hash is None)
                or (inv.status == InvestmentStatus.REFUND_PENDING and inv.refund_tx_hash is None)
            )
        ]

    async def active_amount_for_investor(self, tenant_id: str, deal_id: str, investor_id: str) -> Decimal:
        return sum(
            (
                inv.amount
                for inv in self._rows.values()
                if inv.tenant_id == tenant_id
                and inv.deal_id == deal_id
                and inv.investor_id == investor_id
                and inv.status in ALLOCATION_HOLDING_STATUSES
            ),
            Decimal("0"),
        )

    async def transition(
        self,
        tenant_id: str,
        investment_id: str,
        *,
        from_status: InvestmentStatus,
        to_status: InvestmentStatus,
        expected_version: int,
        actor: str,
        reason: str | None = None,
        fields: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        allocation: AllocationChange | None = None,
    ) -> EscrowInvestmentRead:
        await self._interleave()
        inv = self._owned(tenant_id, investment_id)
        if inv is None or inv.status != from_status or inv.version != expected_version:
            raise ConcurrentModificationError(
                f"Investment {investment_id} changed concurrently; expected {from_status.value} v{expected_version}"
            )
        if allocation is not None:
            self._deals.apply_allocation(tenant_id, allocation)
        updated = EscrowInvestmentRead(
            **{**inv.model_dump(), **_coerce(fields or {}), "status": to_status, "version": inv.version + 1}
        )
        self._rows[investment_id] = updated
        self._event(investment_id, from_status, to_status, actor, reason, metadata)
        return updated

    async def update_fields(
        self,
        tenant_id: str,
        investment_id: str,
        *,
        expected_version: int,
        fields: dict[str, Any],
    ) -> EscrowInvestmentRead:
        await self._interleave()
        inv = self._owned(tenant_id, investment_id)
        if inv is None or inv.version != expected_version:
            raise ConcurrentModificationError(
                f"Investment {investment_id} changed concurrently; expected v{expected_version}"
            )
        updated = EscrowInvestmentRead(**{**inv.model_dump(), **_coerce(fields), "version": inv.version + 1})
        self._rows[investment_id] = updated
        return updated

    async def list_events(self, tenant_id: str, investment_id: str) -> list[EscrowEventRead]:
        if self._owned(tenant_id, investment_id) is None:
            return []
        return list(self._events.get(investment_id, []))


# ── Chain relayer ────────────────────────────────────────────────────────────


class FakeChainClient:
    """Records relayer calls; set ``fail`` to an operation name (or "all") to make it raise."""

    chain_id = 1

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail: set[str] = set()
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter:064x}"[-66:]

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail or "all" in self.fail:
            raise ChainGatewayError(f"EscrowFactory {operation} failed: relayer unavailable")

    def calls_for(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for op, kwargs in self.calls if op == operation]

    async def create_escrow(self, investment_id, investor_wallet, amount, currency, expires_at, attempt=0):
        self.calls.append(("create_escrow", {"investment_id": investment_id, "attempt": attempt}))
        self._maybe_fail("create_escrow")
        return EscrowCreated(escrow_address="0x" + uuid.uuid4().hex + "abcd1234", tx_hash=self._next("0x"))

    async def release(self, escrow_address, beneficiary_wallet, attempt=0):
        self.calls.append(
            ("release", {"escrow_address": escrow_address, "beneficiary": beneficiary_wallet, "attempt": attempt})
        )
        self._maybe_fail("release")
        return self._next("0x")

    async def refund(self, escrow_address, investor_wallet, attempt=0):
        self.calls.append(
            ("refund", {"escrow_address": escrow_address, "recipient": investor_wallet, "attempt": attempt})
        )
        self._maybe_fail("refund")
        return self._next("0x")


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def investors() -> InMemoryInvestorRepository:
    return InMemoryInvestorRepository()


@pytest.fixture
def deals() -> InMemoryDealRepository:
    return InMemoryDealRepository()


@pytest.fixture
def escrows(deals) -> InMemoryEscrowRepository:
    return InMemoryEscrowRepository(deals)


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def published() -> list:
    """Events captured by the fake bus factory, as (stream, DomainEvent)."""
    return []


@pytest.fixture
def bus_factory(published):
    class _Bus:
        def __init__(self, tenant_id: str) -> None:
            self.tenant_id = tenant_id

        async def publish(self, stream, event):
            published.append((stream, event))
            return "0-1"

    return _Bus


@pytest.fixture
def escrow_service(escrows, deals, investors, chain, clock, bus_factory) -> EscrowLifecycleService:
    return EscrowLifecycleService(
        escrows,
        deals,
        investors,
        chain,
        escrow_duration_days=30,
        review_deadline_days=14,
        max_tx_attempts=3,
        event_bus_factory=bus_factory,
        clock=clock,
    )


@pytest.fixture
def deal_service(deals, escrow_service, bus_factory) -> DealService:
    return DealService(deals, escrow_service, event_bus_factory=bus_factory)


@pytest.fixture
def make_open_deal(deals):
    """Create an OPEN deal directly in the repository."""

    async def _make(
        tenant_id: str = TENANT_A,
        *,
        target: str = "100000",
        min_investment: str = "100",
        max_investment: str | None = None,
        issuer_id: str | None = None,
    ) -> DealRead:
        deal = await deals.create(
            tenant_id,
            issuer_id or str(uuid.uuid4()),
            DealCreate(
                title="Harbor Logistics Series A",
                token_symbol="HRBR",
                issuer_wallet=_wallet(),
                price_per_token=Decimal("1.25"),
                target_amount=Decimal(target),
                min_investment=Decimal(min_investment),
                max_investment=Decimal(max_investment) if max_investment else None,
            ),
        )
        return await deals.set_status(tenant_id, deal.id, DealStatus.DRAFT, DealStatus.OPEN, deal.version)

    return _make


@pytest.fixture
def tenant_id() -> str:
    return TENANT_A


@pytest.fixture
def other_tenant_id() -> str:
    return TENANT_B


# ── Redis ────────────────────────────────────────────────────────────────────


class FakeTenantRedis:
    """Dict-backed stand-in for TenantRedis (keys are already tenant-local)."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise ConnectionError("redis unavailable")

    async def get(self, key: str) -> str | None:
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool:
        self._check()
        if nx and key in self.store:
            return False
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, key: str) -> int:
        self._check()
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0

    async def incr(self, key: str) -> int:
        self._check()
        value = int(self.store.get(key, "0")) + 1
        self.store[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if key not in self.store:
            return False
        self.ttls[key] = seconds
        return True


@pytest.fixture
def fake_redis() -> FakeTenantRedis:
    return FakeTenantRedis()


# ── Users ────────────────────────────────────────────────────────────────────


@pytest.fixture
def make_user():
    """Build a mock User row for auth overrides."""

    def _make(role: str = "investor", user_id: str | None = None, **extra: Any) -> MagicMock:
        user = MagicMock()
        user.id = uuid.UUID(user_id) if user_id else uuid.uuid4()
        user.tenant_id = uuid.UUID(TENANT_A)
        user.email = extra.pop("email", f"{str(user.id)[:8]}@example.com")
        user.role = role
        user.is_active = True
        user.kyc_status = extra.pop("kyc_status", "not_started")
        user.kyc_reference = extra.pop("kyc_reference", None)
        user.kyc_updated_at = extra.pop("kyc_updated_at", None)
        for key, value in extra.items():
            setattr(user, key, value)
        return user

    return _make
