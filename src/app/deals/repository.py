"""Deal repository -- async CRUD and allocation accounting for deals.

Uses the session_factory callable pattern shared by every repository in
the app. All methods take tenant_id as first argument for tenant-scoped
queries.

Status changes and allocation updates are single conditional UPDATE ...
RETURNING statements. A status change matches on (status, version) and
bumps the version; reserving allocation matches on the remaining cap, so
two investors can never oversubscribe a deal between a read and a write.
Releasing or settling a reservation rides on the investment transition
that causes it (see allocation_statement), so the counters never drift
from the investment statuses.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy import Update, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.deals.models import DealModel
from src.app.deals.schemas import DealCreate, DealFilter, DealRead, DealStatus, DealUpdate
from src.app.escrow.errors import (
    ConcurrentModificationError,
    DealNotFoundError,
    InvalidTransitionError,
)

logger = structlog.get_logger(__name__)


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


@dataclass(frozen=True)
class AllocationChange:
    """Deal counter adjustment that commits with an investment transition.

    The amount always leaves amount_reserved; ``settled`` moves it into
    amount_raised instead of back to the pool.
    """

    deal_id: str
    amount: Decimal
    settled: bool = False


def allocation_statement(tenant_id: str, change: AllocationChange) -> Update:
    values = {"amount_reserved": func.greatest(DealModel.amount_reserved - change.amount, 0)}
    if change.settled:
        values["amount_raised"] = DealModel.amount_raised + change.amount
    return (
        update(DealModel)
        .where(
            DealModel.tenant_id == uuid.UUID(tenant_id),
            DealModel.id == uuid.UUID(change.deal_id),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def _model_to_deal(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        issuer_id=str(model.issuer_id),
        issuer_wallet=model.issuer_wallet,
        title=model.title,
        description=model.description,
        token_symbol=model.token_symbol,
        token_address=model.token_address,
        currency=model.currency,
        price_per_token=model.price_per_token,
        target_amount=model.target_amount,
        min_investment=model.min_investment or Decimal("0"),
        max_investment=model.max_investment,
        amount_reserved=model.amount_reserved or Decimal("0"),
        amount_raised=model.amount_raised or Decimal("0"),
        status=DealStatus(model.status),
        version=model.version,
        opens_at=model.opens_at,
        closes_at=model.closes_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class DealRepository:
    """Async persistence for deals.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def create(self, tenant_id: str, issuer_id: str, data: DealCreate) -> DealRead:
        """Persist a new DRAFT deal owned by ``issuer_id``."""
        async for session in self._session_factory():
            model = DealModel(
                tenant_id=uuid.UUID(tenant_id),
                issuer_id=uuid.UUID(issuer_id),
                status=DealStatus.DRAFT.value,
                version=1,
                amount_reserved=Decimal("0"),
                amount_raised=Decimal("0"),
                **data.model_dump(),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_deal(model)

    async def get(self, tenant_id: str, deal_id: str) -> DealRead | None:
        deal_uuid = _parse_uuid(deal_id)
        if deal_uuid is None:
            return None
        async for session in self._session_factory():
            stmt = select(DealModel).where(
                DealModel.tenant_id == uuid.UUID(tenant_id),
                DealModel.id == deal_uuid,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_deal(model) if model else None

    async def list_deals(self, tenant_id: str, filters: DealFilter | None = None) -> list[DealRead]:
        """List deals for a tenant, newest first."""
        async for session in self._session_factory():
            stmt = select(DealModel).where(DealModel.tenant_id == uuid.UUID(tenant_id))
            if filters is not None:
                if filters.status is not None:
                    stmt = stmt.where(DealModel.status == filters.status.value)
                if filters.issuer_id is not None:
                    issuer_uuid = _parse_uuid(filters.issuer_id)
                    if issuer_uuid is None:
                        return []
                    stmt = stmt.where(DealModel.issuer_id == issuer_uuid)
            stmt = stmt.order_by(DealModel.created_at.desc())
            result = await session.execute(stmt)
            return [_model_to_deal(m) for m in result.scalars().all()]

    async def update(self, tenant_id: str, deal_id: str, data: DealUpdate) -> DealRead:
        """Apply a partial update to a DRAFT deal.

        Raises:
            DealNotFoundError: If the deal does not exist in this tenant.
            InvalidTransitionError: If the deal has left DRAFT.
        """
        deal_uuid = _parse_uuid(deal_id)
        if deal_uuid is None:
            raise DealNotFoundError(f"Deal not found: {deal_id}")
        async for session in self._session_factory():
            stmt = select(DealModel).where(
                DealModel.tenant_id == uuid.UUID(tenant_id),
                DealModel.id == deal_uuid,
            ).with_for_update()
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise DealNotFoundError(f"Deal not found: {deal_id}")
            if model.status != DealStatus.DRAFT.value:
                raise InvalidTransitionError(model.status, "edited", [])

            for key, value in data.model_dump(exclude_none=True).items():
                setattr(model, key, value)
            model.version = model.version + 1
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_deal(model)

    async def set_status(
        self,
        tenant_id: str,
        deal_id: str,
        from_status: DealStatus,
        to_status: DealStatus,
        expected_version: int,
    ) -> DealRead:
        """Compare-and-set the deal status.

        Raises:
            ConcurrentModificationError: If status or version changed underneath.
        """
        async for session in self._session_factory():
            stmt = (
                update(DealModel)
                .where(
                    DealModel.tenant_id == uuid.UUID(tenant_id),
                    DealModel.id == uuid.UUID(deal_id),
                    DealModel.status == from_status.value,
                    DealModel.version == expected_version,
                )
                .values(
                    status=to_status.value,
                    version=DealModel.version + 1,
                    updated_at=func.now(),
                )
                .returning(DealModel)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                await session.rollback()
                raise ConcurrentModificationError(
                    f"Deal {deal_id} changed concurrently; expected {from_status.value} v{expected_version}"
                )
            await session.commit()
            logger.info(
                "deal.status_changed",
                tenant_id=tenant_id,
                deal_id=deal_id,
                from_status=from_status.value,
                to_status=to_status.value,
            )
            return _model_to_deal(model)

    async def reserve_allocation(self, tenant_id: str, deal_id: str, amount: Decimal) -> bool:
        """Atomically reserve ``amount`` against the deal's hard cap.

        Returns False when the deal is not OPEN or the cap would be exceeded.
        """
        async for session in self._session_factory():
            stmt = (
                update(DealModel)
                .where(
                    DealModel.tenant_id == uuid.UUID(tenant_id),
                    DealModel.id == uuid.UUID(deal_id),
                    DealModel.status == DealStatus.OPEN.value,
                    DealModel.amount_reserved + DealModel.amount_raised + amount
                    <= DealModel.target_amount,
                )
                .values(amount_reserved=DealModel.amount_reserved + amount)
                .returning(DealModel.id)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            reserved = result.scalar_one_or_none() is not None
            await session.commit()
            return reserved

    async def release_allocation(self, tenant_id: str, deal_id: str, amount: Decimal) -> None:
        """Return a reservation to the pool outside any investment transition."""
        async for session in self._session_factory():
            await session.execute(allocation_statement(tenant_id, AllocationChange(deal_id, amount)))
            await session.commit()
