"""Escrow repository -- persistence for investments and their audit trail.

Every status change goes through ``transition``: one conditional UPDATE
matching (tenant_id, id, status, version), the matching EscrowEventModel
insert and any deal allocation change, committed together. If the UPDATE
matches no row, nothing is written and ConcurrentModificationError is
raised, so a lost race never leaves an orphan audit row or a drifted
deal counter.

All methods take tenant_id as first argument for tenant-scoped queries.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.deals.repository import AllocationChange, allocation_statement
from src.app.escrow.errors import ConcurrentModificationError
from src.app.escrow.models import EscrowEventModel, EscrowInvestmentModel
from src.app.escrow.schemas import (
    EscrowEventRead,
    EscrowInvestmentCreate,
    EscrowInvestmentRead,
    InvestmentFilter,
    InvestmentStatus,
    RefundReason,
)
from src.app.escrow.state_machine import ALLOCATION_HOLDING_STATUSES

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _coerce(fields: dict[str, Any]) -> dict[str, Any]:
    """Store enums by value."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}


def _model_to_investment(model: EscrowInvestmentModel) -> EscrowInvestmentRead:
    """Convert EscrowInvestmentModel to EscrowInvestmentRead schema."""
    return EscrowInvestmentRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        deal_id=str(model.deal_id),
        investor_id=str(model.investor_id),
        investor_wallet=model.investor_wallet,
        amount=model.amount,
        currency=model.currency,
        status=InvestmentStatus(model.status),
        version=model.version,
        chain_id=model.chain_id,
        escrow_address=model.escrow_address,
        create_tx_hash=model.create_tx_hash,
        deposit_tx_hash=model.deposit_tx_hash,
        release_tx_hash=model.release_tx_hash,
        refund_tx_hash=model.refund_tx_hash,
        refund_reason=RefundReason(model.refund_reason) if model.refund_reason else None,
        note=model.note,
        expires_at=model.expires_at,
        review_deadline=model.review_deadline,
        funded_at=model.funded_at,
        kyc_approved_at=model.kyc_approved_at,
        settled_at=model.settled_at,
        refunded_at=model.refunded_at,
        tx_attempts=model.tx_attempts or 0,
        last_error=model.last_error,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_event(model: EscrowEventModel) -> EscrowEventRead:
    return EscrowEventRead(
        id=str(model.id),
        investment_id=str(model.investment_id),
        from_status=InvestmentStatus(model.from_status) if model.from_status else None,
        to_status=InvestmentStatus(model.to_status),
        actor=model.actor,
        reason=model.reason,
        metadata=model.metadata_json or {},
        created_at=model.created_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class EscrowRepository:
    """Async persistence for escrow investments and escrow events.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def create(
        self, tenant_id: str, data: EscrowInvestmentCreate, actor: str
    ) -> EscrowInvestmentRead:
        """Insert an INTENT investment together with its creation event."""
        async for session in self._session_factory():
            model = EscrowInvestmentModel(
                id=uuid.uuid4(),
                tenant_id=uuid.UUID(tenant_id),
                deal_id=uuid.UUID(data.deal_id),
                investor_id=uuid.UUID(data.investor_id),
                investor_wallet=data.investor_wallet,
                amount=data.amount,
                currency=data.currency,
                chain_id=data.chain_id,
                expires_at=data.expires_at,
                status=InvestmentStatus.INTENT.value,
                version=1,
                tx_attempts=0,
            )
            session.add(model)
            session.add(
                EscrowEventModel(
                    tenant_id=model.tenant_id,
                    investment_id=model.id,
                    from_status=None,
                    to_status=InvestmentStatus.INTENT.value,
                    actor=actor,
                    reason="created",
                    metadata_json={"amount": str(data.amount)},
                )
            )
            await session.commit()
            await session.refresh(model)
            return _model_to_investment(model)

    async def get(self, tenant_id: str, investment_id: str) -> EscrowInvestmentRead | None:
        investment_uuid = _parse_uuid(investment_id)
        if investment_uuid is None:
            return None
        async for session in self._session_factory():
            stmt = select(EscrowInvestmentModel).where(
                EscrowInvestmentModel.tenant_id == uuid.UUID(tenant_id),
                EscrowInvestmentModel.id == investment_uuid,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_investment(model) if model else None

    async def get_by_escrow_address(
        self, tenant_id: str, escrow_address: str
    ) -> EscrowInvestmentRead | None:
        """Look up the investment owning an escrow contract (case-insensitive)."""
        async for session in self._session_factory():
            stmt = select(EscrowInvestmentModel).where(
                EscrowInvestmentModel.tenant_id == uuid.UUID(tenant_id),
                func.lower(EscrowInvestmentModel.escrow_address) == escrow_address.lower(),
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            return _model_to_investment(model) if model else None

    async def list_investments(
        self, tenant_id: str, filters: InvestmentFilter | None = None
    ) -> list[EscrowInvestmentRead]:
        """List investments for a tenant, newest first."""
        async for session in self._session_factory():
            stmt = select(EscrowInvestmentModel).where(
                EscrowInvestmentModel.tenant_id == uuid.UUID(tenant_id)
            )
            if filters is not None:
                if filters.deal_id is not None:
                    deal_uuid = _parse_uuid(filters.deal_id)
                    if deal_uuid is None:
                        return []
                    stmt = stmt.where(EscrowInvestmentModel.deal_id == deal_uuid)
                if filters.investor_id is not None:
                    investor_uuid = _parse_uuid(filters.investor_id)
                    if investor_uuid is None:
                        return []
                    stmt = stmt.where(EscrowInvestmentModel.investor_id == investor_uuid)
                if filters.statuses:
                    stmt = stmt.where(
                        EscrowInvestmentModel.status.in_([s.value for s in filters.statuses])
                    )
            stmt = stmt.order_by(EscrowInvestmentModel.created_at.desc())
            result = await session.execute(stmt)
            return [_model_to_investment(m) for m in result.scalars().all()]

    async def list_overdue(self, tenant_id: str, now: datetime) -> list[EscrowInvestmentRead]:
        """Investments whose escrow expiry or review deadline has been reached."""
        async for session in self._session_factory():
            stmt = select(EscrowInvestmentModel).where(
                EscrowInvestmentModel.tenant_id == uuid.UUID(tenant_id),
                or_(
                    and_(
                        EscrowInvestmentModel.status.in_([
                            InvestmentStatus.INTENT.value,
                            InvestmentStatus.ESCROWED.value,
                        ]),
                        EscrowInvestmentModel.expires_at <= now,
                    ),
                    and_(
                        EscrowInvestmentModel.status == InvestmentStatus.KYC_APPROVED.value,
                        EscrowInvestmentModel.review_deadline <= now,
                    ),
                ),
            ).order_by(EscrowInvestmentModel.expires_at)
            result = await session.execute(stmt)
            return [_model_to_investment(m) for m in result.scalars().all()]

    async def list_awaiting_chain(self, tenant_id: str) -> list[EscrowInvestmentRead]:
        """Investments whose next chain transaction has not been submitted.

        - INTENT without an escrow contract
        - RELEASE_PENDING without a release transaction
        - REFUND_PENDING without a refund transaction
        """
        async for session in self._session_factory():
            stmt = select(EscrowInvestmentModel).where(
                EscrowInvestmentModel.tenant_id == uuid.UUID(tenant_id),
                or_(
                    and_(
                        EscrowInvestmentModel.status == InvestmentStatus.INTENT.value,
                        EscrowInvestmentModel.escrow_address.is_(None),
                    ),
                    and_(
                        EscrowInvestmentModel.status == InvestmentStatus.RELEASE_PENDING.value,
                        EscrowInvestmentModel.release_tx_hash.is_(None),
                    ),
                    and_(
                        EscrowInvestmentModel.status == InvestmentStatus.REFUND_PENDING.value,
                        EscrowInvestmentModel.refund_tx_hash.is_(None),
                    ),
                ),
            ).order_by(EscrowInvestmentModel.created_at)
            result = await session.execute(stmt)
            return [_model_to_investment(m) for m in result.scalars().all()]

    async def active_amount_for_investor(
        self, tenant_id: str, deal_id: str, investor_id: str
    ) -> Decimal:
        """Sum of the investor's allocation-holding commitments in a deal."""
        async for session in self._session_factory():
            stmt = select(func.coalesce(func.sum(EscrowInvestmentModel.amount), 0)).where(
                EscrowInvestmentModel.tenant_id == uuid.UUID(tenant_id),
                EscrowInvestmentModel.deal_id == uuid.UUID(deal_id),
                EscrowInvestmentModel.investor_id == uuid.UUID(investor_id),
                EscrowInvestmentModel.status.in_([s.value for s in ALLOCATION_HOLDING_STATUSES]),
            )
            result = await session.execute(stmt)
            return Decimal(result.scalar_one())

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
        """Compare-and-set the status and append the audit event atomically.

        ``allocation`` adjusts the deal counters in the same transaction.

        Raises:
            ConcurrentModificationError: If the row is no longer at
                (from_status, expected_version).
        """
        values = _coerce(fields or {})
        async for session in self._session_factory():
            stmt = (
                update(EscrowInvestmentModel)
                .where(
                    EscrowInvestmentModel.tenant_id == uuid.UUID(tenant_id),
                    EscrowInvestmentModel.id == uuid.UUID(investment_id),
                    EscrowInvestmentModel.status == from_status.value,
                    EscrowInvestmentModel.version == expected_version,
                )
                .values(
                    status=to_status.value,
                    version=EscrowInvestmentModel.version + 1,
                    updated_at=func.now(),
                    **values,
                )
                .returning(EscrowInvestmentModel)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                await session.rollback()
                raise ConcurrentModificationError(
                    f"Investment {investment_id} changed concurrently; "
                    f"expected {from_status.value} v{expected_version}"
                )

            session.add(
                EscrowEventModel(
                    tenant_id=uuid.UUID(tenant_id),
                    investment_id=uuid.UUID(investment_id),
                    from_status=from_status.value,
                    to_status=to_status.value,
                    actor=actor,
                    reason=reason,
                    metadata_json=metadata or {},
                )
            )
            if allocation is not None:
                await session.execute(allocation_statement(tenant_id, allocation))
            investment = _model_to_investment(model)
            await session.commit()
            return investment

    async def update_fields(
        self,
        tenant_id: str,
        investment_id: str,
        *,
        expected_version: int,
        fields: dict[str, Any],
    ) -> EscrowInvestmentRead:
        """Compare-and-set non-status fields (tx hashes, retry bookkeeping).

        Raises:
            ConcurrentModificationError: If the version moved on.
        """
        values = _coerce(fields)
        async for session in self._session_factory():
            stmt = (
                update(EscrowInvestmentModel)
                .where(
                    EscrowInvestmentModel.tenant_id == uuid.UUID(tenant_id),
                    EscrowInvestmentModel.id == uuid.UUID(investment_id),
                    EscrowInvestmentModel.version == expected_version,
                )
                .values(
                    version=EscrowInvestmentModel.version + 1,
                    updated_at=func.now(),
                    **values,
                )
                .returning(EscrowInvestmentModel)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                await session.rollback()
                raise ConcurrentModificationError(
                    f"Investment {investment_id} changed concurrently; expected v{expected_version}"
                )
            investment = _model_to_investment(model)
            await session.commit()
            return investment

    async def list_events(self, tenant_id: str, investment_id: str) -> list[EscrowEventRead]:
        """Audit trail for one investment, oldest first."""
        investment_uuid = _parse_uuid(investment_id)
        if investment_uuid is None:
            return []
        async for session in self._session_factory():
            stmt = (
                select(EscrowEventModel)
                .where(
                    EscrowEventModel.tenant_id == uuid.UUID(tenant_id),
                    EscrowEventModel.investment_id == investment_uuid,
                )
                .order_by(EscrowEventModel.created_at, EscrowEventModel.id)
            )
            result = await session.execute(stmt)
            return [_model_to_event(m) for m in result.scalars().all()]
