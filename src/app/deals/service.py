"""DealService -- issuer-facing deal operations.

Wraps DealRepository with the status lifecycle and cascades a
cancellation into the escrow lifecycle: the deal is marked cancelled
first, so no new allocation can be reserved, and its open investments
are unwound afterwards.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from src.app.deals.lifecycle import validate_deal_transition
from src.app.deals.repository import DealRepository
from src.app.deals.schemas import DealCreate, DealFilter, DealRead, DealStatus, DealUpdate
from src.app.escrow.errors import DealNotFoundError, SettlementInFlightError
from src.app.escrow.schemas import InvestmentFilter, InvestmentStatus
from src.app.escrow.service import EscrowLifecycleService
from src.app.events.bus import TenantEventBus
from src.app.events.schemas import DEALS_STREAM, DomainEvent, EventType

logger = structlog.get_logger(__name__)


class DealService:
    """Deal CRUD and status changes.

    Args:
        deal_repository: Deal persistence.
        escrow_service: Used to unwind investments on cancellation.
        event_bus_factory: Optional ``tenant_id -> TenantEventBus``.
    """

    def __init__(
        self,
        deal_repository: DealRepository,
        escrow_service: EscrowLifecycleService,
        event_bus_factory: Callable[[str], TenantEventBus] | None = None,
    ) -> None:
        self._deals = deal_repository
        self._escrow = escrow_service
        self._event_bus_factory = event_bus_factory

    async def get_deal(self, tenant_id: str, deal_id: str) -> DealRead:
        deal = await self._deals.get(tenant_id, deal_id)
        if deal is None:
            raise DealNotFoundError(f"Deal not found: {deal_id}")
        return deal

    async def list_deals(self, tenant_id: str, filters: DealFilter | None = None) -> list[DealRead]:
        return await self._deals.list_deals(tenant_id, filters)

    async def create_deal(self, tenant_id: str, issuer_id: str, data: DealCreate) -> DealRead:
        deal = await self._deals.create(tenant_id, issuer_id, data)
        logger.info("deal.created", tenant_id=tenant_id, deal_id=deal.id, issuer_id=issuer_id)
        return deal

    async def update_deal(self, tenant_id: str, deal_id: str, data: DealUpdate) -> DealRead:
        return await self._deals.update(tenant_id, deal_id, data)

    async def open_deal(self, tenant_id: str, deal_id: str, actor: str) -> DealRead:
        return await self._change_status(tenant_id, deal_id, DealStatus.OPEN, actor)

    async def close_deal(self, tenant_id: str, deal_id: str, actor: str) -> DealRead:
        """Stop accepting investments; existing escrows still settle."""
        return await self._change_status(tenant_id, deal_id, DealStatus.CLOSED, actor)

    async def cancel_deal(self, tenant_id: str, deal_id: str, actor: str) -> DealRead:
        """Cancel the deal and refund or cancel every open investment.

        Raises:
            SettlementInFlightError: An investment is already releasing or released.
        """
        deal = await self.get_deal(tenant_id, deal_id)
        validate_deal_transition(deal.status, DealStatus.CANCELLED)

        settling = await self._escrow.list_investments(
            tenant_id,
            InvestmentFilter(
                deal_id=deal_id,
                statuses=[InvestmentStatus.RELEASE_PENDING, InvestmentStatus.RELEASED],
            ),
        )
        if settling:
            raise SettlementInFlightError(
                f"Deal {deal_id} has {len(settling)} settling or settled investment(s)"
            )

        cancelled = await self._change_status(tenant_id, deal_id, DealStatus.CANCELLED, actor, current=deal)
        await self._escrow.cancel_deal_investments(tenant_id, deal_id, actor)
        return cancelled

    async def _change_status(
        self,
        tenant_id: str,
        deal_id: str,
        to_status: DealStatus,
        actor: str,
        current: DealRead | None = None,
    ) -> DealRead:
        deal = current or await self.get_deal(tenant_id, deal_id)
        validate_deal_transition(deal.status, to_status)
        updated = await self._deals.set_status(
            tenant_id, deal_id, deal.status, to_status, expected_version=deal.version
        )
        if self._event_bus_factory is not None:
            try:
                await self._event_bus_factory(tenant_id).publish(
                    DEALS_STREAM,
                    DomainEvent(
                        event_type=EventType.DEAL_STATUS_CHANGED,
                        tenant_id=tenant_id,
                        subject_id=deal_id,
                        actor=actor,
                        data={"from_status": deal.status.value, "to_status": to_status.value},
                    ),
                )
            except Exception as e:
                logger.warning("deal.event_publish_failed", tenant_id=tenant_id, deal_id=deal_id, error=str(e))
        return updated
