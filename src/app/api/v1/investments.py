"""REST API endpoints for investor-facing escrow investments.

POST /deals/{id}/invest is rate limited per tenant and user and honours an
optional Idempotency-Key header: a replayed key returns the investment
created by the first request with 200 instead of 201.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from src.app.api.deps import (
    get_current_user,
    get_escrow_service,
    get_redis,
    get_tenant,
    rate_limit,
    require_role,
)
from src.app.api.v1.errors import domain_errors
from src.app.config import Settings, get_settings
from src.app.core.idempotency import IdempotencyStore
from src.app.core.redis import TenantRedis
from src.app.core.tenant import TenantContext
from src.app.escrow.schemas import (
    EscrowEventRead,
    EscrowInvestmentRead,
    InvestmentFilter,
    InvestmentStatus,
)
from src.app.models.tenant import User

router = APIRouter(prefix="/api/v1", tags=["investments"])


class InvestRequest(BaseModel):
    """Request body for committing to a deal."""

    amount: Decimal = Field(gt=0)


@router.post(
    "/deals/{deal_id}/invest",
    response_model=EscrowInvestmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("invest"))],
)
async def invest(
    deal_id: str,
    body: InvestRequest,
    response: Response,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=200),
    user: User = Depends(require_role("investor")),
    tenant: TenantContext = Depends(get_tenant),
    redis: TenantRedis = Depends(get_redis),
    settings: Settings = Depends(get_settings),
    service: Any = Depends(get_escrow_service),
) -> EscrowInvestmentRead:
    """Create an investment intent; the escrow address follows once the factory deploys it."""
    store = IdempotencyStore(redis, settings.IDEMPOTENCY_TTL_SECONDS)
    scope = f"invest:{user.id}"

    if idempotency_key:
        claim = await store.claim(scope, idempotency_key)
        if claim.existing_id:
            with domain_errors():
                existing = await service.get_investment(tenant.tenant_id, claim.existing_id)
            response.status_code = status.HTTP_200_OK
            return existing
        if claim.in_progress:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A request with this Idempotency-Key is still in progress",
            )

    try:
        with domain_errors():
            investment = await service.create_investment(
                tenant.tenant_id, str(user.id), deal_id, body.amount
            )
    except Exception:
        if idempotency_key:
            await store.release(scope, idempotency_key)
        raise

    if idempotency_key:
        await store.complete(scope, idempotency_key, investment.id)
    return investment


@router.get("/investments", response_model=list[EscrowInvestmentRead])
async def list_investments(
    deal_id: str | None = Query(default=None),
    status_filter: list[InvestmentStatus] | None = Query(default=None, alias="status"),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_escrow_service),
) -> list[EscrowInvestmentRead]:
    """Investors see their own investments; admins see the whole tenant."""
    filters = InvestmentFilter(
        deal_id=deal_id,
        investor_id=None if user.role == "admin" else str(user.id),
        statuses=status_filter or None,
    )
    return await service.list_investments(tenant.tenant_id, filters)


async def _visible_investment(
    investment_id: str, user: User, tenant: TenantContext, service: Any
) -> EscrowInvestmentRead:
    with domain_errors():
        investment = await service.get_investment(tenant.tenant_id, investment_id)
    if user.role != "admin" and investment.investor_id != str(user.id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Investment not found: {investment_id}",
        )
    return investment


@router.get("/investments/{investment_id}", response_model=EscrowInvestmentRead)
async def get_investment(
    investment_id: str,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_escrow_service),
) -> EscrowInvestmentRead:
    return await _visible_investment(investment_id, user, tenant, service)


@router.get("/investments/{investment_id}/events", response_model=list[EscrowEventRead])
async def list_investment_events(
    investment_id: str,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_escrow_service),
) -> list[EscrowEventRead]:
    """Audit trail of every status change, oldest first."""
    await _visible_investment(investment_id, user, tenant, service)
    with domain_errors():
        return await service.list_events(tenant.tenant_id, investment_id)


@router.post("/investments/{investment_id}/cancel", response_model=EscrowInvestmentRead)
async def cancel_investment(
    investment_id: str,
    user: User = Depends(require_role("investor")),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_escrow_service),
) -> EscrowInvestmentRead:
    """Withdraw an intent before any funds are deposited."""
    with domain_errors():
        return await service.cancel_intent(tenant.tenant_id, investment_id, str(user.id))
