"""Admin endpoints for escrow review: approve, reject, or refund investments."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.app.api.deps import get_escrow_service, get_tenant, require_role
from src.app.api.v1.errors import domain_errors
from src.app.core.tenant import TenantContext
from src.app.escrow.schemas import EscrowInvestmentRead
from src.app.models.tenant import User

router = APIRouter(prefix="/api/v1/escrow", tags=["escrow"])


class DecisionRequest(BaseModel):
    """Optional note recorded with a rejection or manual refund."""

    note: str | None = Field(default=None, max_length=2000)


@router.get("/review-queue", response_model=list[EscrowInvestmentRead])
async def review_queue(
    user: User = Depends(require_role("admin")),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_escrow_service),
) -> list[EscrowInvestmentRead]:
    """KYC-approved investments awaiting a decision, nearest deadline first."""
    return await service.review_queue(tenant.tenant_id)


@router.post("/{investment_id}/approve", response_model=EscrowInvestmentRead)
async def approve_release(
    investment_id: str,
    user: User = Depends(require_role("admin")),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_escrow_service),
) -> EscrowInvestmentRead:
    with domain_errors():
        return await service.approve_release(tenant.tenant_id, investment_id, str(user.id))


@router.post("/{investment_id}/reject", response_model=EscrowInvestmentRead)
async def reject_investment(
    investment_id: str,
    body: DecisionRequest | None = None,
    user: User = Depends(require_role("admin")),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_escrow_service),
) -> EscrowInvestmentRead:
    with domain_errors():
        return await service.reject_investment(
            tenant.tenant_id, investment_id, str(user.id), note=body.note if body else None
        )


@router.post("/{investment_id}/refund", response_model=EscrowInvestmentRead)
async def manual_refund(
    investment_id: str,
    body: DecisionRequest | None = None,
    user: User = Depends(require_role("admin")),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_escrow_service),
) -> EscrowInvestmentRead:
    with domain_errors():
        return await service.manual_refund(
            tenant.tenant_id, investment_id, str(user.id), note=body.note if body else None
        )
