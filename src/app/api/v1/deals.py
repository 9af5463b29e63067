"""REST API endpoints for deals.

Issuers create and manage their own deals; admins can manage any deal.
Investors only see deals that have left DRAFT. Status changes go through
DealService so a cancellation unwinds the deal's investments.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.app.api.deps import get_current_user, get_deal_service, get_tenant, require_role
from src.app.api.v1.errors import domain_errors
from src.app.core.tenant import TenantContext
from src.app.deals.schemas import DealCreate, DealFilter, DealRead, DealStatus, DealUpdate
from src.app.models.tenant import User

router = APIRouter(prefix="/api/v1/deals", tags=["deals"])

MANAGER_ROLES = ("issuer", "admin")


def _user_actor(user: User) -> str:
    return f"{user.role}:{user.id}"


def _ensure_visible(deal: DealRead, user: User) -> None:
    if deal.status == DealStatus.DRAFT and user.role == "investor":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Deal not found: {deal.id}")


def _ensure_manager(deal: DealRead, user: User) -> None:
    if user.role != "admin" and deal.issuer_id != str(user.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the deal's issuer or an admin can manage it",
        )


@router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
async def create_deal(
    body: DealCreate,
    user: User = Depends(require_role(*MANAGER_ROLES)),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_deal_service),
) -> DealRead:
    """Create a DRAFT deal owned by the calling issuer."""
    with domain_errors():
        return await service.create_deal(tenant.tenant_id, str(user.id), body)


@router.get("", response_model=list[DealRead])
async def list_deals(
    status_filter: DealStatus | None = Query(default=None, alias="status"),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_deal_service),
) -> list[DealRead]:
    deals = await service.list_deals(tenant.tenant_id, DealFilter(status=status_filter))
    if user.role == "investor":
        deals = [d for d in deals if d.status != DealStatus.DRAFT]
    return deals


@router.get("/{deal_id}", response_model=DealRead)
async def get_deal(
    deal_id: str,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_deal_service),
) -> DealRead:
    with domain_errors():
        deal = await service.get_deal(tenant.tenant_id, deal_id)
    _ensure_visible(deal, user)
    return deal


@router.patch("/{deal_id}", response_model=DealRead)
async def update_deal(
    deal_id: str,
    body: DealUpdate,
    user: User = Depends(require_role(*MANAGER_ROLES)),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_deal_service),
) -> DealRead:
    """Edit a deal while it is still a DRAFT."""
    with domain_errors():
        deal = await service.get_deal(tenant.tenant_id, deal_id)
        _ensure_manager(deal, user)
        return await service.update_deal(tenant.tenant_id, deal_id, body)


async def _change_status(action: str, deal_id: str, user: User, tenant: TenantContext, service: Any) -> DealRead:
    with domain_errors():
        deal = await service.get_deal(tenant.tenant_id, deal_id)
        _ensure_manager(deal, user)
        operation = getattr(service, f"{action}_deal")
        return await operation(tenant.tenant_id, deal_id, _user_actor(user))


@router.post("/{deal_id}/open", response_model=DealRead)
async def open_deal(
    deal_id: str,
    user: User = Depends(require_role(*MANAGER_ROLES)),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_deal_service),
) -> DealRead:
    return await _change_status("open", deal_id, user, tenant, service)


@router.post("/{deal_id}/close", response_model=DealRead)
async def close_deal(
    deal_id: str,
    user: User = Depends(require_role(*MANAGER_ROLES)),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_deal_service),
) -> DealRead:
    """Stop accepting investments; funded escrows still settle."""
    return await _change_status("close", deal_id, user, tenant, service)


@router.post("/{deal_id}/cancel", response_model=DealRead)
async def cancel_deal(
    deal_id: str,
    user: User = Depends(require_role(*MANAGER_ROLES)),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_deal_service),
) -> DealRead:
    """Cancel the deal and refund every open investment (409 if any is settling)."""
    return await _change_status("cancel", deal_id, user, tenant, service)
