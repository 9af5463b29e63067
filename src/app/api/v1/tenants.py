"""Super-admin tenant management endpoints.

These endpoints skip tenant middleware (no X-Tenant-ID needed) and are
guarded by the platform X-Admin-Key instead of a tenant user.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from src.app.api.deps import require_platform_admin
from src.app.schemas.tenant import TenantCreate, TenantResponse, TenantUpdate
from src.app.services.tenant_provisioning import (
    create_tenant_admin,
    list_tenants,
    provision_tenant,
    set_tenant_active,
)

router = APIRouter(
    prefix="/api/v1/tenants",
    tags=["tenants"],
    dependencies=[Depends(require_platform_admin)],
)


@router.post("", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
async def create_tenant(body: TenantCreate):
    """Provision a tenant schema with RLS, plus its first admin when requested."""
    result = await provision_tenant(slug=body.slug, name=body.name)
    admin_user_id = None
    if body.admin_email and body.admin_password:
        admin_user_id = await create_tenant_admin(
            result["tenant_id"], result["schema_name"], body.admin_email, body.admin_password
        )
    return TenantResponse(
        id=result["tenant_id"],
        slug=result["slug"],
        name=result["name"],
        schema_name=result["schema_name"],
        admin_user_id=admin_user_id,
    )


@router.get("", response_model=list[TenantResponse])
async def get_tenants(include_inactive: bool = Query(default=False)):
    tenants = await list_tenants(include_inactive=include_inactive)
    return [TenantResponse(**t) for t in tenants]


@router.patch("/{tenant_id}", response_model=TenantResponse)
async def update_tenant(tenant_id: str, body: TenantUpdate):
    """Activate or deactivate a tenant; takes effect on the next request."""
    return TenantResponse(**await set_tenant_active(tenant_id, body.is_active))
