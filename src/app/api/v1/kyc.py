"""Investor KYC endpoints: start a provider session and read current status."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from src.app.api.deps import get_current_user, get_investor_repository, get_kyc_client, get_tenant
from src.app.api.v1.errors import domain_errors
from src.app.core.tenant import TenantContext
from src.app.escrow.schemas import KycStatus
from src.app.kyc.schemas import KycStartResponse, KycStatusResponse
from src.app.models.tenant import User

router = APIRouter(prefix="/api/v1/kyc", tags=["kyc"])


@router.post("/start", response_model=KycStartResponse)
async def start_kyc(
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
    kyc_client: Any = Depends(get_kyc_client),
    investors: Any = Depends(get_investor_repository),
) -> KycStartResponse:
    """Open a verification session; the decision arrives on the KYC webhook."""
    with domain_errors():
        session = await kyc_client.start_verification(str(user.id), user.email)
    profile = await investors.set_kyc_status(
        tenant.tenant_id, str(user.id), KycStatus.PENDING, session.reference
    )
    return KycStartResponse(
        status=profile.kyc_status,
        reference=session.reference,
        redirect_url=session.redirect_url,
    )


@router.get("/status", response_model=KycStatusResponse)
async def kyc_status(user: User = Depends(get_current_user)) -> KycStatusResponse:
    return KycStatusResponse(
        status=KycStatus(user.kyc_status or KycStatus.NOT_STARTED.value),
        reference=user.kyc_reference,
        updated_at=user.kyc_updated_at,
    )
