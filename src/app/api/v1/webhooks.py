"""Signed webhooks from the chain relayer and the KYC provider.

Both resolve the tenant from X-Tenant-ID (via TenantAuthMiddleware) and
authenticate with an HMAC-SHA256 X-Signature over the raw body. Every
handler is idempotent, so providers may redeliver freely.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError

from src.app.api.deps import get_escrow_service, get_investor_repository, get_tenant
from src.app.api.v1.errors import domain_errors
from src.app.chain.schemas import ChainEventType, ChainWebhookPayload
from src.app.config import Settings, get_settings
from src.app.core.monitoring import record_webhook
from src.app.core.security import verify_signature
from src.app.core.tenant import TenantContext
from src.app.escrow.schemas import KycStatus
from src.app.kyc.schemas import KycDecision, KycWebhookPayload

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


async def _verified_body(request: Request, secret: str, signature: str | None, source: str) -> bytes:
    body = await request.body()
    if not verify_signature(secret, body, signature):
        logger.warning("webhook.bad_signature", source=source)
        record_webhook(source, "bad_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    return body


def _invalid_payload(source: str, error: ValidationError) -> HTTPException:
    record_webhook(source, "invalid_payload")
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=f"Invalid payload: {error.error_count()} error(s)",
    )


@router.post("/chain")
async def chain_webhook(
    request: Request,
    x_signature: str | None = Header(default=None, alias="X-Signature"),
    tenant: TenantContext = Depends(get_tenant),
    settings: Settings = Depends(get_settings),
    service: Any = Depends(get_escrow_service),
) -> dict:
    """Deposit, release and refund confirmations plus transaction failures."""
    body = await _verified_body(request, settings.CHAIN_WEBHOOK_SECRET, x_signature, "chain")
    try:
        payload = ChainWebhookPayload.model_validate_json(body)
    except ValidationError as e:
        raise _invalid_payload("chain", e) from e

    logger.info(
        "chain.webhook_received",
        tenant_id=tenant.tenant_id,
        event_type=payload.event_type.value,
        escrow_address=payload.escrow_address,
        tx_hash=payload.tx_hash,
    )

    with domain_errors():
        if payload.event_type == ChainEventType.DEPOSIT_CONFIRMED:
            if payload.amount is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="amount is required for deposit_confirmed",
                )
            investment = await service.confirm_deposit(
                tenant.tenant_id, payload.escrow_address, payload.tx_hash, payload.amount
            )
        elif payload.event_type == ChainEventType.RELEASE_CONFIRMED:
            investment = await service.confirm_release(
                tenant.tenant_id, payload.escrow_address, payload.tx_hash
            )
        elif payload.event_type == ChainEventType.REFUND_CONFIRMED:
            investment = await service.confirm_refund(
                tenant.tenant_id, payload.escrow_address, payload.tx_hash
            )
        else:
            investment = await service.record_tx_failure(
                tenant.tenant_id,
                payload.escrow_address,
                payload.tx_hash,
                payload.error or "transaction failed",
            )

    record_webhook("chain", "accepted")
    return {"investment_id": investment.id, "status": investment.status.value}


@router.post("/kyc")
async def kyc_webhook(
    request: Request,
    x_signature: str | None = Header(default=None, alias="X-Signature"),
    tenant: TenantContext = Depends(get_tenant),
    settings: Settings = Depends(get_settings),
    service: Any = Depends(get_escrow_service),
    investors: Any = Depends(get_investor_repository),
) -> dict:
    """Apply a provider decision to the investor and their open investments."""
    body = await _verified_body(request, settings.KYC_WEBHOOK_SECRET, x_signature, "kyc")
    try:
        payload = KycWebhookPayload.model_validate_json(body)
    except ValidationError as e:
        raise _invalid_payload("kyc", e) from e

    investor = await investors.get_by_kyc_reference(tenant.tenant_id, payload.reference)
    if investor is None:
        record_webhook("kyc", "rejected")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No investor for KYC reference {payload.reference}",
        )

    decision = KycStatus.APPROVED if payload.decision == KycDecision.APPROVED else KycStatus.REJECTED
    with domain_errors():
        affected = await service.apply_kyc_result(
            tenant.tenant_id, investor.id, decision, payload.reference
        )
    record_webhook("kyc", "accepted")
    return {
        "investor_id": investor.id,
        "kyc_status": decision.value,
        "affected": [inv.id for inv in affected],
    }
