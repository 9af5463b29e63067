"""Schemas for KYC sessions, provider webhooks and status responses."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from src.app.escrow.schemas import KycStatus


class KycSession(BaseModel):
    """A verification session opened with the provider."""

    reference: str
    redirect_url: str


class KycDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class KycWebhookPayload(BaseModel):
    """Body of ``POST /api/v1/webhooks/kyc``."""

    reference: str
    decision: KycDecision
    reason: str | None = None


class KycStatusResponse(BaseModel):
    status: KycStatus
    reference: str | None = None
    updated_at: datetime | None = None


class KycStartResponse(BaseModel):
    status: KycStatus
    reference: str
    redirect_url: str
