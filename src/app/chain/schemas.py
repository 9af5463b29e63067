"""Schemas for the EscrowFactory relayer and its confirmation webhooks."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class EscrowCreated(BaseModel):
    """Result of asking the factory for a per-investment escrow."""

    escrow_address: str = Field(min_length=1)
    tx_hash: str = Field(min_length=1)


class TxSubmitted(BaseModel):
    """Relayer acknowledgement of a release or refund submission."""

    tx_hash: str = Field(min_length=1)


class ChainEventType(str, Enum):
    DEPOSIT_CONFIRMED = "deposit_confirmed"
    RELEASE_CONFIRMED = "release_confirmed"
    REFUND_CONFIRMED = "refund_confirmed"
    TX_FAILED = "tx_failed"


class ChainWebhookPayload(BaseModel):
    """Body of ``POST /api/v1/webhooks/chain``.

    ``amount`` is required for deposit confirmations; ``error`` is set
    for ``tx_failed``.
    """

    event_type: ChainEventType
    escrow_address: str
    tx_hash: str
    amount: Decimal | None = None
    error: str | None = None
    block_number: int | None = None
