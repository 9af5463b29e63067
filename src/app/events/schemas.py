"""Event schemas for lifecycle notifications via Redis Streams.

Provides DomainEvent, published whenever an investment or deal changes
state, so downstream services (notifications, reporting, cap-table sync)
can react without polling. Events serialize to flat string dicts for
Redis Streams and deserialize back losslessly.

Stream key pattern: t:{tenant_id}:events:{stream_name}
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

ESCROW_STREAM = "escrow"
DEALS_STREAM = "deals"


class EventType(str, Enum):
    """Kinds of lifecycle event."""

    INVESTMENT_CREATED = "investment.created"
    INVESTMENT_TRANSITIONED = "investment.transitioned"
    DEAL_STATUS_CHANGED = "deal.status_changed"


class DomainEvent(BaseModel):
    """Lifecycle event with tenant context and actor attribution.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        version: Schema version for forward compatibility.
        event_type: What happened.
        timestamp: UTC creation time.
        tenant_id: Owning tenant for stream isolation.
        subject_id: Investment or deal the event is about.
        actor: ``system``, ``chain``, ``investor:<id>`` or ``admin:<id>``.
        data: Small inline payload (statuses, amounts, reasons).
        correlation_id: Groups events of one request or sweep.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    version: str = "1.0"
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tenant_id: str
    subject_id: str
    actor: str
    data: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize all fields to a flat dict of strings for XADD."""
        return {
            "event_id": self.event_id,
            "version": self.version,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "tenant_id": self.tenant_id,
            "subject_id": self.subject_id,
            "actor": self.actor,
            "data": json.dumps(self.data, default=str),
            "correlation_id": self.correlation_id or "",
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> DomainEvent:
        """Reverse ``to_stream_dict()``."""
        return cls(
            event_id=raw["event_id"],
            version=raw.get("version", "1.0"),
            event_type=EventType(raw["event_type"]),
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            tenant_id=raw["tenant_id"],
            subject_id=raw["subject_id"],
            actor=raw["actor"],
            data=json.loads(raw["data"]) if raw.get("data") else {},
            correlation_id=raw.get("correlation_id") or None,
        )
