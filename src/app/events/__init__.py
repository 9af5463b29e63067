"""Investment and deal lifecycle events on tenant-scoped Redis Streams."""

from src.app.events.bus import TenantEventBus
from src.app.events.schemas import DEALS_STREAM, ESCROW_STREAM, DomainEvent, EventType

__all__ = ["DEALS_STREAM", "ESCROW_STREAM", "DomainEvent", "EventType", "TenantEventBus"]
