"""Redis Streams transport for lifecycle events.

Streams live at ``t:{tenant_id}:events:{stream}`` (``escrow`` and ``deals``)
and are capped at roughly STREAM_MAXLEN entries. The bus talks to the raw
redis.asyncio client because TenantRedis does not wrap the stream commands;
the ``t:{tenant_id}:`` prefix is applied here instead.
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog

from src.app.events.schemas import DomainEvent

logger = structlog.get_logger(__name__)

STREAM_MAXLEN = 10000


class TenantEventBus:
    """Publishes and consumes one tenant's lifecycle streams.

    A bus refuses events stamped with another tenant's id.
    """

    def __init__(self, redis: aioredis.Redis, tenant_id: str) -> None:
        self._redis = redis
        self._tenant_id = tenant_id

    def stream_key(self, stream: str) -> str:
        return f"t:{self._tenant_id}:events:{stream}"

    async def publish(self, stream: str, event: DomainEvent) -> str:
        if event.tenant_id != self._tenant_id:
            raise ValueError(
                f"Event tenant_id '{event.tenant_id}' does not match "
                f"bus tenant_id '{self._tenant_id}'"
            )

        key = self.stream_key(stream)
        message_id = await self._redis.xadd(
            key, event.to_stream_dict(), maxlen=STREAM_MAXLEN, approximate=True
        )
        logger.debug(
            "event.published",
            stream=key,
            event_type=event.event_type.value,
            subject_id=event.subject_id,
            message_id=message_id,
        )
        return message_id

    async def subscribe(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
        block: int = 5000,
    ) -> list[tuple[str, DomainEvent]]:
        """Read undelivered events for ``consumer`` in ``group``.

        The group is created on first use, starting from the head of the stream.
        """
        key = self.stream_key(stream)
        try:
            await self._redis.xgroup_create(key, group, id="0", mkstream=True)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

        batches = await self._redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={key: ">"},
            count=count,
            block=block,
        )
        return [
            (message_id, DomainEvent.from_stream_dict(raw))
            for _key, messages in batches or []
            for message_id, raw in messages
        ]

    async def ack(self, stream: str, group: str, message_id: str) -> None:
        await self._redis.xack(self.stream_key(stream), group, message_id)
