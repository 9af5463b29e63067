"""Idempotency keys for mutating requests, stored in TenantRedis.

A client-supplied key is first claimed with SET NX as ``pending``; once
the request succeeds it is overwritten with the created resource id and
kept for the TTL (24h by default). A replay of a completed key returns
that id; a replay while the first request is still running is reported
as in progress. If Redis is unreachable the request proceeds without
idempotency protection and a warning is logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.app.core.redis import TenantRedis

logger = logging.getLogger(__name__)

PENDING = "pending"


@dataclass(frozen=True)
class IdempotencyClaim:
    """Result of claiming a key.

    Exactly one of these holds:
    - ``acquired``: this request owns the key and must complete or release it
    - ``existing_id``: a previous request already produced this resource
    - ``in_progress``: another request holds the key right now
    """

    acquired: bool
    existing_id: str | None = None
    in_progress: bool = False


class IdempotencyStore:
    """Claim/complete/release cycle for idempotency keys.

    Args:
        redis: Tenant-prefixing Redis wrapper.
        ttl_seconds: How long completed keys are remembered.
    """

    def __init__(self, redis: TenantRedis, ttl_seconds: int = 86400) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @staticmethod
    def _key(scope: str, key: str) -> str:
        return f"idempotency:{scope}:{key}"

    async def claim(self, scope: str, key: str) -> IdempotencyClaim:
        redis_key = self._key(scope, key)
        try:
            if await self._redis.set(redis_key, PENDING, ex=self._ttl, nx=True):
                return IdempotencyClaim(acquired=True)
            existing = await self._redis.get(redis_key)
        except Exception as e:
            logger.warning("Idempotency store unavailable for %s: %s", scope, e)
            return IdempotencyClaim(acquired=True)

        if existing and existing != PENDING:
            return IdempotencyClaim(acquired=False, existing_id=existing)
        if existing is None:
            # Expired between SET NX and GET; treat as fresh.
            return IdempotencyClaim(acquired=True)
        return IdempotencyClaim(acquired=False, in_progress=True)

    async def complete(self, scope: str, key: str, resource_id: str) -> None:
        try:
            await self._redis.set(self._key(scope, key), resource_id, ex=self._ttl)
        except Exception as e:
            logger.warning("Failed to record idempotency key for %s: %s", scope, e)

    async def release(self, scope: str, key: str) -> None:
        """Forget a claim whose request failed, so the client can retry."""
        try:
            await self._redis.delete(self._key(scope, key))
        except Exception as e:
            logger.warning("Failed to release idempotency key for %s: %s", scope, e)
