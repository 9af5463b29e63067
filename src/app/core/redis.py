"""Redis connection pool and the tenant-prefixing wrapper.

Request-path helpers (rate-limit counters, invest idempotency keys) go
through TenantRedis, which rewrites every key to ``t:{tenant_id}:{key}``
using the tenant bound in contextvars. A tenant therefore cannot read,
consume or replay another tenant's keys. The event bus and tenant lookup
cache use the raw pool and build their own keys.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.app.config import get_settings
from src.app.core.tenant import get_current_tenant

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Process-wide client, created on first use with decoded responses."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(get_settings().REDIS_URL, decode_responses=True)
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


class TenantRedis:
    """The subset of Redis commands used on the request path, tenant-prefixed.

    Raises RuntimeError (from get_current_tenant) when called outside a
    tenant scope.
    """

    def __init__(self, redis_client: aioredis.Redis):
        self._redis = redis_client

    def key(self, key: str) -> str:
        return f"t:{get_current_tenant().tenant_id}:{key}"

    async def get(self, key: str) -> str | None:
        return await self._redis.get(self.key(key))

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool:
        """SET with optional TTL; with ``nx`` returns False if the key already existed."""
        return bool(await self._redis.set(self.key(key), value, ex=ex, nx=nx))

    async def delete(self, key: str) -> int:
        return await self._redis.delete(self.key(key))

    async def incr(self, key: str) -> int:
        return await self._redis.incr(self.key(key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._redis.expire(self.key(key), seconds))


def get_tenant_redis() -> TenantRedis:
    return TenantRedis(get_redis_pool())
