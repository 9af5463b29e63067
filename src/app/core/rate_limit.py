"""Per-tenant fixed-window rate limiting backed by TenantRedis.

Counters live under t:{tenant_id}:ratelimit:{scope}:{subject}:{window},
so quotas are isolated per tenant by construction. A Redis outage fails
open: the request is allowed and a warning is logged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from src.app.core.redis import TenantRedis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: int


class TenantRateLimiter:
    """Fixed-window counter per (scope, subject) inside the current tenant.

    Args:
        redis: Tenant-prefixing Redis wrapper.
        limit: Requests allowed per window.
        window_seconds: Window length.
    """

    def __init__(self, redis: TenantRedis, limit: int, window_seconds: int = 60) -> None:
        self._redis = redis
        self._limit = limit
        self._window = window_seconds

    async def hit(self, scope: str, subject: str, now: float | None = None) -> RateLimitResult:
        """Record one request and report whether it is within the limit."""
        now = time.time() if now is None else now
        window_index = int(now // self._window)
        retry_after = max(1, self._window - int(now % self._window))
        key = f"ratelimit:{scope}:{subject}:{window_index}"

        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, self._window)
        except Exception as e:
            logger.warning("Rate limiter unavailable for %s/%s: %s", scope, subject, e)
            return RateLimitResult(allowed=True, limit=self._limit, remaining=self._limit, retry_after=0)

        remaining = max(0, self._limit - count)
        return RateLimitResult(
            allowed=count <= self._limit,
            limit=self._limit,
            remaining=remaining,
            retry_after=retry_after,
        )
