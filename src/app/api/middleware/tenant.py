"""Tenant resolution middleware.

A request is tied to a tenant by the first source that yields an active one:

1. Bearer JWT carrying ``tenant_id``/``tenant_slug`` claims
2. ``X-API-Key`` (the key record names its tenant)
3. ``X-Tenant-ID`` header (login, registration, relayer and KYC webhooks)

Tenant rows are cached in Redis for five minutes under
``tenant:lookup:{id}``; set_tenant_active drops the entry so a deactivated
tenant's outstanding tokens stop resolving on the next request.
"""

from __future__ import annotations

import json
import logging
import uuid

import redis.asyncio as aioredis
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import get_settings
from src.app.core.database import get_engine
from src.app.core.security import validate_api_key
from src.app.core.tenant import (
    SKIP_TENANT_PATHS,
    TenantContext,
    reset_tenant_context,
    set_tenant_context,
)

logger = logging.getLogger(__name__)

TENANT_CACHE_TTL_SECONDS = 300

MISSING_TENANT_DETAIL = (
    "Missing tenant context. Provide Authorization header with JWT, "
    "X-API-Key, or X-Tenant-ID header."
)


def tenant_cache_key(tenant_id: str) -> str:
    return f"tenant:lookup:{tenant_id}"


class TenantDirectory:
    """Active-tenant lookup backed by shared.tenants with a Redis read-through cache.

    Cache failures are logged and fall through to PostgreSQL.
    """

    def __init__(self, redis_client: aioredis.Redis | None = None) -> None:
        self._redis = redis_client

    async def lookup(self, tenant_id: str) -> TenantContext | None:
        try:
            uuid.UUID(tenant_id)
        except ValueError:
            return None

        cached = await self._from_cache(tenant_id)
        if cached is not None:
            return cached

        async with get_engine().connect() as conn:
            row = (
                await conn.execute(
                    text(
                        "SELECT id, slug, schema_name FROM shared.tenants "
                        "WHERE id = CAST(:tid AS uuid) AND is_active = true"
                    ),
                    {"tid": tenant_id},
                )
            ).first()
        if row is None:
            return None

        ctx = TenantContext(tenant_id=str(row.id), tenant_slug=row.slug, schema_name=row.schema_name)
        await self._remember(ctx)
        return ctx

    async def _from_cache(self, tenant_id: str) -> TenantContext | None:
        if not self._redis:
            return None
        try:
            raw = await self._redis.get(tenant_cache_key(tenant_id))
        except Exception:
            logger.warning("Redis cache lookup failed for tenant %s", tenant_id)
            return None
        if not raw:
            return None
        data = json.loads(raw)
        return TenantContext(
            tenant_id=data["tenant_id"],
            tenant_slug=data["tenant_slug"],
            schema_name=data["schema_name"],
        )

    async def _remember(self, ctx: TenantContext) -> None:
        if not self._redis:
            return
        payload = json.dumps(
            {"tenant_id": ctx.tenant_id, "tenant_slug": ctx.tenant_slug, "schema_name": ctx.schema_name}
        )
        try:
            await self._redis.set(tenant_cache_key(ctx.tenant_id), payload, ex=TENANT_CACHE_TTL_SECONDS)
        except Exception:
            logger.warning("Redis cache set failed for tenant %s", ctx.tenant_id)


class TenantAuthMiddleware(BaseHTTPMiddleware):
    """Binds TenantContext for the request or answers 400.

    Paths in SKIP_TENANT_PATHS pass through untouched.
    """

    def __init__(self, app, redis_client: aioredis.Redis | None = None):
        super().__init__(app)
        self._directory = TenantDirectory(redis_client)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path.startswith(SKIP_TENANT_PATHS):
            return await call_next(request)

        ctx = None
        for resolve in (self._from_jwt, self._from_api_key, self._from_header):
            ctx = await resolve(request)
            if ctx is not None:
                break
        if ctx is None:
            return JSONResponse(status_code=400, content={"detail": MISSING_TENANT_DETAIL})

        request.state.tenant_id = ctx.tenant_id
        token = set_tenant_context(ctx)
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(token)

    async def _resolve_tenant_by_id(self, tenant_id: str) -> TenantContext | None:
        return await self._directory.lookup(tenant_id)

    async def _from_jwt(self, request: Request) -> TenantContext | None:
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return None
        settings = get_settings()
        try:
            claims = jwt.decode(
                auth_header[7:], settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None
        if not claims.get("tenant_id") or not claims.get("tenant_slug"):
            return None
        # The directory is authoritative; token claims only name the tenant.
        return await self._resolve_tenant_by_id(claims["tenant_id"])

    async def _from_api_key(self, request: Request) -> TenantContext | None:
        api_key = request.headers.get("X-API-Key")
        if not api_key:
            return None
        try:
            key_info = await validate_api_key(api_key)
        except Exception as e:
            logger.warning("API key validation error: %s", e)
            return None
        if not key_info:
            return None
        return await self._resolve_tenant_by_id(key_info["tenant_id"])

    async def _from_header(self, request: Request) -> TenantContext | None:
        tenant_id = request.headers.get("X-Tenant-ID")
        if not tenant_id:
            return None
        return await self._resolve_tenant_by_id(tenant_id)
