"""FastAPI dependency injection for tenant-scoped resources and authentication.

These dependencies are used in endpoint function signatures to inject
the correct tenant context, database session, Redis client, authenticated
user, role guards, rate limits and the services wired onto app.state.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from typing import Any

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.config import Settings, get_settings
from src.app.core.database import get_tenant_session
from src.app.core.monitoring import rate_limited_requests_total
from src.app.core.rate_limit import TenantRateLimiter
from src.app.core.redis import TenantRedis, get_tenant_redis
from src.app.core.security import validate_api_key, verify_platform_admin_key, verify_token
from src.app.core.tenant import TenantContext, get_current_tenant
from src.app.models.tenant import User


async def get_tenant() -> TenantContext:
    """Get the current tenant context (set by TenantAuthMiddleware)."""
    return get_current_tenant()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get a tenant-scoped database session."""
    async for session in get_tenant_session():
        yield session


async def get_redis() -> TenantRedis:
    """Get a tenant-aware Redis client."""
    return get_tenant_redis()


def _as_uuid(value: Any) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the current user from JWT or API key.

    Checks Authorization header for Bearer JWT first, then X-API-Key header.
    Returns the User object from the database.

    Raises:
        HTTPException(401): If no valid authentication is provided.
        HTTPException(403): If user's tenant doesn't match the current tenant context.
    """
    tenant = get_current_tenant()

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        payload = verify_token(auth_header[7:], token_type="access")

        if payload.get("tenant_id") and payload["tenant_id"] != tenant.tenant_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Token tenant does not match request tenant context",
            )
        user_id = _as_uuid(payload.get("sub"))
        unauthorized_detail = "User not found or inactive"
    else:
        api_key = request.headers.get("X-API-Key")
        if not api_key:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
                headers={"WWW-Authenticate": "Bearer"},
            )
        key_info = await validate_api_key(api_key)
        if not key_info:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid API key",
            )
        if key_info["tenant_id"] != tenant.tenant_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="API key tenant does not match request tenant context",
            )
        user_id = _as_uuid(key_info["user_id"])
        unauthorized_detail = "API key user not found or inactive"

    result = await db.execute(
        select(User).where(
            User.id == user_id,
            User.tenant_id == uuid.UUID(tenant.tenant_id),
            User.is_active == True,  # noqa: E712
        )
    )
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=unauthorized_detail,
        )
    return user


def require_role(*roles: str) -> Callable[..., Any]:
    """Dependency factory: the current user must hold one of ``roles``."""

    async def _check(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(roles)}",
            )
        return user

    return _check


async def require_platform_admin(
    x_admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
) -> None:
    """Super-admin guard for tenant management endpoints."""
    if not verify_platform_admin_key(x_admin_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Platform admin key required",
        )


def rate_limit(scope: str) -> Callable[..., Any]:
    """Dependency factory: per-tenant, per-user fixed-window limit for ``scope``."""

    async def _check(
        user: User = Depends(get_current_user),
        tenant: TenantContext = Depends(get_tenant),
        redis: TenantRedis = Depends(get_redis),
        settings: Settings = Depends(get_settings),
    ) -> None:
        limiter = TenantRateLimiter(redis, settings.RATE_LIMIT_PER_MINUTE)
        result = await limiter.hit(scope, str(user.id))
        if not result.allowed:
            rate_limited_requests_total.labels(tenant_id=tenant.tenant_id, scope=scope).inc()
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(result.retry_after)},
            )

    return _check


def _from_state(request: Request, attr: str, label: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    service = getattr(request.app.state, attr, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_escrow_service(request: Request) -> Any:
    return _from_state(request, "escrow_service", "Escrow service")


def get_deal_service(request: Request) -> Any:
    return _from_state(request, "deal_service", "Deal service")


def get_investor_repository(request: Request) -> Any:
    return _from_state(request, "investor_repository", "Investor store")


def get_kyc_client(request: Request) -> Any:
    return _from_state(request, "kyc_client", "KYC provider")
