"""Authentication API endpoints.

Provides login, token refresh, investor registration, current user info,
wallet binding and API key management. Login, refresh and register resolve
the tenant from X-Tenant-ID; everything else requires a valid JWT or API key.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.api.deps import get_current_user, get_db
from src.app.core.security import (
    create_access_token,
    create_refresh_token,
    hash_password,
    issue_api_key,
    token_claims_for,
    verify_password,
    verify_token,
)
from src.app.core.tenant import TenantContext, get_current_tenant
from src.app.models.tenant import ApiKey, User
from src.app.schemas.auth import (
    ApiKeyCreate,
    ApiKeyResponse,
    ApiKeySummary,
    LoginRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
    WalletUpdate,
)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def _user_response(user: User, tenant: TenantContext) -> UserResponse:
    return UserResponse(
        id=str(user.id),
        email=user.email,
        name=user.name,
        role=user.role,
        tenant_id=str(user.tenant_id),
        tenant_slug=tenant.tenant_slug,
        wallet_address=user.wallet_address,
        kyc_status=user.kyc_status or "not_started",
    )


def _tokens(user: User, tenant: TenantContext) -> TokenResponse:
    claims = token_claims_for(user, tenant.tenant_slug)
    return TokenResponse(
        access_token=create_access_token(claims),
        refresh_token=create_refresh_token(claims),
    )


async def _find_user(
    db: AsyncSession,
    tenant: TenantContext,
    *,
    email: str | None = None,
    user_id: uuid.UUID | None = None,
    active_only: bool = True,
) -> User | None:
    query = select(User).where(User.tenant_id == uuid.UUID(tenant.tenant_id))
    if email is not None:
        query = query.where(func.lower(User.email) == email.lower())
    if user_id is not None:
        query = query.where(User.id == user_id)
    if active_only:
        query = query.where(User.is_active == True)  # noqa: E712
    result = await db.execute(query)
    return result.scalar_one_or_none()


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Exchange email and password for tokens in the X-Tenant-ID tenant."""
    tenant = get_current_tenant()
    user = await _find_user(db, tenant, email=body.email)
    if not user or not user.hashed_password or not verify_password(body.password, user.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    return _tokens(user, tenant)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(body: TokenRefreshRequest, db: AsyncSession = Depends(get_db)):
    claims = verify_token(body.refresh_token, token_type="refresh")
    tenant = get_current_tenant()
    if claims.get("tenant_id") != tenant.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token tenant does not match request tenant context",
        )
    try:
        user_id = uuid.UUID(claims["sub"])
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")

    user = await _find_user(db, tenant, user_id=user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")
    # Role changes since the last login are picked up here.
    return _tokens(user, tenant)


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Self-signup. Always creates an investor with KYC not started."""
    tenant = get_current_tenant()
    if await _find_user(db, tenant, email=body.email, active_only=False):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    user = User(
        tenant_id=uuid.UUID(tenant.tenant_id),
        email=body.email.lower(),
        name=body.name,
        hashed_password=hash_password(body.password),
        role="investor",
        kyc_status="not_started",
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return _user_response(user, tenant)


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the authenticated user, including wallet and KYC status."""
    return _user_response(current_user, get_current_tenant())


@router.patch("/me/wallet", response_model=UserResponse)
async def set_wallet(
    body: WalletUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Bind the wallet used for escrow deposits and refunds."""
    current_user.wallet_address = body.wallet_address
    await db.commit()
    await db.refresh(current_user)
    return _user_response(current_user, get_current_tenant())


@router.post("/api-keys", response_model=ApiKeyResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    body: ApiKeyCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Mint an API key acting as the current user.

    The raw key is in this response only; the database keeps a bcrypt hash.
    """
    tenant_id = uuid.UUID(get_current_tenant().tenant_id)
    key_id, raw_key, secret_hash = issue_api_key(tenant_id)
    api_key = ApiKey(
        id=key_id,
        tenant_id=tenant_id,
        user_id=current_user.id,
        key_hash=secret_hash,
        name=body.name,
    )
    db.add(api_key)
    await db.commit()
    await db.refresh(api_key)
    return ApiKeyResponse(id=str(key_id), name=api_key.name, key=raw_key, created_at=api_key.created_at)


@router.get("/api-keys", response_model=list[ApiKeySummary])
async def list_api_keys(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(ApiKey).where(ApiKey.user_id == current_user.id).order_by(ApiKey.created_at)
    )
    return [
        ApiKeySummary(
            id=str(k.id),
            name=k.name,
            is_active=k.is_active,
            last_used_at=k.last_used_at,
            created_at=k.created_at,
        )
        for k in result.scalars().all()
    ]


@router.delete("/api-keys/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_api_key(
    key_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Deactivate one of the current user's keys. Revoking twice is a no-op."""
    result = await db.execute(
        select(ApiKey).where(ApiKey.id == key_id, ApiKey.user_id == current_user.id)
    )
    api_key = result.scalar_one_or_none()
    if api_key is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")
    if api_key.is_active:
        api_key.is_active = False
        await db.commit()
