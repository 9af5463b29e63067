"""Request and response bodies for /api/v1/auth."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, field_validator


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    """Investor self-signup within the tenant named by X-Tenant-ID.

    bcrypt only looks at the first 72 bytes, hence the upper bound.
    """

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)
    name: str | None = Field(default=None, max_length=200)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenRefreshRequest(BaseModel):
    refresh_token: str


class WalletUpdate(BaseModel):
    """EVM address that funds escrows and receives refunds, stored lowercase."""

    wallet_address: str = Field(..., pattern=r"^0x[a-fA-F0-9]{40}$")

    @field_validator("wallet_address")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        return value.lower()


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class ApiKeyResponse(BaseModel):
    """A freshly minted key. ``key`` cannot be retrieved again later."""

    id: str
    name: str
    key: str
    created_at: datetime | None = None


class ApiKeySummary(BaseModel):
    id: str
    name: str
    is_active: bool
    last_used_at: datetime | None = None
    created_at: datetime | None = None


class UserResponse(BaseModel):
    id: str
    email: str
    name: str | None = None
    role: str
    tenant_id: str
    tenant_slug: str
    wallet_address: str | None = None
    kyc_status: str = "not_started"
