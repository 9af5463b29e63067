"""Bodies for the platform-admin tenant endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


class TenantCreate(BaseModel):
    """A new tenant, optionally with its first admin user.

    ``admin_email`` and ``admin_password`` must be given together.
    """

    slug: str = Field(
        ...,
        min_length=3,
        max_length=50,
        pattern=r"^[a-z0-9][a-z0-9-]*[a-z0-9]$",
        examples=["acme-capital", "northwind-ventures"],
    )
    name: str = Field(..., min_length=1, max_length=200, examples=["Acme Capital"])
    admin_email: EmailStr | None = None
    admin_password: str | None = Field(default=None, min_length=8, max_length=72)

    @model_validator(mode="after")
    def _admin_pair(self) -> TenantCreate:
        if (self.admin_email is None) != (self.admin_password is None):
            raise ValueError("admin_email and admin_password must be provided together")
        return self


class TenantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    name: str
    schema_name: str
    is_active: bool = True
    deactivated_at: datetime | None = None
    created_at: datetime | None = None
    admin_user_id: str | None = None


class TenantUpdate(BaseModel):
    is_active: bool
