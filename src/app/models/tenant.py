"""Identity tables living in every tenant schema.

Declared under the placeholder schema ``tenant``; the session's
schema_translate_map points it at ``tenant_<slug>`` at runtime. Uniqueness
is always scoped by tenant_id so a constraint violation can never reveal
another tenant's rows.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import TenantBase

USER_ROLES = ("investor", "issuer", "admin")
KYC_STATUSES = ("not_started", "pending", "approved", "rejected")


def _in(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


def _uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))


class User(TenantBase):
    """Investor, issuer, or tenant admin.

    An investor's wallet funds their escrows and receives refunds; their
    kyc_status gates release, and kyc_reference is the provider's id used
    to match verification webhooks back to the row.
    """

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
        CheckConstraint(_in("role", USER_ROLES), name="ck_users_role"),
        CheckConstraint(_in("kyc_status", KYC_STATUSES), name="ck_users_kyc_status"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(200))
    hashed_password: Mapped[str | None] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(50), default="investor", server_default=text("'investor'"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))

    wallet_address: Mapped[str | None] = mapped_column(String(64))
    kyc_status: Mapped[str] = mapped_column(
        String(20), default="not_started", server_default=text("'not_started'")
    )
    kyc_reference: Mapped[str | None] = mapped_column(String(200))
    kyc_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now())


class ApiKey(TenantBase):
    """Hashed API key acting on behalf of one user (back-office integrations)."""

    __tablename__ = "api_keys"
    __table_args__ = (
        UniqueConstraint("tenant_id", "key_hash", name="uq_api_keys_tenant_key_hash"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenant.users.id", ondelete="CASCADE"), nullable=False
    )
    key_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
