"""Credentials: passwords, JWTs, API keys, webhook HMACs and the admin key.

Passwords and API key secrets are bcrypt-hashed (bcrypt used directly,
without passlib). Access and refresh JWTs carry the tenant claims that
TenantAuthMiddleware resolves the request tenant from.

API keys have the shape ``dv_<tenant id hex>_<key id hex>_<secret>``, so a
key names the tenant schema and row to check and only one bcrypt
comparison is made per request.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import HTTPException, status
from jose import JWTError, jwt
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "dv"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


# ── JWT ───────────────────────────────────────────────────────────────────────


def _encode(claims: dict, lifetime: timedelta, token_type: str) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {**claims, "exp": now + lifetime, "iat": now, "type": token_type}
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Short-lived token; ``data`` is normally built by token_claims_for()."""
    settings = get_settings()
    lifetime = expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    return _encode(data, lifetime, "access")


def create_refresh_token(data: dict) -> str:
    return _encode(data, timedelta(days=get_settings().JWT_REFRESH_TOKEN_EXPIRE_DAYS), "refresh")


def token_claims_for(user, tenant_slug: str) -> dict:
    return {
        "sub": str(user.id),
        "tenant_id": str(user.tenant_id),
        "tenant_slug": tenant_slug,
        "email": user.email,
        "role": user.role,
    }


def verify_token(token: str, token_type: str = "access") -> dict:
    """Decode a JWT of the expected type.

    Raises:
        HTTPException(401): Bad signature, expired, wrong type or no subject.
    """
    settings = get_settings()
    rejected = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise rejected
    if payload.get("type") != token_type or not payload.get("sub"):
        raise rejected
    return payload


# ── Webhook signatures and the platform admin key ─────────────────────────────


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of a raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Constant-time check of an X-Signature header.

    An empty secret rejects everything: webhooks must be configured
    before they can move money.
    """
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, body), signature.strip().lower())


def verify_platform_admin_key(provided: str | None) -> bool:
    configured = get_settings().PLATFORM_ADMIN_KEY
    if not configured or not provided:
        return False
    return hmac.compare_digest(configured, provided)


# ── API keys ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ParsedApiKey:
    tenant_id: uuid.UUID
    key_id: uuid.UUID
    secret: str


def issue_api_key(tenant_id: uuid.UUID) -> tuple[uuid.UUID, str, str]:
    """Mint a key for ``tenant_id``.

    Returns ``(key_id, raw_key, secret_hash)``; only the hash is stored.
    """
    key_id = uuid.uuid4()
    secret = secrets.token_urlsafe(32)
    raw = f"{API_KEY_PREFIX}_{tenant_id.hex}_{key_id.hex}_{secret}"
    return key_id, raw, hash_password(secret)


def parse_api_key(raw: str) -> ParsedApiKey | None:
    # token_urlsafe may itself contain underscores, so split at most three times.
    parts = raw.split("_", 3)
    if len(parts) != 4 or parts[0] != API_KEY_PREFIX or not parts[3]:
        return None
    try:
        return ParsedApiKey(uuid.UUID(hex=parts[1]), uuid.UUID(hex=parts[2]), parts[3])
    except ValueError:
        return None


async def validate_api_key(api_key: str) -> dict | None:
    """Resolve an API key to its tenant and user, or None.

    The key must belong to an active tenant, be active itself, and belong to
    an active user. ``last_used_at`` is stamped on success.
    """
    parsed = parse_api_key(api_key)
    if parsed is None:
        return None

    async with get_engine().connect() as conn:
        tenant = (
            await conn.execute(
                text(
                    "SELECT id::text AS tenant_id, slug, schema_name FROM shared.tenants "
                    "WHERE id = :tid AND is_active = true"
                ),
                {"tid": parsed.tenant_id},
            )
        ).first()
        if tenant is None:
            return None

        schema = tenant.schema_name
        try:
            await conn.execute(
                text("SELECT set_config('app.current_tenant_id', :tid, false)"),
                {"tid": tenant.tenant_id},
            )
            row = (
                await conn.execute(
                    text(f"""
                        SELECT ak.key_hash, ak.user_id::text AS user_id, u.email
                        FROM "{schema}".api_keys ak
                        JOIN "{schema}".users u ON ak.user_id = u.id
                        WHERE ak.id = :kid AND ak.is_active = true AND u.is_active = true
                    """),
                    {"kid": parsed.key_id},
                )
            ).first()
            if row is None or not verify_password(parsed.secret, row.key_hash):
                return None

            await conn.execute(
                text(f'UPDATE "{schema}".api_keys SET last_used_at = now() WHERE id = :kid'),
                {"kid": parsed.key_id},
            )
            await conn.commit()
        except Exception as e:
            logger.warning("API key lookup failed for schema %s: %s", schema, e)
            await conn.rollback()
            return None

    return {
        "tenant_id": tenant.tenant_id,
        "tenant_slug": tenant.slug,
        "user_id": row.user_id,
        "user_email": row.email,
    }
