"""Tests for the profile, wallet and API key endpoints.

The database session is an AsyncMock; requests run inside a tenant scope
because the auth routes read the tenant straight from contextvars; a
small middleware binds it the way TenantAuthMiddleware would.
"""

from __future__ import annotations

import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.app.api.deps import get_current_user, get_db
from src.app.api.v1.auth import router
from src.app.core.security import hash_password, parse_api_key, verify_password, verify_token
from src.app.core.tenant import TenantContext, tenant_scope
from src.app.models.tenant import ApiKey


def _db() -> AsyncMock:
    db = AsyncMock()
    db.add = MagicMock()
    return db


def _result(row) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = row
    result.scalars.return_value.all.return_value = [row] if row else []
    return result


@pytest_asyncio.fixture
async def api(make_user):
    user = make_user("investor", name="Ada", wallet_address=None)
    db = _db()
    ctx = TenantContext(
        tenant_id=str(user.tenant_id), tenant_slug="acme-capital", schema_name="tenant_acme_capital"
    )
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_db] = lambda: db

    @app.middleware("http")
    async def _bind_tenant(request, call_next):
        with tenant_scope(ctx):
            return await call_next(request)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield SimpleNamespace(client=client, user=user, db=db)


@pytest.mark.asyncio
async def test_me_reports_wallet_and_kyc(api):
    resp = await api.client.get("/api/v1/auth/me")
    assert resp.status_code == 200
    body = resp.json()
    assert body["tenant_slug"] == "acme-capital"
    assert body["kyc_status"] == "not_started"
    assert body["wallet_address"] is None


@pytest.mark.asyncio
async def test_wallet_is_stored_lowercase(api):
    resp = await api.client.patch(
        "/api/v1/auth/me/wallet", json={"wallet_address": "0x" + "AB" * 20}
    )
    assert resp.status_code == 200
    assert api.user.wallet_address == "0x" + "ab" * 20
    api.db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_wallet_must_be_an_evm_address(api):
    resp = await api.client.patch("/api/v1/auth/me/wallet", json={"wallet_address": "bc1qxyz"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_api_key_is_returned_once_and_stored_hashed(api):
    resp = await api.client.post("/api/v1/auth/api-keys", json={"name": "back office"})
    assert resp.status_code == 201
    body = resp.json()

    parsed = parse_api_key(body["key"])
    assert parsed.tenant_id == api.user.tenant_id
    assert str(parsed.key_id) == body["id"]

    stored: ApiKey = api.db.add.call_args.args[0]
    assert stored.id == parsed.key_id
    assert stored.user_id == api.user.id
    assert parsed.secret not in stored.key_hash
    assert verify_password(parsed.secret, stored.key_hash)


@pytest.mark.asyncio
async def test_revoke_deactivates_key(api):
    key = ApiKey(id=uuid.uuid4(), tenant_id=api.user.tenant_id, user_id=api.user.id, key_hash="x", name="ci")
    key.is_active = True
    api.db.execute.return_value = _result(key)

    resp = await api.client.delete(f"/api/v1/auth/api-keys/{key.id}")

    assert resp.status_code == 204
    assert key.is_active is False
    api.db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_revoke_unknown_key_is_404(api):
    api.db.execute.return_value = _result(None)
    resp = await api.client.delete(f"/api/v1/auth/api-keys/{uuid.uuid4()}")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_list_keys_never_exposes_secrets(api):
    key = ApiKey(id=uuid.uuid4(), tenant_id=api.user.tenant_id, user_id=api.user.id, key_hash="h", name="ci")
    key.is_active = True
    api.db.execute.return_value = _result(key)

    resp = await api.client.get("/api/v1/auth/api-keys")

    assert resp.status_code == 200
    assert resp.json() == [
        {"id": str(key.id), "name": "ci", "is_active": True, "last_used_at": None, "created_at": None}
    ]


@pytest.mark.asyncio
async def test_login_issues_tenant_scoped_tokens(api):
    api.user.hashed_password = hash_password("s3cret-pass")
    api.db.execute.return_value = _result(api.user)

    resp = await api.client.post(
        "/api/v1/auth/login", json={"email": api.user.email, "password": "s3cret-pass"}
    )

    assert resp.status_code == 200
    claims = verify_token(resp.json()["access_token"])
    assert claims["tenant_id"] == str(api.user.tenant_id)
    assert claims["tenant_slug"] == "acme-capital"
    assert claims["role"] == "investor"


@pytest.mark.asyncio
async def test_login_wrong_password_is_401(api):
    api.user.hashed_password = hash_password("s3cret-pass")
    api.db.execute.return_value = _result(api.user)
    resp = await api.client.post(
        "/api/v1/auth/login", json={"email": api.user.email, "password": "guess"}
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_register_duplicate_email_is_409(api):
    api.db.execute.return_value = _result(api.user)
    resp = await api.client.post(
        "/api/v1/auth/register", json={"email": api.user.email, "password": "long-enough"}
    )
    assert resp.status_code == 409
    api.db.add.assert_not_called()


@pytest.mark.asyncio
async def test_register_creates_investor(api):
    api.db.execute.return_value = _result(None)
    resp = await api.client.post(
        "/api/v1/auth/register", json={"email": "New.Investor@Example.com", "password": "long-enough"}
    )
    assert resp.status_code == 201
    created = api.db.add.call_args.args[0]
    assert created.role == "investor"
    assert created.email == "new.investor@example.com"
    assert created.kyc_status == "not_started"
