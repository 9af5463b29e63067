"""Tests for the signed chain and KYC webhooks."""

from __future__ import annotations

import json
from decimal import Decimal
from types import SimpleNamespace

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.app.api.deps import get_tenant
from src.app.api.v1.webhooks import router
from src.app.config import get_settings
from src.app.core.security import compute_signature
from src.app.core.tenant import TenantContext
from src.app.escrow.schemas import InvestmentStatus, KycStatus

CHAIN_SECRET = "chain-test-secret"
KYC_SECRET = "kyc-test-secret"


def _signed(secret: str, payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    return body, {"X-Signature": compute_signature(secret, body), "Content-Type": "application/json"}


@pytest_asyncio.fixture
async def api(escrow_service, investors, tenant_id):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_tenant] = lambda: TenantContext(
        tenant_id=tenant_id, tenant_slug="acme-capital", schema_name="tenant_acme_capital"
    )
    app.state.escrow_service = escrow_service
    app.state.investor_repository = investors

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield SimpleNamespace(client=client)


async def _post_chain(api, payload: dict, secret: str = CHAIN_SECRET):
    body, headers = _signed(secret, payload)
    return await api.client.post("/api/v1/webhooks/chain", content=body, headers=headers)


async def _post_kyc(api, payload: dict, secret: str = KYC_SECRET):
    body, headers = _signed(secret, payload)
    return await api.client.post("/api/v1/webhooks/kyc", content=body, headers=headers)


@pytest.fixture
def intent(escrow_service, investors, make_open_deal, tenant_id):
    async def _intent(kyc_reference: str | None = None):
        deal = await make_open_deal()
        investor = investors.add(tenant_id, kyc_status=KycStatus.PENDING, kyc_reference=kyc_reference)
        inv = await escrow_service.create_investment(tenant_id, investor.id, deal.id, Decimal("750"))
        return investor, inv

    return _intent


class TestSignature:
    @pytest.mark.asyncio
    async def test_missing_signature(self, api):
        resp = await api.client.post("/api/v1/webhooks/chain", json={"event_type": "deposit_confirmed"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_secret(self, api):
        resp = await _post_kyc(api, {"reference": "r", "decision": "approved"}, secret="not-the-secret")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unconfigured_secret_rejects(self, api, monkeypatch):
        monkeypatch.setenv("CHAIN_WEBHOOK_SECRET", "")
        get_settings.cache_clear()
        resp = await _post_chain(api, {"event_type": "tx_failed", "escrow_address": "0x1", "tx_hash": "0x2"}, secret="")
        assert resp.status_code == 401


class TestChainWebhook:
    @pytest.mark.asyncio
    async def test_deposit_then_redelivery(self, api, intent, escrow_service, tenant_id):
        _, inv = await intent()
        payload = {
            "event_type": "deposit_confirmed",
            "escrow_address": inv.escrow_address,
            "tx_hash": "0xdeposit",
            "amount": "750",
        }

        first = await _post_chain(api, payload)
        again = await _post_chain(api, payload)

        assert first.status_code == 200
        assert first.json() == {"investment_id": inv.id, "status": "escrowed"}
        assert again.json()["status"] == "escrowed"
        trail = await escrow_service.list_events(tenant_id, inv.id)
        assert [e.to_status for e in trail] == [InvestmentStatus.INTENT, InvestmentStatus.ESCROWED]

    @pytest.mark.asyncio
    async def test_deposit_requires_amount(self, api, intent):
        _, inv = await intent()
        resp = await _post_chain(
            api, {"event_type": "deposit_confirmed", "escrow_address": inv.escrow_address, "tx_hash": "0xd"}
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_malformed_payload(self, api):
        resp = await _post_chain(api, {"event_type": "minted", "escrow_address": "0x1", "tx_hash": "0x2"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_escrow(self, api):
        resp = await _post_chain(
            api, {"event_type": "refund_confirmed", "escrow_address": "0xnothing", "tx_hash": "0x2"}
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_full_settlement(self, api, intent, escrow_service, tenant_id):
        investor, inv = await intent()
        await _post_chain(
            api,
            {"event_type": "deposit_confirmed", "escrow_address": inv.escrow_address, "tx_hash": "0xd", "amount": "750"},
        )
        await escrow_service.apply_kyc_result(tenant_id, investor.id, KycStatus.APPROVED)
        pending = await escrow_service.approve_release(tenant_id, inv.id, "admin-1")

        resp = await _post_chain(
            api,
            {"event_type": "release_confirmed", "escrow_address": inv.escrow_address, "tx_hash": pending.release_tx_hash},
        )
        assert resp.json()["status"] == "released"

    @pytest.mark.asyncio
    async def test_tx_failed_clears_hash(self, api, intent, escrow_service, tenant_id):
        _, inv = await intent()
        await _post_chain(
            api,
            {"event_type": "deposit_confirmed", "escrow_address": inv.escrow_address, "tx_hash": "0xd", "amount": "750"},
        )
        refunding = await escrow_service.manual_refund(tenant_id, inv.id, "admin-1")

        resp = await _post_chain(
            api,
            {
                "event_type": "tx_failed",
                "escrow_address": inv.escrow_address,
                "tx_hash": refunding.refund_tx_hash,
                "error": "nonce too low",
            },
        )
        assert resp.status_code == 200
        stored = await escrow_service.get_investment(tenant_id, inv.id)
        assert stored.refund_tx_hash is None
        assert stored.last_error == "nonce too low"


class TestKycWebhook:
    @pytest.mark.asyncio
    async def test_approval_moves_funded_escrow(self, api, intent):
        _, inv = await intent(kyc_reference="kyc-123")
        await _post_chain(
            api,
            {"event_type": "deposit_confirmed", "escrow_address": inv.escrow_address, "tx_hash": "0xd", "amount": "750"},
        )

        resp = await _post_kyc(api, {"reference": "kyc-123", "decision": "approved"})

        assert resp.status_code == 200
        assert resp.json()["kyc_status"] == "approved"
        assert resp.json()["affected"] == [inv.id]

    @pytest.mark.asyncio
    async def test_rejection_cancels_intent(self, api, intent, escrow_service, tenant_id):
        _, inv = await intent(kyc_reference="kyc-456")
        resp = await _post_kyc(api, {"reference": "kyc-456", "decision": "rejected", "reason": "document mismatch"})

        assert resp.json()["kyc_status"] == "rejected"
        stored = await escrow_service.get_investment(tenant_id, inv.id)
        assert stored.status == InvestmentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_unknown_reference(self, api):
        resp = await _post_kyc(api, {"reference": "kyc-missing", "decision": "approved"})
        assert resp.status_code == 404
