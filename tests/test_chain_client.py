"""Tests for EscrowFactoryClient using httpx.MockTransport."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
from tenacity import wait_none

from src.app.chain.client import EscrowFactoryClient
from src.app.escrow.errors import ChainGatewayError

BASE_URL = "https://relayer.test/v1/"


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch):
    monkeypatch.setattr(EscrowFactoryClient, "_post", EscrowFactoryClient._post.retry_with(wait=wait_none()))


def _client(handler, chain_id: int = 8453) -> EscrowFactoryClient:
    return EscrowFactoryClient(BASE_URL, "relayer-token", chain_id=chain_id, transport=httpx.MockTransport(handler))


class TestCreateEscrow:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"escrow_address": "0xescrow", "tx_hash": "0xtx"})

        created = await _client(handler).create_escrow(
            "inv-1", "0xinvestor", Decimal("1500.50"), "USDC",
            datetime(2026, 4, 1, tzinfo=timezone.utc), attempt=2,
        )

        assert created.escrow_address == "0xescrow"
        assert created.tx_hash == "0xtx"
        request = seen[0]
        assert str(request.url) == "https://relayer.test/v1/escrows"
        assert request.headers["Authorization"] == "Bearer relayer-token"
        assert request.headers["Idempotency-Key"] == "create:inv-1:2"
        body = json.loads(request.content)
        assert body == {
            "chain_id": 8453,
            "investment_id": "inv-1",
            "depositor": "0xinvestor",
            "amount": "1500.50",
            "currency": "USDC",
            "expires_at": "2026-04-01T00:00:00+00:00",
        }

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(503, json={"error": "busy"})
            return httpx.Response(201, json={"escrow_address": "0xescrow", "tx_hash": "0xtx"})

        created = await _client(handler).create_escrow(
            "inv-2", "0xinvestor", Decimal("10"), "USDC", datetime(2026, 4, 1, tzinfo=timezone.utc)
        )
        assert created.tx_hash == "0xtx"
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_gateway_error(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(500, json={"error": "boom"})

        with pytest.raises(ChainGatewayError, match="create_escrow failed"):
            await _client(handler).create_escrow(
                "inv-3", "0xinvestor", Decimal("10"), "USDC", datetime(2026, 4, 1, tzinfo=timezone.utc)
            )
        assert calls["n"] == 3


class TestSettlementCalls:
    @pytest.mark.asyncio
    async def test_release(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"tx_hash": "0xrelease"})

        tx = await _client(handler, chain_id=1).release("0xescrow", "0xissuer", attempt=1)

        assert tx == "0xrelease"
        assert seen[0].url.path == "/v1/escrows/0xescrow/release"
        assert seen[0].headers["Idempotency-Key"] == "release:0xescrow:1"
        assert json.loads(seen[0].content) == {"chain_id": 1, "beneficiary": "0xissuer"}

    @pytest.mark.asyncio
    async def test_refund(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"tx_hash": "0xrefund"})

        tx = await _client(handler).refund("0xescrow", "0xinvestor")

        assert tx == "0xrefund"
        assert seen[0].headers["Idempotency-Key"] == "refund:0xescrow:0"
        assert json.loads(seen[0].content)["recipient"] == "0xinvestor"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ChainGatewayError, match="refund failed"):
            await _client(handler).refund("0xescrow", "0xinvestor")


class TestResponseHandling:
    @pytest.mark.asyncio
    async def test_release_without_tx_hash_is_gateway_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"ok": True})

        with pytest.raises(ChainGatewayError, match="release failed: unusable response"):
            await _client(handler).release("0xescrow", "0xissuer")

    @pytest.mark.asyncio
    async def test_non_json_body_is_gateway_error(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(200, text="<html>maintenance</html>")

        with pytest.raises(ChainGatewayError, match="create_escrow failed"):
            await _client(handler).create_escrow(
                "inv-4", "0xinvestor", Decimal("10"), "USDC", datetime(2026, 4, 1, tzinfo=timezone.utc)
            )
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_empty_escrow_address_is_gateway_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, json={"escrow_address": "", "tx_hash": "0xtx"})

        with pytest.raises(ChainGatewayError):
            await _client(handler).create_escrow(
                "inv-5", "0xinvestor", Decimal("10"), "USDC", datetime(2026, 4, 1, tzinfo=timezone.utc)
            )


class TestRetryPolicy:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 409, 422])
    async def test_client_errors_are_not_retried(self, status):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(status, json={"error": "rejected"})

        with pytest.raises(ChainGatewayError, match="refund failed"):
            await _client(handler).refund("0xescrow", "0xinvestor")
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_rate_limited_is_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(429, json={"error": "slow down"})
            return httpx.Response(202, json={"tx_hash": "0xrefund"})

        assert await _client(handler).refund("0xescrow", "0xinvestor") == "0xrefund"
        assert calls["n"] == 2
