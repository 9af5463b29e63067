"""Async HTTP client for the EscrowFactory relayer.

The relayer owns keys and gas; this service only asks it to create,
release and refund per-investment escrows and receives confirmations on
the chain webhook. Every mutating call sends an Idempotency-Key derived
from the escrow and operation, so a retried request never submits a
second transaction. The attempt number is part of the key, so a
resubmission after a failed transaction is a new request.

Retries follow the shared client pattern (tenacity, 3 attempts,
exponential backoff 1-10s) and apply to transport errors, 429 and 5xx
only; other 4xx answers fail at once. Responses are validated against
EscrowCreated / TxSubmitted. Every failure, including a 2xx body that is
not the expected JSON, surfaces as ChainGatewayError.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import RetryError

from src.app.chain.schemas import EscrowCreated, TxSubmitted
from src.app.core.http_retry import provider_retry
from src.app.escrow.errors import ChainGatewayError

logger = structlog.get_logger(__name__)

ResponseT = TypeVar("ResponseT", bound=BaseModel)

_chain_retry = provider_retry()


class EscrowFactoryClient:
    """Client for the EscrowFactory relayer REST API.

    Args:
        base_url: Relayer base URL.
        api_key: Relayer bearer token.
        chain_id: Chain the factory is deployed on.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    TIMEOUT = 30.0

    def __init__(
        self,
        base_url: str,
        api_key: str,
        chain_id: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._chain_id = chain_id
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=self.TIMEOUT,
            transport=self._transport,
        )

    @_chain_retry
    async def _post(self, path: str, payload: dict[str, Any], idempotency_key: str) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                f"{self._base_url}{path}",
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
            response.raise_for_status()
            return response.json()

    async def _call(
        self,
        operation: str,
        path: str,
        payload: dict[str, Any],
        key: str,
        response_model: type[ResponseT],
    ) -> ResponseT:
        try:
            return response_model.model_validate(await self._post(path, payload, key))
        except (RetryError, httpx.HTTPError) as e:
            cause = e.last_attempt.exception() if isinstance(e, RetryError) else e
            logger.warning("chain.request_failed", operation=operation, path=path, error=str(cause))
            raise ChainGatewayError(f"EscrowFactory {operation} failed: {cause}") from e
        except (ValidationError, ValueError, KeyError) as e:
            logger.warning("chain.malformed_response", operation=operation, path=path, error=str(e))
            raise ChainGatewayError(f"EscrowFactory {operation} failed: unusable response ({e})") from e

    async def create_escrow(
        self,
        investment_id: str,
        investor_wallet: str,
        amount: Decimal,
        currency: str,
        expires_at: datetime,
        attempt: int = 0,
    ) -> EscrowCreated:
        """Deploy a per-investment escrow that accepts ``amount`` from the investor."""
        created = await self._call(
            "create_escrow",
            "/escrows",
            {
                "chain_id": self._chain_id,
                "investment_id": investment_id,
                "depositor": investor_wallet,
                "amount": str(amount),
                "currency": currency,
                "expires_at": expires_at.isoformat(),
            },
            f"create:{investment_id}:{attempt}",
            EscrowCreated,
        )
        logger.info(
            "chain.escrow_created",
            investment_id=investment_id,
            escrow_address=created.escrow_address,
            tx_hash=created.tx_hash,
        )
        return created

    async def release(self, escrow_address: str, beneficiary_wallet: str, attempt: int = 0) -> str:
        """Release escrowed funds to the issuer. Returns the tx hash."""
        submitted = await self._call(
            "release",
            f"/escrows/{escrow_address}/release",
            {"chain_id": self._chain_id, "beneficiary": beneficiary_wallet},
            f"release:{escrow_address}:{attempt}",
            TxSubmitted,
        )
        logger.info("chain.release_submitted", escrow_address=escrow_address, tx_hash=submitted.tx_hash)
        return submitted.tx_hash

    async def refund(self, escrow_address: str, investor_wallet: str, attempt: int = 0) -> str:
        """Return escrowed funds to the investor. Returns the tx hash."""
        submitted = await self._call(
            "refund",
            f"/escrows/{escrow_address}/refund",
            {"chain_id": self._chain_id, "recipient": investor_wallet},
            f"refund:{escrow_address}:{attempt}",
            TxSubmitted,
        )
        logger.info("chain.refund_submitted", escrow_address=escrow_address, tx_hash=submitted.tx_hash)
        return submitted.tx_hash
