"""Async HTTP client for the KYC/AML provider.

Only session creation is outbound; decisions arrive on the signed KYC
webhook. Retries use the shared provider policy (core.http_retry). Any
failure, including a 2xx body that is not a valid session, ends in
KycProviderError.
"""

from __future__ import annotations

import httpx
import structlog
from pydantic import ValidationError
from tenacity import RetryError

from src.app.core.http_retry import provider_retry
from src.app.escrow.errors import KycProviderError
from src.app.kyc.schemas import KycSession

logger = structlog.get_logger(__name__)

_kyc_retry = provider_retry()


class KycClient:
    """Client for the KYC provider REST API.

    Args:
        base_url: Provider base URL.
        api_key: Provider API token.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    TIMEOUT = 15.0

    def __init__(
        self,
        base_url: str,
        api_key: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._headers = {
            "Authorization": f"Token {api_key}",
            "Content-Type": "application/json",
        }

    @_kyc_retry
    async def _create_session(self, user_id: str, email: str) -> dict:
        async with httpx.AsyncClient(
            headers=self._headers, timeout=self.TIMEOUT, transport=self._transport
        ) as client:
            response = await client.post(
                f"{self._base_url}/verifications",
                json={"external_user_id": user_id, "email": email},
            )
            response.raise_for_status()
            return response.json()

    async def start_verification(self, user_id: str, email: str) -> KycSession:
        """Open a verification session and return where to send the investor."""
        try:
            session = KycSession.model_validate(await self._create_session(user_id, email))
        except (RetryError, httpx.HTTPError) as e:
            cause = e.last_attempt.exception() if isinstance(e, RetryError) else e
            logger.warning("kyc.start_failed", user_id=user_id, error=str(cause))
            raise KycProviderError(f"KYC provider unavailable: {cause}") from e
        except (ValidationError, ValueError) as e:
            logger.warning("kyc.malformed_response", user_id=user_id, error=str(e))
            raise KycProviderError(f"KYC provider returned an unusable response: {e}") from e

        logger.info("kyc.session_started", user_id=user_id, reference=session.reference)
        return session
