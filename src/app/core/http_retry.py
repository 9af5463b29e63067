"""Tenacity policy shared by the outbound provider clients.

Three attempts with exponential backoff (1-10s). Only transport errors,
429 and 5xx are retried; any other 4xx is the caller's mistake and fails
at once.
"""

from __future__ import annotations

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, (httpx.ConnectError, httpx.TimeoutException))


def provider_retry():
    return retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(is_transient),
    )
