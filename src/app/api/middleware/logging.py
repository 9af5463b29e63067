"""Request logging and structlog configuration.

Every request gets a request_id: the caller's X-Request-ID when it is a
valid UUID (relayer and KYC webhooks forward theirs), otherwise a fresh
one. It is echoed on the response and bound into structlog contextvars
for the duration of the request, so escrow, deal and chain events logged
while serving it carry the same id.

Production renders JSON lines; other environments use the console renderer.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import Environment, get_settings

logger = structlog.get_logger(__name__)

# Probe and scrape traffic is logged at debug to keep request logs readable.
QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def configure_structlog() -> None:
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _request_id(request: Request) -> str:
    inbound = request.headers.get("X-Request-ID")
    if inbound:
        try:
            return str(uuid.UUID(inbound))
        except ValueError:
            pass
    return str(uuid.uuid4())


def _subject(request: Request) -> str | None:
    """Unverified-for-authz subject claim, for log correlation only."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    settings = get_settings()
    try:
        claims = jwt.decode(
            auth_header[7:], settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        return None
    return claims.get("sub")


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs one ``request.completed`` (or ``request.failed``) line per request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = _request_id(request)
        started = time.monotonic()
        fields = {
            "method": request.method,
            "path": request.url.path,
            "user_id": _subject(request),
        }

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "request.failed",
                status_code=500,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
                tenant_id=getattr(request.state, "tenant_id", None),
                **fields,
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id

        if response.status_code >= 500:
            emit = logger.error
        elif response.status_code >= 400:
            emit = logger.warning
        elif request.url.path in QUIET_PATHS:
            emit = logger.debug
        else:
            emit = logger.info
        emit(
            "request.completed",
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            tenant_id=getattr(request.state, "tenant_id", None),
            request_id=request_id,
            **fields,
        )
        return response
