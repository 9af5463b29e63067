"""Prometheus metrics and Sentry setup.

Metric families:
- ``http_*``: request count and latency per route template and tenant
- ``escrow_*``: lifecycle transitions and refunds by reason
- ``chain_tx_failures_total``: relayer calls that failed after retries
- ``webhooks_received_total``: provider callbacks by source and outcome
- ``rate_limited_requests_total`` and scheduler sweep timings

Tenant ids are used as labels; route templates (not raw paths) keep the
``endpoint`` label bounded.
"""

from __future__ import annotations

import time

import sentry_sdk
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.app.core.tenant import get_current_tenant

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "tenant_id"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "tenant_id"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

escrow_transitions_total = Counter(
    "escrow_transitions_total",
    "Escrow investment state transitions",
    ["from_status", "to_status", "tenant_id"],
)
escrow_refunds_total = Counter(
    "escrow_refunds_total",
    "Refunds initiated, by reason",
    ["reason", "tenant_id"],
)
chain_tx_failures_total = Counter(
    "chain_tx_failures_total",
    "Chain relayer operations that failed after retries",
    ["operation", "tenant_id"],
)
webhooks_received_total = Counter(
    "webhooks_received_total",
    "Provider webhooks by source (chain, kyc) and outcome",
    ["source", "outcome"],
)
rate_limited_requests_total = Counter(
    "rate_limited_requests_total",
    "Requests rejected by the per-tenant rate limiter",
    ["tenant_id", "scope"],
)
scheduler_sweep_duration_seconds = Histogram(
    "scheduler_sweep_duration_seconds",
    "Duration of one escrow sweep across all tenants",
    ["task"],
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0),
)
active_tenants = Gauge("active_tenants", "Active tenants seen by the last sweep")


def record_transition(from_status: str, to_status: str, tenant_id: str) -> None:
    escrow_transitions_total.labels(
        from_status=from_status, to_status=to_status, tenant_id=tenant_id
    ).inc()


def record_refund(reason: str, tenant_id: str) -> None:
    escrow_refunds_total.labels(reason=reason, tenant_id=tenant_id).inc()


def record_chain_failure(operation: str, tenant_id: str) -> None:
    chain_tx_failures_total.labels(operation=operation, tenant_id=tenant_id).inc()


def record_webhook(source: str, outcome: str) -> None:
    """``outcome`` is one of accepted, bad_signature, invalid_payload, rejected."""
    webhooks_received_total.labels(source=source, outcome=outcome).inc()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records count and latency for every request except /metrics itself."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        # TenantAuthMiddleware has already reset the contextvar by now.
        tenant_id = getattr(request.state, "tenant_id", None) or "unknown"
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            tenant_id=tenant_id,
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method, endpoint=endpoint, tenant_id=tenant_id
        ).observe(elapsed)
        return response


def tag_tenant(event: dict, hint: dict) -> dict:
    """Sentry before_send hook: tag events raised inside a tenant scope."""
    try:
        ctx = get_current_tenant()
    except RuntimeError:
        return event
    tags = event.setdefault("tags", {})
    tags["tenant_id"] = ctx.tenant_id
    tags["tenant_slug"] = ctx.tenant_slug
    return event


def init_sentry(dsn: str, environment: str) -> None:
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=0.1 if environment == "production" else 1.0,
        integrations=[StarletteIntegration(), FastApiIntegration()],
        before_send=tag_tenant,
    )


def get_metrics_response() -> Response:
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
