"""Tenant context propagation via Python contextvars.

This module is the foundation of multi-tenant isolation. The TenantContext
is set by middleware at the start of each request (or by the escrow
scheduler for each tenant it sweeps) and is accessible anywhere in the
call stack via get_current_tenant(). Every database query, Redis
operation, and event publish uses this context to scope work to the
correct tenant.
"""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current request."""

    tenant_id: str
    tenant_slug: str
    schema_name: str  # e.g., "tenant_acme_capital"


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current request.

    Raises RuntimeError if no tenant context has been set (i.e., the call
    is not within a tenant-scoped request).
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- request is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context for the current request. Returns a token for reset."""
    return _tenant_context.set(ctx)


def reset_tenant_context(token: contextvars.Token[TenantContext]) -> None:
    """Restore the tenant context that was active before set_tenant_context()."""
    _tenant_context.reset(token)


@contextmanager
def tenant_scope(ctx: TenantContext) -> Iterator[TenantContext]:
    """Run a block of work under ``ctx`` outside of an HTTP request.

    Used by background sweeps that iterate over tenants.
    """
    token = set_tenant_context(ctx)
    try:
        yield ctx
    finally:
        reset_tenant_context(token)


def schema_name_for(slug: str) -> str:
    """Derive the PostgreSQL schema name for a tenant slug."""
    return f"tenant_{slug.replace('-', '_')}"


# ── Paths that skip tenant resolution ───────────────────────────────────────

SKIP_TENANT_PATHS = (
    "/health",
    "/metrics",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/v1/tenants",
)
