"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, Sentry, lifespan events for database initialization, the escrow
lifecycle services and their background sweeps, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import get_settings
from src.app.core.database import close_db, get_tenant_session, init_db, list_active_tenants
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.core.redis import close_redis, get_redis_pool
from src.app.api.middleware.tenant import TenantAuthMiddleware
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.chain.client import EscrowFactoryClient
from src.app.deals.repository import DealRepository
from src.app.deals.service import DealService
from src.app.escrow.repository import EscrowRepository
from src.app.escrow.scheduler import (
    setup_escrow_scheduler,
    start_scheduler_background,
    stop_scheduler_background,
)
from src.app.escrow.service import EscrowLifecycleService
from src.app.events.bus import TenantEventBus
from src.app.kyc.client import KycClient
from src.app.kyc.repository import InvestorRepository


def _event_bus_factory(tenant_id: str) -> TenantEventBus:
    return TenantEventBus(get_redis_pool(), tenant_id)


def build_services(app: FastAPI) -> None:
    """Wire repositories, provider clients and lifecycle services onto app.state."""
    settings = get_settings()

    deal_repository = DealRepository(session_factory=get_tenant_session)
    escrow_repository = EscrowRepository(session_factory=get_tenant_session)
    investor_repository = InvestorRepository(session_factory=get_tenant_session)

    chain_client = EscrowFactoryClient(
        base_url=settings.CHAIN_RELAYER_URL,
        api_key=settings.CHAIN_RELAYER_API_KEY,
        chain_id=settings.CHAIN_ID,
    )

    escrow_service = EscrowLifecycleService(
        escrow_repository,
        deal_repository,
        investor_repository,
        chain_client,
        escrow_duration_days=settings.ESCROW_DURATION_DAYS,
        review_deadline_days=settings.ADMIN_REVIEW_DEADLINE_DAYS,
        max_tx_attempts=settings.CHAIN_TX_MAX_ATTEMPTS,
        event_bus_factory=_event_bus_factory,
    )

    app.state.investor_repository = investor_repository
    app.state.escrow_service = escrow_service
    app.state.deal_service = DealService(
        deal_repository,
        escrow_service,
        event_bus_factory=_event_bus_factory,
    )
    # KYC routes answer 503 until a provider is configured.
    app.state.kyc_client = (
        KycClient(base_url=settings.KYC_PROVIDER_URL, api_key=settings.KYC_API_KEY)
        if settings.KYC_PROVIDER_URL
        else None
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, services and sweeps on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    build_services(app)
    if not settings.CHAIN_RELAYER_URL:
        log.warning("startup.chain_relayer_not_configured")

    if settings.ESCROW_SCHEDULER_ENABLED:
        tasks = await setup_escrow_scheduler(app.state.escrow_service, list_active_tenants)
        await start_scheduler_background(
            tasks, app.state, interval=settings.ESCROW_SWEEP_INTERVAL_SECONDS
        )
    else:
        log.info("startup.escrow_scheduler_disabled")

    yield

    await stop_scheduler_background(app.state)
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="DealVault API",
        version="0.1.0",
        description="Multi-tenant deal platform with KYC-gated on-chain escrow",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Tenant middleware (inner -- resolves tenant context from JWT/header)
    app.add_middleware(TenantAuthMiddleware, redis_client=get_redis_pool())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
