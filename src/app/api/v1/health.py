"""Liveness and readiness probes.

``/health`` only proves the process answers. ``/health/ready`` probes
PostgreSQL and Redis (both required) and reports on the escrow
integrations: whether a chain relayer and KYC provider are configured and
whether the deadline sweeper loops are alive. Integrations never turn the
probe red; an unconfigured relayer is a deployment choice, not an outage.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine
from src.app.core.redis import get_redis_pool

router = APIRouter(tags=["health"])

REQUIRED = ("database", "redis")


@router.get("/health")
async def health_check():
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _probe_database() -> str | None:
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return str(e)
    return None


async def _probe_redis() -> str | None:
    try:
        if not await get_redis_pool().ping():
            return "PING did not return PONG"
    except Exception as e:
        return str(e)
    return None


def _integrations(request: Request) -> dict[str, str]:
    settings = get_settings()
    state = request.app.state

    loops = getattr(state, "escrow_scheduler_tasks", [])
    if not settings.ESCROW_SCHEDULER_ENABLED:
        scheduler = "disabled"
    elif loops and all(not t.done() for t in loops):
        scheduler = "running"
    else:
        scheduler = "stopped"

    return {
        "chain_relayer": "configured" if settings.CHAIN_RELAYER_URL else "unconfigured",
        "kyc_provider": "configured" if getattr(state, "kyc_client", None) else "unconfigured",
        "escrow_scheduler": scheduler,
    }


@router.get("/health/ready")
async def readiness_check(request: Request):
    checks: dict = {}
    for name, probe in (("database", _probe_database), ("redis", _probe_redis)):
        error = await probe()
        checks[name] = "error" if error else "ok"
        if error:
            checks[f"{name}_error"] = error

    ready = all(checks[name] == "ok" for name in REQUIRED)
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "degraded",
            "checks": checks,
            "integrations": _integrations(request),
        },
    )
