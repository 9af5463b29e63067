"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import auth, deals, escrow, health, investments, kyc, tenants, webhooks

router = APIRouter()

router.include_router(health.router)
router.include_router(tenants.router)
router.include_router(auth.router)
router.include_router(kyc.router)
router.include_router(deals.router)
router.include_router(investments.router)
router.include_router(escrow.router)
router.include_router(webhooks.router)
