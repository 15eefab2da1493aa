"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from src.dependencies import AppSettings
from src.services.database import get_pool

router = APIRouter(tags=["system"])
logger = logging.getLogger("focusbeat.health")


@router.get("/health")
async def health_check(settings: AppSettings) -> dict:
    """Liveness check. Returns 200 if the API process is up.

    Reports database reachability and whether the Oura integration has its
    client credentials. A missing Oura setup degrades biofeedback only, so it
    does not change ``status``.
    """
    db_ok = False
    try:
        pool = get_pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        db_ok = True
    except Exception as exc:
        logger.warning("Health check DB ping failed: %s", exc)

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "oura": {
            "configured": settings.oura_configured,
            "missing": settings.missing_oura_settings(),
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
