"""Liveness and sync freshness probe. Public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.dependencies import AppSettings

router = APIRouter(tags=["system"])
logger = logging.getLogger("oura_sync.health")


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Report process, database and scheduler status.

    ``last_sync_at`` is the most recent successful resource sync recorded in
    ``oura_sync_state``; it stays null until the first sync completes.
    """
    state = request.app.state
    pool = getattr(state, "pool", None)
    scheduler = getattr(state, "scheduler", None)

    db_ok = False
    last_sync_at: datetime | None = None
    if pool is not None:
        try:
            async with pool.acquire() as conn:
                last_sync_at = await conn.fetchval(
                    "SELECT max(last_success_at) FROM oura_sync_state"
                )
            db_ok = True
        except Exception as exc:
            logger.warning("Health check DB probe failed: %s", exc)

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "engine": "ready" if getattr(state, "engine", None) is not None else "starting",
        "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
        "last_sync_at": last_sync_at.isoformat() if last_sync_at else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
