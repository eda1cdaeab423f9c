"""Backfill trigger.

Short spans are synced inline and return the summary; longer spans are
scheduled in the background and acknowledged with 202.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Response

from src.dependencies import AppSettings, Authorized, Engine
from src.models.sync import BackfillAccepted, SyncSummaryRead
from src.oura.errors import CredentialMissing, TokenExchangeFailed
from src.oura.orchestrator import SyncOrchestrator, clamp_backfill_span, parse_resource_filter

router = APIRouter(tags=["sync"], dependencies=[Authorized])
logger = logging.getLogger("oura_sync.routers.sync")


async def _run_backfill(
    orchestrator: SyncOrchestrator,
    total_days: int,
    offset_days: int,
    resources: frozenset[str] | None,
) -> None:
    try:
        await orchestrator.sync(total_days, offset_days, resources)
    except Exception:
        logger.exception("Background backfill failed")


@router.api_route(
    "/backfill",
    methods=["GET", "POST"],
    response_model=SyncSummaryRead | BackfillAccepted,
)
async def backfill(
    engine: Engine,
    settings: AppSettings,
    background_tasks: BackgroundTasks,
    response: Response,
    days: int | None = None,
    offset_days: int | None = None,
    resources: str | None = None,
) -> dict | BackfillAccepted:
    """Sync ``days`` of history ending ``offset_days`` ago.

    Args:
        days:        Span to cover (defaults to ``backfill_default_days``).
        offset_days: How many days before today the span ends.
        resources:   Comma-separated resource names; omitted means all.
    """
    total, offset = clamp_backfill_span(
        days, offset_days, settings.backfill_default_days, settings.backfill_max_days
    )
    if total <= 0:
        raise HTTPException(status_code=400, detail="Requested range is empty")
    resource_filter = parse_resource_filter(resources)

    try:
        await engine.credentials.get_access_token()
    except CredentialMissing as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except TokenExchangeFailed as exc:
        logger.error("Token refresh failed before backfill: %s", exc)
        raise HTTPException(status_code=502, detail="Token refresh failed")

    if total <= settings.sync_inline_max_days:
        summary = await engine.orchestrator.sync(total, offset, resource_filter)
        return summary.to_json()

    logger.info("Backfill accepted: %d days ending %d days ago", total, offset)
    background_tasks.add_task(_run_backfill, engine.orchestrator, total, offset, resource_filter)
    response.status_code = 202
    return BackfillAccepted(
        total_days=total,
        offset_days=offset,
        resources=sorted(resource_filter) if resource_filter else None,
    )
