"""Read-only query surface over the synced tables."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import AppSettings, Authorized, Engine
from src.models.sync import SqlQueryRequest, SqlQueryResponse
from src.oura.errors import NotReadOnly
from src.oura.query_gateway import validate_read_only_sql

router = APIRouter(prefix="/api", tags=["query"], dependencies=[Authorized])
logger = logging.getLogger("oura_sync.routers.query")


@router.get("/daily_summaries")
async def list_daily_summaries(
    engine: Engine,
    start: date | None = None,
    end: date | None = None,
) -> list[dict[str, Any]]:
    """Return daily summary rows ordered by day, optionally bounded."""
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return await engine.store.fetch_daily_summaries(start, end)


@router.get("/stats")
async def table_stats(engine: Engine) -> list[dict[str, Any]]:
    """Return the pre-computed day range and row count per table."""
    return await engine.store.fetch_table_stats()


@router.post("/sql", response_model=SqlQueryResponse)
async def run_sql(body: SqlQueryRequest, engine: Engine, settings: AppSettings) -> dict:
    """Run one read-only statement with positional ``$n`` parameters."""
    if not body.sql:
        raise HTTPException(status_code=400, detail="sql is required")
    if len(body.sql) > settings.sql_max_length:
        raise HTTPException(status_code=400, detail="sql is too long")
    if len(body.params) > settings.sql_max_params:
        raise HTTPException(status_code=400, detail="Too many params")

    try:
        validate_read_only_sql(body.sql)
    except NotReadOnly as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        rows = await engine.store.run_read_only(body.sql, body.params)
    except Exception as exc:
        logger.warning("Ad-hoc query failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)[:500])
    return {"results": rows, "row_count": len(rows)}
