"""Request/response schemas for the backfill and query endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from src.models.base import ApiBase


class ResourceOutcomeRead(ApiBase):
    resource: str
    status: str
    windows: int
    requests: int
    error: str | None = None


class SyncSummaryRead(ApiBase):
    successful: int
    failed: int
    total_requests: int
    duration_ms: int
    resources: list[ResourceOutcomeRead] = Field(default_factory=list)


class BackfillAccepted(ApiBase):
    status: str = "accepted"
    detail: str = "Backfill initiated."
    total_days: int
    offset_days: int
    resources: list[str] | None = None


class SqlQueryRequest(ApiBase):
    sql: str = ""
    params: list[Any] = Field(default_factory=list)


class SqlQueryResponse(ApiBase):
    results: list[dict[str, Any]]
    row_count: int
