"""Sync orchestration across all Oura resources.

``SyncOrchestrator.sync(total_days, offset_days, resource_filter)``:

1. Load the resource catalog and apply the optional filter.
2. Run every resource concurrently; within one resource, walk the history
   backwards in that resource's chunk size, one window at a time.
. Record per-resource sync state, then refresh ``table_stats`` when anything
   succeeded.

A failure in one resource never cancels or aborts another.  Per resource::

    pending → fetching(window i) → fetching(window i+1) | failed | done
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date
from typing import Callable, Collection

from src.oura.catalog import CatalogLoader
from src.oura.config_loader import SyncConfig
from src.oura.fetcher import WindowedFetcher
from src.oura.models import (
    ResourceDescriptor,
    ResourceOutcome,
    ResourceStatus,
    SyncSummary,
    TimeWindow,
    utc_now,
)
from src.oura.repository import SyncStore

logger = logging.getLogger("oura_sync.oura.orchestrator")


def plan_windows(total_days: int, offset_days: int, chunk_days: int, today: date) -> list[TimeWindow]:
    """Split ``total_days`` of history ending ``offset_days`` ago into windows.

    Windows are ordered newest first.  Window ``i`` ends ``offset + i`` days
    ago; its span is ``chunk_days``, except the last one, which stops at the
    far edge of the requested history.

    Args:
        total_days:  Days of history to cover.
        offset_days: Days to skip back from ``today`` before starting.
        chunk_days:  Maximum span of one window.
        today:       Anchor date (UTC).
    """
    windows: list[TimeWindow] = []
    for i in range(0, max(total_days, 0), chunk_days):
        windows.append(
            TimeWindow.ending_days_ago(
                today,
                end_offset=offset_days + i,
                start_offset=offset_days + min(i + chunk_days, total_days),
            )
        )
    return windows


def parse_resource_filter(raw: str | None) -> frozenset[str] | None:
    """Parse ``"a, b,,c"`` into ``{"a", "b", "c"}``; empty input means no filter."""
    if not raw:
        return None
    names = frozenset(part.strip() for part in raw.split(",") if part.strip())
    return names or None


def clamp_backfill_span(
    days: int | None,
    offset_days: int | None,
    default_days: int,
    max_days: int,
) -> tuple[int, int]:
    """Normalize user-supplied backfill parameters.

    ``offset_days`` is clamped to ``[0, max_days]``; ``days`` defaults to
    ``default_days`` when missing or non-positive and is capped so the
    window never reaches further back than ``max_days``.

    Returns:
        ``(total_days, offset_days)``; ``total_days`` may be 0 when the
        offset already exhausts the range.
    """
    offset = min(offset_days, max_days) if offset_days and offset_days > 0 else 0
    remaining = max(0, max_days - offset)
    total = days if days and days > 0 else default_days
    return min(total, remaining), offset


class SyncOrchestrator:
    """Fans out per-resource syncs and aggregates their outcomes."""

    def __init__(
        self,
        catalog: CatalogLoader,
        fetcher: WindowedFetcher,
        config: SyncConfig,
        store: SyncStore | None = None,
        subject_id: str = "default",
        today: Callable[[], date] = lambda: utc_now().date(),
    ) -> None:
        self._catalog = catalog
        self._fetcher = fetcher
        self._config = config
        self._store = store
        self._subject_id = subject_id
        self._today = today

    async def sync(
        self,
        total_days: int,
        offset_days: int = 0,
        resource_filter: Collection[str] | None = None,
    ) -> SyncSummary:
        """Sync ``total_days`` of history ending ``offset_days`` ago.

        Args:
            total_days:      Span of history to cover.
            offset_days:     How far back from today the span ends.
            resource_filter: Only sync these resource names (None = all).

        Returns:
            SyncSummary with one outcome per selected resource.
        """
        started = time.monotonic()
        resources = await self._catalog.list_resources()
        if resource_filter is not None:
            wanted = set(resource_filter)
            resources = [r for r in resources if r.name in wanted]

        today = self._today()
        results = await asyncio.gather(
            *(self._sync_resource(r, total_days, offset_days, today) for r in resources),
            return_exceptions=True,
        )

        outcomes: list[ResourceOutcome] = []
        for resource, result in zip(resources, results):
            if isinstance(result, ResourceOutcome):
                outcomes.append(result)
            else:
                outcomes.append(
                    ResourceOutcome(
                        resource=resource.name, status=ResourceStatus.FAILED, error=str(result)
                    )
                )

        await self._record_state(outcomes)
        await self._refresh_stats(outcomes)

        summary = SyncSummary(
            outcomes=outcomes, duration_ms=int((time.monotonic() - started) * 1000)
        )
        logger.info(
            "Sync complete: %d resources, %d ok, %d failed, %d requests in %dms",
            len(outcomes), summary.successful, summary.failed,
            summary.total_requests, summary.duration_ms,
        )
        return summary

    async def _sync_resource(
        self, resource: ResourceDescriptor, total_days: int, offset_days: int, today: date
    ) -> ResourceOutcome:
        outcome = ResourceOutcome(resource=resource.name, status=ResourceStatus.FETCHING)
        try:
            if not resource.windowed:
                outcome.requests += await self._fetcher.fetch(resource, None)
                outcome.windows = 1
            else:
                chunk = self._config.chunk_days(resource.name)
                for window in plan_windows(total_days, offset_days, chunk, today):
                    outcome.requests += await self._fetcher.fetch(resource, window)
                    outcome.windows += 1
        except Exception as exc:
            outcome.status = ResourceStatus.FAILED
            outcome.error = str(exc)
            outcome.requests += getattr(exc, "requests", 0)
            logger.warning("Sync failed for %s after %d window(s): %s", resource.name, outcome.windows, exc)
            return outcome

        outcome.status = ResourceStatus.DONE
        return outcome

    async def _record_state(self, outcomes: list[ResourceOutcome]) -> None:
        if self._store is None:
            return
        now = utc_now()
        for outcome in outcomes:
            try:
                await self._store.record_sync_state(
                    self._subject_id, outcome.resource, now, error=outcome.error
                )
            except Exception as exc:
                logger.warning("Could not record sync state for %s: %s", outcome.resource, exc)

    async def _refresh_stats(self, outcomes: list[ResourceOutcome]) -> None:
        if self._store is None or not any(o.status is ResourceStatus.DONE for o in outcomes):
            return
        try:
            await self._store.refresh_table_stats()
        except Exception as exc:
            logger.warning("Could not refresh table stats: %s", exc)
