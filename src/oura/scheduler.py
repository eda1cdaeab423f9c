"""Scheduled trigger for the daily trailing sync.

Every ``interval`` the scheduler re-syncs the last few days of every
resource.  Correctness relies on idempotent merges: the trailing window
overlaps the previous run on purpose.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from src.oura.models import SyncSummary
from src.oura.orchestrator import SyncOrchestrator

logger = logging.getLogger("oura_sync.oura.scheduler")


class DailySyncScheduler:
    """Run ``orchestrator.sync(trailing_days, 0, None)`` on a fixed interval.

    Usage::

        scheduler = DailySyncScheduler(engine.orchestrator, trailing_days=3)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        trailing_days: int = 3,
        interval: timedelta = timedelta(hours=24),
    ) -> None:
        self._orchestrator = orchestrator
        self._trailing_days = trailing_days
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SyncSummary:
        logger.info("Scheduled sync starting (last %d days)", self._trailing_days)
        return await self._orchestrator.sync(self._trailing_days, 0, None)

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduled sync crashed; retrying next interval")
            await asyncio.sleep(self._interval.total_seconds())

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="oura-daily-sync")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
