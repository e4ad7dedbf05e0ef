"""In-process scheduler for the auto-replenish job.

Disabled by default: production triggers the job through the cron endpoint.
Enabling it next to the external cron is safe because overlapping runs are
excluded by the processing-attempt unique index, not by this process.
"""

from __future__ import annotations

import asyncio
import logging

from billing_engine.models import ReplenishSummary
from sqlalchemy.exc import InterfaceError, OperationalError

from billing_api.services.auto_replenish_service import AutoReplenishJob

logger = logging.getLogger(__name__)


class AutoReplenishScheduler:
    """AsyncIO background task that runs the auto-replenish job on an interval.

    Parameters
    ----------
    job:
        The job to run on every tick.
    interval_seconds:
        Delay between the end of one run and the start of the next.
    """

    def __init__(self, job: AutoReplenishJob, interval_seconds: float = 300) -> None:
        self._job = job
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self.last_summary: ReplenishSummary | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("AutoReplenishScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("AutoReplenishScheduler started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("AutoReplenishScheduler stopped")

    async def run_once(self) -> ReplenishSummary:
        summary = ReplenishSummary()
        self.last_summary = summary
        await self._job.run(summary)
        return summary

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("AutoReplenishScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("AutoReplenishScheduler unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._interval)
