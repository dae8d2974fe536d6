"""Stalled import watchdog.

Force-fails running jobs whose heartbeat has gone stale. A running job that
never heartbeated is treated as queued and left alone.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import structlog

from studiosync.jobs.store import JobStore
from studiosync.jobs.types import JobStatus

logger = structlog.get_logger(__name__)

STALLED_JOB_ERROR = (
    "Import worker stopped responding (connection timeout). "
    "Please try a smaller date range or contact support."
)


class Watchdog:
    def __init__(
        self,
        store: JobStore,
        *,
        threshold_minutes: int = 10,
        interval_seconds: float = 120.0,
    ):
        self.store = store
        self.threshold_minutes = threshold_minutes
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Fail every stalled job once. Returns the ids that were failed."""
        stalled = await self.store.get_stalled(self.threshold_minutes, now=now)
        failed: list[str] = []

        for job in stalled:
            # Conditional on still running, so a job that finished meanwhile is kept
            changed = await self.store.transition(
                job.id,
                (JobStatus.RUNNING,),
                status=JobStatus.FAILED,
                error=STALLED_JOB_ERROR,
            )
            if changed:
                failed.append(job.id)
                logger.warning(
                    "watchdog_job_failed",
                    job_id=job.id,
                    organization_id=job.organization_id,
                    heartbeat_at=job.heartbeat_at.isoformat() if job.heartbeat_at else None,
                    data_type=job.current_data_type,
                )

        if stalled:
            logger.info("watchdog_sweep", stalled=len(stalled), failed=len(failed))
        return failed

    async def run_forever(self) -> None:
        logger.info(
            "watchdog_started",
            interval_seconds=self.interval_seconds,
            threshold_minutes=self.threshold_minutes,
        )
        while True:
            try:
                await self.sweep()
            except Exception as exc:
                logger.error("watchdog_sweep_failed", error=str(exc), exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
