"""Background worker process (arq).

Run with ``arq studiosync.worker.WorkerSettings``. All import jobs of the
process go through one in-process ``ImportWorker`` so at most one job runs at
a time; arq only delivers job ids to it.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from arq import cron
from sqlalchemy.ext.asyncio import async_sessionmaker

from studiosync.config import get_config
from studiosync.core.logging import configure_logging
from studiosync.core.queue import get_redis_settings
from studiosync.db.connection import create_engine_for_url
from studiosync.jobs.control import ImportController
from studiosync.jobs.import_worker import ImportWorker
from studiosync.jobs.scheduler import ImportScheduler
from studiosync.jobs.store import JobStore
from studiosync.jobs.watchdog import Watchdog
from studiosync.source.client import SourceAPIClient

configure_logging()
logger = structlog.get_logger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    config = get_config()
    engine = create_engine_for_url(
        config.db.url,
        echo=config.db.echo,
        pool_size=config.db.pool_size,
        max_overflow=config.db.pool_max_overflow,
        pool_timeout=config.db.pool_timeout,
    )
    session_factory = async_sessionmaker(engine, expire_on_commit=False)

    store = JobStore(session_factory, retry_attempts=config.worker.storage_retry_attempts)
    client = SourceAPIClient(config.source)
    worker = ImportWorker(
        store,
        session_factory,
        client,
        heartbeat_interval=config.worker.heartbeat_interval_seconds,
        page_size=config.source.page_size,
    )

    async def dispatch(job_id: str) -> None:
        worker.process_job(job_id)

    # Scheduled jobs run in this process, so dispatch straight to the worker
    controller = ImportController(store, dispatch=dispatch)

    ctx["engine"] = engine
    ctx["client"] = client
    ctx["store"] = store
    ctx["worker"] = worker
    ctx["watchdog"] = Watchdog(
        store,
        threshold_minutes=config.worker.stall_threshold_minutes,
        interval_seconds=config.worker.watchdog_interval_seconds,
    )
    ctx["scheduler"] = ImportScheduler(
        session_factory, controller, min_gap_minutes=config.scheduler.min_gap_minutes
    )

    recovered = await worker.recover()
    logger.info("worker_started", recovered_jobs=recovered)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Leave the running job resumable and release resources."""
    worker: ImportWorker | None = ctx.get("worker")
    if worker is not None:
        await worker.shutdown()
    if "client" in ctx:
        await ctx["client"].close()
    if "engine" in ctx:
        await ctx["engine"].dispose()
    logger.info("worker_stopped")


async def process_import_job(ctx: dict[str, Any], job_id: str) -> str | None:
    """Queue the job on the in-process worker and wait for it to stop."""
    worker: ImportWorker = ctx["worker"]
    # Shielded so an arq timeout only stops the wait, never the job
    status = await asyncio.shield(worker.process_job(job_id))
    return status.value if status is not None else None


async def watchdog_sweep(ctx: dict[str, Any]) -> list[str]:
    return await ctx["watchdog"].sweep()


async def scheduler_check(ctx: dict[str, Any]) -> list[str]:
    return await ctx["scheduler"].check()


def every(minutes: int) -> set[int]:
    """Cron minute set for "every n minutes"."""
    return set(range(0, 60, max(1, minutes)))


class WorkerSettings:
    functions = [process_import_job]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()
    cron_jobs = [
        cron(
            watchdog_sweep,
            minute=every(get_config().worker.watchdog_interval_seconds // 60),
            run_at_startup=True,
        ),
        cron(scheduler_check, minute=every(get_config().scheduler.check_interval_minutes)),
    ]
    # Imports run for hours; the job row, not arq, tracks their state
    job_timeout = 24 * 3600
    max_tries = 1
