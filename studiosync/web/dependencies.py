"""Shared dependencies for StudioSync web routes.

Dependencies are injected with FastAPI's ``Depends()`` and can be replaced
in tests through ``app.dependency_overrides``.

Usage:
    from fastapi import Depends
    from studiosync.web.dependencies import get_controller

    @router.post("/imports/{job_id}/pause")
    async def pause(job_id: str, controller=Depends(get_controller)):
        ...
"""

from __future__ import annotations

from arq.connections import ArqRedis
from fastapi import Depends, Query

from studiosync.config import get_config
from studiosync.core.queue import enqueue_import_job, get_queue
from studiosync.db.connection import get_session_factory
from studiosync.jobs.control import ImportController
from studiosync.jobs.scheduler import ImportScheduler
from studiosync.jobs.store import JobStore

# Global singletons, built on first use
_store: JobStore | None = None
_queue: ArqRedis | None = None


def get_store() -> JobStore:
    global _store
    if _store is None:
        _store = JobStore(
            get_session_factory(),
            retry_attempts=get_config().worker.storage_retry_attempts,
        )
    return _store


async def dispatch_to_queue(job_id: str) -> None:
    """Hand a job to the background worker through the Redis queue."""
    global _queue
    if _queue is None:
        _queue = await get_queue()
    await enqueue_import_job(_queue, job_id)


def get_controller(store: JobStore = Depends(get_store)) -> ImportController:
    return ImportController(store, dispatch=dispatch_to_queue)


def get_scheduler(controller: ImportController = Depends(get_controller)) -> ImportScheduler:
    return ImportScheduler(
        get_session_factory(),
        controller,
        min_gap_minutes=get_config().scheduler.min_gap_minutes,
    )


def get_org_id(org: str | None = Query(default=None)) -> str:
    """Organization for the request, falling back to the configured default."""
    return org or get_config().org_id


async def close_queue() -> None:
    global _queue
    if _queue is not None:
        await _queue.aclose()
        _queue = None
