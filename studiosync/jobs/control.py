"""User-facing control actions on import jobs.

Each action validates the job's current status before transitioning and
raises a descriptive error otherwise. Status changes are conditional
UPDATEs, so a concurrent transition cannot be overwritten.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from datetime import date

import structlog

from studiosync.core.errors import (
    ActiveImportExistsError,
    InvalidImportConfigError,
    InvalidTransitionError,
    JobNotFoundError,
)
from studiosync.jobs.store import JobStore
from studiosync.jobs.types import ACTIVE_STATUSES, ImportJob, JobStatus, normalize_data_types
from studiosync.utils.dates import utcnow

logger = structlog.get_logger(__name__)

Dispatcher = Callable[[str], Awaitable[None]]

RESUMABLE = (JobStatus.PAUSED, JobStatus.FAILED)
PAUSABLE = (JobStatus.PENDING, JobStatus.RUNNING)

PAUSED_MESSAGE = "Paused by user"
REPLACED_MESSAGE = "Replaced by new import"
FORCE_CANCELLED_MESSAGE = "Force cancelled by user"


class ImportController:
    """start / resume / pause / force-cancel, plus status reads.

    ``dispatch`` hands a job id to whatever executes jobs (the arq queue in
    the web app, an in-process ``ImportWorker`` elsewhere).
    """

    def __init__(self, store: JobStore, dispatch: Dispatcher | None = None):
        self.store = store
        self.dispatch = dispatch

    async def _dispatch(self, job_id: str) -> None:
        if self.dispatch is not None:
            await self.dispatch(job_id)

    async def get(self, job_id: str) -> ImportJob:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def active(self, organization_id: str) -> ImportJob | None:
        return await self.store.get_active(organization_id)

    async def start(
        self,
        organization_id: str,
        data_types: Iterable[str],
        start_date: date,
        end_date: date,
    ) -> ImportJob:
        """Create and dispatch a new import job.

        A paused job for the same organization is cancelled and replaced; a
        pending or running one blocks the start.

        Raises:
            InvalidImportConfigError: Bad data types or date range
            ActiveImportExistsError: A pending/running job already exists
        """
        types = normalize_data_types(data_types)
        if start_date > end_date:
            raise InvalidImportConfigError(
                f"Start date {start_date.isoformat()} is after end date {end_date.isoformat()}"
            )

        active = await self.store.get_active(organization_id)
        if active is not None:
            if active.status != JobStatus.PAUSED:
                raise ActiveImportExistsError(active.id, active.status.value)
            replaced = await self.store.transition(
                active.id,
                (JobStatus.PAUSED,),
                status=JobStatus.CANCELLED,
                error=REPLACED_MESSAGE,
            )
            if not replaced:
                current = await self.store.get(active.id)
                if current is not None and current.is_active:
                    raise ActiveImportExistsError(current.id, current.status.value)
            logger.info(
                "import_job_replaced", job_id=active.id, organization_id=organization_id
            )

        job = await self.store.create(organization_id, types, start_date, end_date)
        await self._dispatch(job.id)
        return job

    async def resume(self, job_id: str) -> ImportJob:
        """paused/failed -> pending, clearing the error, then re-dispatch."""
        job = await self.get(job_id)
        if job.status not in RESUMABLE:
            raise InvalidTransitionError(
                job_id, "resume", job.status.value, tuple(s.value for s in RESUMABLE)
            )

        other = await self.store.get_active(job.organization_id)
        if other is not None and other.id != job.id:
            raise ActiveImportExistsError(other.id, other.status.value)

        changed = await self.store.transition(
            job_id, RESUMABLE, status=JobStatus.PENDING, error=None, paused_at=None
        )
        if not changed:
            current = await self.get(job_id)
            raise InvalidTransitionError(
                job_id, "resume", current.status.value, tuple(s.value for s in RESUMABLE)
            )

        logger.info(
            "import_job_resumed",
            job_id=job_id,
            from_status=job.status.value,
            data_type=job.current_data_type,
            offset=job.current_offset,
        )
        await self._dispatch(job_id)
        return await self.get(job_id)

    async def pause(self, job_id: str) -> ImportJob:
        """pending/running -> paused. Takes effect at the next page boundary."""
        job = await self.get(job_id)
        if job.status not in PAUSABLE:
            raise InvalidTransitionError(
                job_id, "pause", job.status.value, tuple(s.value for s in PAUSABLE)
            )

        changed = await self.store.transition(
            job_id,
            PAUSABLE,
            status=JobStatus.PAUSED,
            paused_at=utcnow(),
            error=PAUSED_MESSAGE,
        )
        if not changed:
            current = await self.get(job_id)
            raise InvalidTransitionError(
                job_id, "pause", current.status.value, tuple(s.value for s in PAUSABLE)
            )

        logger.info("import_job_paused", job_id=job_id, data_type=job.current_data_type)
        return await self.get(job_id)

    async def force_cancel_all(self, organization_id: str) -> list[str]:
        """Cancel every pending, running or paused job of an organization."""
        jobs = await self.store.list_by_status(ACTIVE_STATUSES, organization_id=organization_id)
        cancelled: list[str] = []
        for job in jobs:
            changed = await self.store.transition(
                job.id,
                ACTIVE_STATUSES,
                status=JobStatus.CANCELLED,
                error=FORCE_CANCELLED_MESSAGE,
            )
            if changed:
                cancelled.append(job.id)

        logger.info(
            "import_jobs_force_cancelled",
            organization_id=organization_id,
            job_ids=cancelled,
        )
        return cancelled
