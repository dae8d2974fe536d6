"""Durable import job store.

Every write is a partial UPDATE of the named columns only, so a heartbeat
tick and a page checkpoint never overwrite each other. Every operation runs
in its own short transaction wrapped in the storage connection retry.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from datetime import date, datetime, timedelta
from typing import Any, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studiosync.db.models import ImportJobModel, SkippedImportRecordModel
from studiosync.db.retry import run_with_storage_retry
from studiosync.jobs.progress import ImportProgress
from studiosync.jobs.types import ImportJob, JobStatus, SkippedRecord
from studiosync.utils.dates import utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")

UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "progress",
        "current_data_type",
        "current_offset",
        "heartbeat_at",
        "paused_at",
        "error",
        "started_at",
        "completed_at",
    }
)


def parse_job_id(job_id: str | UUID) -> UUID | None:
    if isinstance(job_id, UUID):
        return job_id
    try:
        return UUID(str(job_id))
    except ValueError:
        return None


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown import job fields: {', '.join(sorted(unknown))}")

    values = dict(fields)
    if isinstance(values.get("status"), JobStatus):
        values["status"] = values["status"].value
    if isinstance(values.get("progress"), ImportProgress):
        values["progress"] = values["progress"].to_json()
    return values


class JobStore:
    """CRUD and atomic partial updates for ``ImportJobModel`` rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retry_attempts: int = 3,
        retry_wait: float = 1.0,
    ):
        self.session_factory = session_factory
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait

    async def _run(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def attempt() -> T:
            async with self.session_factory() as session:
                result = await operation(session)
                await session.commit()
                return result

        return await run_with_storage_retry(
            attempt, attempts=self.retry_attempts, wait_base=self.retry_wait
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, job_id: str | UUID) -> ImportJob | None:
        key = parse_job_id(job_id)
        if key is None:
            return None

        async def op(session: AsyncSession) -> ImportJob | None:
            model = await session.get(ImportJobModel, key)
            return ImportJob.from_model(model) if model else None

        return await self._run(op)

    async def get_status(self, job_id: str | UUID) -> JobStatus | None:
        """Read-through status check used at every page boundary."""
        key = parse_job_id(job_id)
        if key is None:
            return None

        async def op(session: AsyncSession) -> JobStatus | None:
            status = await session.scalar(
                select(ImportJobModel.status).where(ImportJobModel.id == key)
            )
            return JobStatus(status) if status else None

        return await self._run(op)

    async def get_active(self, organization_id: str) -> ImportJob | None:
        """Most recent pending, running or paused job for an organization."""

        async def op(session: AsyncSession) -> ImportJob | None:
            result = await session.execute(
                select(ImportJobModel)
                .where(
                    ImportJobModel.organization_id == organization_id,
                    ImportJobModel.status.in_(("pending", "running", "paused")),
                )
                .order_by(ImportJobModel.created_at.desc())
                .limit(1)
            )
            model = result.scalars().first()
            return ImportJob.from_model(model) if model else None

        return await self._run(op)

    async def list_by_status(
        self, statuses: Iterable[JobStatus], organization_id: str | None = None
    ) -> list[ImportJob]:
        values = [JobStatus(s).value for s in statuses]

        async def op(session: AsyncSession) -> list[ImportJob]:
            query = select(ImportJobModel).where(ImportJobModel.status.in_(values))
            if organization_id is not None:
                query = query.where(ImportJobModel.organization_id == organization_id)
            result = await session.execute(query.order_by(ImportJobModel.created_at))
            return [ImportJob.from_model(m) for m in result.scalars()]

        return await self._run(op)

    async def get_stalled(
        self, threshold_minutes: int, now: datetime | None = None
    ) -> list[ImportJob]:
        """Running jobs whose last heartbeat is older than the threshold.

        Jobs that never heartbeated are queued, not stalled, and are excluded.
        """
        cutoff = (now or utcnow()) - timedelta(minutes=threshold_minutes)

        async def op(session: AsyncSession) -> list[ImportJob]:
            result = await session.execute(
                select(ImportJobModel).where(
                    ImportJobModel.status == JobStatus.RUNNING.value,
                    ImportJobModel.heartbeat_at.is_not(None),
                    ImportJobModel.heartbeat_at < cutoff,
                )
            )
            return [ImportJob.from_model(m) for m in result.scalars()]

        return await self._run(op)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        organization_id: str,
        data_types: list[str],
        start_date: date,
        end_date: date,
    ) -> ImportJob:
        async def op(session: AsyncSession) -> ImportJob:
            model = ImportJobModel(
                organization_id=organization_id,
                status=JobStatus.PENDING.value,
                data_types=list(data_types),
                start_date=start_date,
                end_date=end_date,
                progress=ImportProgress().to_json(),
                current_offset=0,
            )
            session.add(model)
            await session.flush()
            return ImportJob.from_model(model)

        job = await self._run(op)
        logger.info(
            "import_job_created",
            job_id=job.id,
            organization_id=organization_id,
            data_types=job.data_types,
        )
        return job

    async def update(self, job_id: str | UUID, **fields: Any) -> bool:
        """Patch the named columns. Returns False if the job does not exist."""
        return await self.transition(job_id, None, **fields)

    async def transition(
        self,
        job_id: str | UUID,
        from_statuses: Iterable[JobStatus] | None,
        **fields: Any,
    ) -> bool:
        """Patch the named columns only if the job is in one of ``from_statuses``.

        The status check and the write happen in a single UPDATE statement.
        """
        key = parse_job_id(job_id)
        if key is None:
            return False
        values = _column_values(fields)
        allowed = [JobStatus(s).value for s in from_statuses] if from_statuses is not None else None

        async def op(session: AsyncSession) -> bool:
            stmt = update(ImportJobModel).where(ImportJobModel.id == key)
            if allowed is not None:
                stmt = stmt.where(ImportJobModel.status.in_(allowed))
            result = await session.execute(stmt.values(**values))
            return result.rowcount > 0

        return await self._run(op)

    async def save_checkpoint(
        self,
        job_id: str | UUID,
        progress: ImportProgress,
        data_type: str,
        offset: int,
    ) -> bool:
        return await self.update(
            job_id, progress=progress, current_data_type=data_type, current_offset=offset
        )

    async def update_heartbeat(self, job_id: str | UUID) -> bool:
        return await self.update(job_id, heartbeat_at=utcnow())

    async def ping(self) -> None:
        """Lightweight connectivity check."""

        async def op(session: AsyncSession) -> None:
            await session.execute(text("SELECT 1"))

        await self._run(op)

    # ------------------------------------------------------------------
    # Skipped records
    # ------------------------------------------------------------------

    async def list_skipped(
        self,
        organization_id: str,
        data_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SkippedRecord]:
        async def op(session: AsyncSession) -> list[SkippedRecord]:
            query = select(SkippedImportRecordModel).where(
                SkippedImportRecordModel.organization_id == organization_id
            )
            if data_type:
                query = query.where(SkippedImportRecordModel.data_type == data_type)
            query = (
                query.order_by(SkippedImportRecordModel.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return [SkippedRecord.from_model(m) for m in (await session.execute(query)).scalars()]

        return await self._run(op)

    async def count_skipped(self, organization_id: str, data_type: str | None = None) -> int:
        async def op(session: AsyncSession) -> int:
            query = (
                select(func.count())
                .select_from(SkippedImportRecordModel)
                .where(SkippedImportRecordModel.organization_id == organization_id)
            )
            if data_type:
                query = query.where(SkippedImportRecordModel.data_type == data_type)
            return (await session.execute(query)).scalar_one()

        return await self._run(op)
