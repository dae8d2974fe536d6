"""Cron-driven scheduled imports.

The scheduler only creates jobs (through the same ``ImportController.start``
path as a user) and records the outcome of the previous scheduled run; all
execution is delegated to the import worker.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from croniter import croniter
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studiosync.core.errors import ActiveImportExistsError, InvalidImportConfigError
from studiosync.db.models import ScheduledImportModel
from studiosync.jobs.control import ImportController
from studiosync.jobs.types import JobStatus, normalize_data_types
from studiosync.utils.dates import as_utc, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_CRON = "0 2 * * *"
DEFAULT_DATA_TYPES = "clients,classes,visits,sales"
DEFAULT_DAYS = 7

RUN_STATUS_BY_JOB_STATUS = {
    JobStatus.COMPLETED: "success",
    JobStatus.FAILED: "failed",
    JobStatus.CANCELLED: "cancelled",
}


def schedule_defaults(organization_id: str) -> dict[str, Any]:
    """Configuration reported for an organization with no schedule yet."""
    return {
        "organizationId": organization_id,
        "enabled": False,
        "cronExpression": DEFAULT_CRON,
        "dataTypes": DEFAULT_DATA_TYPES,
        "daysToImport": DEFAULT_DAYS,
        "lastRunAt": None,
        "lastRunStatus": None,
        "lastRunError": None,
        "lastJobId": None,
    }


def schedule_payload(model: ScheduledImportModel) -> dict[str, Any]:
    return {
        "organizationId": model.organization_id,
        "enabled": model.enabled,
        "cronExpression": model.cron_expression,
        "dataTypes": model.data_types,
        "daysToImport": model.days_to_import,
        "lastRunAt": model.last_run_at.isoformat() if model.last_run_at else None,
        "lastRunStatus": model.last_run_status,
        "lastRunError": model.last_run_error,
        "lastJobId": str(model.last_job_id) if model.last_job_id else None,
    }


def parse_data_types(value: str) -> list[str]:
    return normalize_data_types(part for part in value.split(",") if part.strip())


class ImportScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        controller: ImportController,
        *,
        min_gap_minutes: int = 60,
    ):
        self.session_factory = session_factory
        self.controller = controller
        self.min_gap = timedelta(minutes=min_gap_minutes)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def get_schedule(self, organization_id: str) -> dict[str, Any]:
        async with self.session_factory() as session:
            model = await self._load(session, organization_id)
            return schedule_payload(model) if model else schedule_defaults(organization_id)

    async def save_schedule(
        self,
        organization_id: str,
        *,
        enabled: bool,
        cron_expression: str | None = None,
        data_types: str | None = None,
        days_to_import: int | None = None,
    ) -> dict[str, Any]:
        """Create or update an organization's schedule.

        Raises:
            InvalidImportConfigError: Invalid cron expression, data types or days
        """
        cron_expression = cron_expression or DEFAULT_CRON
        if not croniter.is_valid(cron_expression):
            raise InvalidImportConfigError(f"Invalid cron expression: {cron_expression}")
        if enabled and data_types is not None and not data_types.strip():
            raise InvalidImportConfigError(
                "Data types are required when enabling scheduled imports"
            )
        data_types = ",".join(parse_data_types(data_types or DEFAULT_DATA_TYPES))
        days_to_import = days_to_import or DEFAULT_DAYS
        if days_to_import < 1:
            raise InvalidImportConfigError("Days to import must be at least 1")

        async with self.session_factory() as session:
            model = await self._load(session, organization_id)
            if model is None:
                model = ScheduledImportModel(organization_id=organization_id)
                session.add(model)
            model.enabled = enabled
            model.cron_expression = cron_expression
            model.data_types = data_types
            model.days_to_import = days_to_import
            await session.commit()
            await session.refresh(model)
            logger.info(
                "scheduled_import_saved",
                organization_id=organization_id,
                enabled=enabled,
                cron=cron_expression,
            )
            return schedule_payload(model)

    @staticmethod
    async def _load(session: AsyncSession, organization_id: str) -> ScheduledImportModel | None:
        result = await session.execute(
            select(ScheduledImportModel).where(
                ScheduledImportModel.organization_id == organization_id
            )
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def is_due(self, schedule: ScheduledImportModel, now: datetime) -> bool:
        """True when a cron fire time passed since the last run (or creation).

        A schedule never runs twice within the minimum gap.
        """
        last_run = as_utc(schedule.last_run_at) if schedule.last_run_at else None
        if last_run is not None and now - last_run < self.min_gap:
            return False

        previous_fire = croniter(schedule.cron_expression, now).get_prev(datetime)
        reference = last_run or as_utc(schedule.created_at)
        return as_utc(previous_fire) > reference

    async def check(self, now: datetime | None = None) -> list[str]:
        """Evaluate every enabled schedule once. Returns the created job ids."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduledImportModel).where(ScheduledImportModel.enabled.is_(True))
            )
            schedules = list(result.scalars())

            created: list[str] = []
            for schedule in schedules:
                await self._record_previous_outcome(schedule)
                if not croniter.is_valid(schedule.cron_expression):
                    logger.error(
                        "scheduled_import_invalid_cron",
                        organization_id=schedule.organization_id,
                        cron=schedule.cron_expression,
                    )
                    continue
                if not self.is_due(schedule, now):
                    continue
                job_id = await self._trigger(schedule, now)
                if job_id:
                    created.append(job_id)

            await session.commit()
        return created

    async def run_now(self, organization_id: str) -> str | None:
        """Trigger an organization's schedule immediately, ignoring cron and gap."""
        async with self.session_factory() as session:
            schedule = await self._load(session, organization_id)
            if schedule is None:
                raise InvalidImportConfigError("No scheduled import is configured")
            await self._record_previous_outcome(schedule)
            job_id = await self._trigger(schedule, utcnow(), raise_errors=True)
            await session.commit()
            return job_id

    async def _trigger(
        self,
        schedule: ScheduledImportModel,
        now: datetime,
        *,
        raise_errors: bool = False,
    ) -> str | None:
        organization_id = schedule.organization_id
        end_date = now.date()
        start_date = end_date - timedelta(days=schedule.days_to_import)

        try:
            # A paused job is left alone; only a user start replaces it
            active = await self.controller.active(organization_id)
            if active is not None:
                raise ActiveImportExistsError(active.id, active.status.value)
            job = await self.controller.start(
                organization_id,
                parse_data_types(schedule.data_types),
                start_date,
                end_date,
            )
        except ActiveImportExistsError as exc:
            logger.info(
                "scheduled_import_skipped_active",
                organization_id=organization_id,
                job_id=exc.job_id,
            )
            if raise_errors:
                raise
            return None
        except InvalidImportConfigError as exc:
            logger.error(
                "scheduled_import_invalid", organization_id=organization_id, error=str(exc)
            )
            if raise_errors:
                raise
            schedule.last_run_at = now
            schedule.last_run_status = "failed"
            schedule.last_run_error = str(exc)
            return None

        schedule.last_run_at = now
        schedule.last_run_status = "running"
        schedule.last_run_error = None
        schedule.last_job_id = UUID(job.id)
        logger.info(
            "scheduled_import_started",
            organization_id=organization_id,
            job_id=job.id,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )
        return job.id

    async def _record_previous_outcome(self, schedule: ScheduledImportModel) -> None:
        """Fold the final status of the last scheduled job into the schedule."""
        if schedule.last_run_status != "running" or schedule.last_job_id is None:
            return

        job = await self.controller.store.get(schedule.last_job_id)
        if job is None:
            schedule.last_run_status = "failed"
            schedule.last_run_error = "Import job disappeared from database"
            return

        run_status = RUN_STATUS_BY_JOB_STATUS.get(job.status)
        if run_status is None:
            return
        schedule.last_run_status = run_status
        if job.status == JobStatus.COMPLETED:
            schedule.last_run_error = None
        elif job.status == JobStatus.CANCELLED:
            schedule.last_run_error = job.error or "Import was cancelled"
        else:
            schedule.last_run_error = job.error or "Import failed"
