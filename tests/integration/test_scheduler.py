"""Integration tests for cron-driven scheduled imports."""

from datetime import date, datetime, timedelta, timezone

import pytest

from studiosync.core.errors import ActiveImportExistsError, InvalidImportConfigError
from studiosync.db.models import ScheduledImportModel
from studiosync.jobs.control import ImportController
from studiosync.jobs.scheduler import ImportScheduler, schedule_defaults
from studiosync.jobs.types import JobStatus
from studiosync.utils.dates import utcnow


@pytest.fixture
def dispatched() -> list[str]:
    return []


@pytest.fixture
def scheduler(session_factory, store, dispatched) -> ImportScheduler:
    async def dispatch(job_id: str) -> None:
        dispatched.append(job_id)

    return ImportScheduler(session_factory, ImportController(store, dispatch=dispatch))


def tomorrow() -> datetime:
    return utcnow() + timedelta(days=1)


# ============================================================================
# Configuration
# ============================================================================


class TestScheduleConfig:
    @pytest.mark.asyncio
    async def test_defaults_without_schedule(self, scheduler, test_org_id):
        assert await scheduler.get_schedule(test_org_id) == schedule_defaults(test_org_id)
        assert schedule_defaults(test_org_id)["cronExpression"] == "0 2 * * *"
        assert schedule_defaults(test_org_id)["enabled"] is False

    @pytest.mark.asyncio
    async def test_save_and_update(self, scheduler, test_org_id):
        saved = await scheduler.save_schedule(
            test_org_id,
            enabled=True,
            cron_expression="30 4 * * 1",
            data_types="sales,students",
            days_to_import=14,
        )

        assert saved["enabled"] is True
        assert saved["cronExpression"] == "30 4 * * 1"
        assert saved["dataTypes"] == "clients,sales"
        assert saved["daysToImport"] == 14
        assert saved["lastRunAt"] is None

        updated = await scheduler.save_schedule(test_org_id, enabled=False)
        assert updated["enabled"] is False
        assert updated["cronExpression"] == "0 2 * * *"
        assert await scheduler.get_schedule(test_org_id) == updated

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs, message",
        [
            ({"cron_expression": "every day"}, "Invalid cron expression"),
            ({"data_types": "  "}, "Data types are required"),
            ({"data_types": "clients,payments"}, "Unknown data type"),
            ({"days_to_import": -3}, "at least 1"),
        ],
    )
    async def test_validation(self, scheduler, test_org_id, kwargs, message):
        with pytest.raises(InvalidImportConfigError, match=message):
            await scheduler.save_schedule(test_org_id, enabled=True, **kwargs)


# ============================================================================
# Due evaluation
# ============================================================================


class TestIsDue:
    NOW = datetime(2024, 3, 10, 3, 0, tzinfo=timezone.utc)

    def schedule(self, **fields) -> ScheduledImportModel:
        fields.setdefault("cron_expression", "0 2 * * *")
        fields.setdefault("created_at", datetime(2024, 3, 1, tzinfo=timezone.utc))
        fields.setdefault("last_run_at", None)
        return ScheduledImportModel(organization_id="org", **fields)

    @pytest.fixture
    def scheduler(self):
        return ImportScheduler(None, None)

    def test_fire_time_after_creation_is_due(self, scheduler):
        assert scheduler.is_due(self.schedule(), self.NOW)

    def test_created_after_last_fire_is_not_due(self, scheduler):
        created = datetime(2024, 3, 10, 2, 30, tzinfo=timezone.utc)
        assert not scheduler.is_due(self.schedule(created_at=created), self.NOW)

    def test_already_ran_for_this_fire(self, scheduler):
        last = datetime(2024, 3, 10, 2, 0, 30, tzinfo=timezone.utc)
        assert not scheduler.is_due(self.schedule(last_run_at=last), self.NOW)

    def test_ran_for_previous_fire(self, scheduler):
        last = datetime(2024, 3, 9, 2, 0, 30, tzinfo=timezone.utc)
        assert scheduler.is_due(self.schedule(last_run_at=last), self.NOW)

    def test_minimum_gap(self, scheduler):
        # Fires every 15 minutes, but never runs twice within the hour
        schedule = self.schedule(
            cron_expression="*/15 * * * *",
            last_run_at=self.NOW - timedelta(minutes=30),
        )
        assert not scheduler.is_due(schedule, self.NOW)
        assert scheduler.is_due(schedule, self.NOW + timedelta(minutes=31))

    def test_naive_timestamps_are_utc(self, scheduler):
        schedule = self.schedule(created_at=datetime(2024, 3, 1))
        assert scheduler.is_due(schedule, self.NOW)


# ============================================================================
# Checks
# ============================================================================


class TestCheck:
    @pytest.mark.asyncio
    async def test_due_schedule_starts_job(self, scheduler, store, dispatched, test_org_id):
        await scheduler.save_schedule(
            test_org_id, enabled=True, data_types="clients,sales", days_to_import=3
        )
        now = tomorrow()

        created = await scheduler.check(now)

        assert len(created) == 1
        assert dispatched == created
        job = await store.get(created[0])
        assert job.status == JobStatus.PENDING
        assert job.data_types == ["clients", "sales"]
        assert job.end_date == now.date()
        assert job.start_date == now.date() - timedelta(days=3)

        schedule = await scheduler.get_schedule(test_org_id)
        assert schedule["lastRunStatus"] == "running"
        assert schedule["lastJobId"] == created[0]
        assert schedule["lastRunError"] is None

    @pytest.mark.asyncio
    async def test_disabled_and_not_due_schedules_are_ignored(self, scheduler, test_org_id):
        await scheduler.save_schedule("org-off", enabled=False)
        await scheduler.save_schedule(test_org_id, enabled=True)

        # Created just now; the previous 02:00 fire predates it
        assert await scheduler.check(utcnow()) == []
        assert len(await scheduler.check(tomorrow())) == 1
        assert (await scheduler.get_schedule("org-off"))["lastRunAt"] is None

    @pytest.mark.asyncio
    async def test_second_check_within_gap_does_nothing(self, scheduler, test_org_id):
        await scheduler.save_schedule(test_org_id, enabled=True)
        now = tomorrow()

        assert len(await scheduler.check(now)) == 1
        assert await scheduler.check(now + timedelta(minutes=5)) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED])
    async def test_active_job_skips_run(self, scheduler, store, test_org_id, status):
        existing = await store.create(test_org_id, ["clients"], date(2024, 3, 1), date(2024, 3, 7))
        await store.update(existing.id, status=status)
        await scheduler.save_schedule(test_org_id, enabled=True)

        assert await scheduler.check(tomorrow()) == []

        assert (await store.get(existing.id)).status == status
        schedule = await scheduler.get_schedule(test_org_id)
        assert schedule["lastRunAt"] is None
        assert schedule["lastRunStatus"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "job_status, error, run_status, run_error",
        [
            (JobStatus.COMPLETED, None, "success", None),
            (JobStatus.FAILED, "Failed while importing Sales: boom", "failed",
             "Failed while importing Sales: boom"),
            (JobStatus.FAILED, None, "failed", "Import failed"),
            (JobStatus.CANCELLED, "Force cancelled by user", "cancelled",
             "Force cancelled by user"),
        ],
    )
    async def test_previous_outcome_is_recorded(
        self, scheduler, store, test_org_id, job_status, error, run_status, run_error
    ):
        await scheduler.save_schedule(test_org_id, enabled=True)
        now = tomorrow()
        [job_id] = await scheduler.check(now)
        await store.update(job_id, status=job_status, error=error)

        await scheduler.check(now + timedelta(minutes=5))

        schedule = await scheduler.get_schedule(test_org_id)
        assert schedule["lastRunStatus"] == run_status
        assert schedule["lastRunError"] == run_error
        assert schedule["lastJobId"] == job_id

    @pytest.mark.asyncio
    async def test_running_job_outcome_stays_running(self, scheduler, store, test_org_id):
        await scheduler.save_schedule(test_org_id, enabled=True)
        now = tomorrow()
        [job_id] = await scheduler.check(now)
        await store.update(job_id, status=JobStatus.RUNNING)

        await scheduler.check(now + timedelta(minutes=5))

        assert (await scheduler.get_schedule(test_org_id))["lastRunStatus"] == "running"

    @pytest.mark.asyncio
    async def test_vanished_job_is_recorded_as_failed(self, session_factory, scheduler, test_org_id):
        await scheduler.save_schedule(test_org_id, enabled=True)
        async with session_factory() as session:
            model = await ImportScheduler._load(session, test_org_id)
            model.last_run_status = "running"
            model.last_job_id = model.id
            model.last_run_at = utcnow()
            await session.commit()

        await scheduler.check(utcnow())

        schedule = await scheduler.get_schedule(test_org_id)
        assert schedule["lastRunStatus"] == "failed"
        assert schedule["lastRunError"] == "Import job disappeared from database"


# ============================================================================
# Run now
# ============================================================================


class TestRunNow:
    @pytest.mark.asyncio
    async def test_without_schedule(self, scheduler, test_org_id):
        with pytest.raises(InvalidImportConfigError, match="No scheduled import"):
            await scheduler.run_now(test_org_id)

    @pytest.mark.asyncio
    async def test_ignores_cron_and_gap(self, scheduler, store, dispatched, test_org_id):
        await scheduler.save_schedule(test_org_id, enabled=False, data_types="visits")

        job_id = await scheduler.run_now(test_org_id)

        assert dispatched == [job_id]
        assert (await store.get(job_id)).data_types == ["visits"]
        schedule = await scheduler.get_schedule(test_org_id)
        assert schedule["lastJobId"] == job_id
        assert schedule["lastRunStatus"] == "running"

    @pytest.mark.asyncio
    async def test_refused_while_active(self, scheduler, store, test_org_id):
        await scheduler.save_schedule(test_org_id, enabled=True)
        first = await scheduler.run_now(test_org_id)

        with pytest.raises(ActiveImportExistsError) as exc_info:
            await scheduler.run_now(test_org_id)
        assert exc_info.value.job_id == first
