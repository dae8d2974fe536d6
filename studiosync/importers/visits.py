"""Visits importer: class visits -> attendance."""

from __future__ import annotations

from studiosync.core.logging import log_memory
from studiosync.db.entities import create_attendance
from studiosync.importers.base import (
    BaseImporter,
    ImportRun,
    PageResult,
    is_page_fatal,
    source_id,
)
from studiosync.utils.dates import format_api_date, parse_source_datetime, time_key

ENDPOINT = "/class/classvisits"
RESULTS_KEY = "ClassVisits"


class VisitsImporter(BaseImporter):
    """Matches each visit to a student and a class occurrence.

    Students and schedules are loaded once per job run into ``run.cache``;
    a visit is matched to a schedule by exact start-time equality. Visits
    with no matching student or schedule are counted as skipped.
    """

    data_type = "visits"
    record_type = "visit"

    async def import_page(self, run: ImportRun, start_offset: int) -> PageResult:
        students = await run.students()
        schedules = await run.schedules()
        if start_offset == 0:
            self.logger.info(
                "visits_lookups_loaded",
                job_id=run.job_id,
                students=len(students),
                schedules=len(schedules),
            )

        page = await run.client.fetch_page(
            ENDPOINT,
            RESULTS_KEY,
            start_offset,
            page_size=run.page_size,
            params={
                "StartDate": format_api_date(run.start_date),
                "EndDate": format_api_date(run.end_date),
            },
        )
        result = PageResult()
        no_student = 0
        no_schedule = 0

        async with run.session_factory() as session:
            for index, visit in enumerate(page.results):
                await self._maybe_yield(index)

                try:
                    client_id = source_id(visit.get("ClientId"))
                    attended_at = parse_source_datetime(visit.get("StartDateTime"))
                    if client_id is None or attended_at is None:
                        result.skipped += 1
                        continue

                    student_id = students.get(client_id)
                    if student_id is None:
                        no_student += 1
                        continue

                    schedule_id = schedules.get(time_key(attended_at))
                    if schedule_id is None:
                        no_schedule += 1
                        continue

                    async with session.begin_nested():
                        await create_attendance(
                            session,
                            organization_id=run.organization_id,
                            student_id=student_id,
                            schedule_id=schedule_id,
                            attended_at=attended_at,
                            status="attended" if visit.get("SignedIn") else "noshow",
                            source_visit_id=source_id(visit.get("Id")),
                        )
                except Exception as exc:
                    if is_page_fatal(exc):
                        raise
                    await self._skip_failed(session, run, result, visit, exc)
                    continue

                result.imported += 1

            await session.commit()

        result.skipped += no_student + no_schedule
        if no_student or no_schedule:
            self.logger.info(
                "visits_unmatched",
                job_id=run.job_id,
                no_student=no_student,
                no_schedule=no_schedule,
            )
        log_memory(self.logger, "visits_page", job_id=run.job_id, offset=start_offset)

        return await self._finish(run, page, result)
