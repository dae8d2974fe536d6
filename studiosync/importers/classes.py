"""Classes importer: scheduled class occurrences -> classes + schedules."""

from __future__ import annotations

from uuid import UUID

from studiosync.db.entities import create_class_schedule, get_or_create_class
from studiosync.importers.base import (
    BaseImporter,
    ImportRun,
    PageResult,
    is_page_fatal,
    nested_value,
    source_id,
)
from studiosync.utils.dates import parse_source_datetime

ENDPOINT = "/class/classes"
RESULTS_KEY = "Classes"


class ClassesImporter(BaseImporter):
    """Creates one class per source class description and one schedule row
    per occurrence.

    Occurrences missing their description id, schedule id or times are
    dropped without an audit record; one that fails to map or write is
    recorded as a SkippedRecord.
    """

    data_type = "classes"
    record_type = "class"

    async def import_page(self, run: ImportRun, start_offset: int) -> PageResult:
        page = await run.client.fetch_page(
            ENDPOINT,
            RESULTS_KEY,
            start_offset,
            page_size=run.page_size,
            params={
                "StartDateTime": run.window_start.isoformat(),
                "EndDateTime": run.window_end.isoformat(),
            },
        )
        result = PageResult()
        class_ids: dict[str, UUID] = {}

        async with run.session_factory() as session:
            for index, occurrence in enumerate(page.results):
                await self._maybe_yield(index)

                try:
                    description = occurrence.get("ClassDescription") or {}
                    class_key = source_id(description.get("Id"))
                    schedule_key = source_id(occurrence.get("ClassScheduleId"))
                    start_time = parse_source_datetime(occurrence.get("StartDateTime"))
                    end_time = parse_source_datetime(occurrence.get("EndDateTime"))
                    if not (class_key and schedule_key and start_time and end_time):
                        result.skipped += 1
                        continue

                    instructor = nested_value(occurrence, "Staff", "Name")
                    capacity = occurrence.get("MaxCapacity") or None

                    async with session.begin_nested():
                        class_id = class_ids.get(class_key)
                        if class_id is None:
                            class_id = await get_or_create_class(
                                session,
                                run.organization_id,
                                class_key,
                                {
                                    "name": description.get("Name") or "Unknown Class",
                                    "description": description.get("Description") or None,
                                    "instructor_name": instructor,
                                    "capacity": capacity,
                                },
                            )

                        await create_class_schedule(
                            session,
                            organization_id=run.organization_id,
                            class_id=class_id,
                            source_schedule_id=schedule_key,
                            start_time=start_time,
                            end_time=end_time,
                            instructor_name=instructor,
                            location=nested_value(occurrence, "Location", "Name"),
                            capacity=capacity,
                        )
                except Exception as exc:
                    if is_page_fatal(exc):
                        raise
                    await self._skip_failed(session, run, result, occurrence, exc)
                    continue

                # Cached only once the savepoint holding the class insert is kept
                class_ids[class_key] = class_id
                result.imported += 1

            await session.commit()

        return await self._finish(run, page, result)
