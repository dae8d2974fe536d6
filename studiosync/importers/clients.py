"""Clients importer: source clients -> local students."""

from __future__ import annotations

from typing import Any

from studiosync.db.entities import record_skipped, upsert_student
from studiosync.importers.base import (
    BaseImporter,
    ImportRun,
    PageResult,
    is_page_fatal,
    source_id,
)
from studiosync.utils.dates import parse_source_datetime

ENDPOINT = "/client/clients"
RESULTS_KEY = "Clients"


def map_client(client: dict[str, Any]) -> dict[str, Any]:
    """Student column values for one source client record."""
    creation = parse_source_datetime(client.get("CreationDate"))
    return {
        "first_name": client["FirstName"],
        "last_name": client["LastName"],
        "email": client.get("Email") or None,
        "phone": client.get("MobilePhone") or None,
        "status": "active" if client.get("Status") == "Active" else "inactive",
        "join_date": creation.date() if creation else None,
    }


class ClientsImporter(BaseImporter):
    """Upserts students by source client id, modified since the start date."""

    data_type = "clients"
    record_type = "client"

    async def import_page(self, run: ImportRun, start_offset: int) -> PageResult:
        page = await run.client.fetch_page(
            ENDPOINT,
            RESULTS_KEY,
            start_offset,
            page_size=run.page_size,
            params={"LastModifiedDate": run.window_start.isoformat()},
        )
        result = PageResult()
        cached_students = run.cache.students_by_source_id

        async with run.session_factory() as session:
            for index, client in enumerate(page.results):
                await self._maybe_yield(index)
                client_id = source_id(client.get("Id"))

                if not client.get("FirstName") or not client.get("LastName"):
                    reason = (
                        f"Missing name (FirstName: {client.get('FirstName') or 'null'}, "
                        f"LastName: {client.get('LastName') or 'null'})"
                    )
                    self.logger.warning("client_skipped", client_id=client_id, reason=reason)
                    await record_skipped(
                        session,
                        organization_id=run.organization_id,
                        import_job_id=run.job_id,
                        data_type=self.record_type,
                        source_record_id=client_id,
                        reason=reason,
                        raw_payload=client,
                    )
                    result.skipped += 1
                    continue

                if client_id is None:
                    await record_skipped(
                        session,
                        organization_id=run.organization_id,
                        import_job_id=run.job_id,
                        data_type=self.record_type,
                        source_record_id=None,
                        reason="Missing client id",
                        raw_payload=client,
                    )
                    result.skipped += 1
                    continue

                try:
                    async with session.begin_nested():
                        student_id, created = await upsert_student(
                            session, run.organization_id, client_id, map_client(client)
                        )
                except Exception as exc:
                    if is_page_fatal(exc):
                        raise
                    await self._skip_failed(session, run, result, client, exc, record_id=client_id)
                    continue

                if created:
                    result.imported += 1
                else:
                    result.updated += 1
                if cached_students is not None:
                    cached_students[client_id] = student_id

            await session.commit()

        return await self._finish(run, page, result)
