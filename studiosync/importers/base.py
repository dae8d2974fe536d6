"""Base class for all per-datatype importers.

Defines the contract that the import worker drives: one call imports
exactly one source page starting at a given offset and reports where the
next page starts.

Key principles:
1. Each importer handles exactly ONE data type
2. Importers hold no state between calls; per-run lookups live on ``ImportRun``
3. Replaying a page (same offset) never duplicates rows
4. A bad record is skipped, never fatal; page and source errors propagate
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studiosync.core.errors import ErrorKind, SourceAPIError, classify_error
from studiosync.db.entities import (
    load_schedules_by_time,
    load_students_by_source_id,
    record_skipped,
)
from studiosync.db.retry import is_connection_error
from studiosync.source.client import Page, SourceAPIClient
from studiosync.utils.dates import start_of_day

# Yield to the event loop every N records on large pages
YIELD_EVERY = 50

ProgressCallback = Callable[[int, int], Awaitable[None]]

# Failure kinds that stop the page instead of skipping one record
PAGE_FATAL_KINDS = (ErrorKind.STORAGE, ErrorKind.TIMEOUT, ErrorKind.MEMORY)


@dataclass
class LookupCache:
    """Read-only snapshots built once per job run and shared across pages."""

    students_by_source_id: dict[str, UUID] | None = None
    schedules_by_time: dict[str, UUID] | None = None
    sales_mode: str | None = None  # "sales" or "transactions" once detected


@dataclass
class ImportRun:
    """Everything an importer needs for one job run."""

    organization_id: str
    start_date: date
    end_date: date
    session_factory: async_sessionmaker[AsyncSession]
    client: SourceAPIClient
    job_id: str | None = None
    page_size: int | None = None
    on_progress: ProgressCallback | None = None
    cache: LookupCache = field(default_factory=LookupCache)

    @property
    def window_start(self):
        return start_of_day(self.start_date)

    @property
    def window_end(self):
        """Exclusive end of the inclusive date range."""
        return start_of_day(self.end_date + timedelta(days=1))

    async def students(self) -> dict[str, UUID]:
        if self.cache.students_by_source_id is None:
            async with self.session_factory() as session:
                self.cache.students_by_source_id = await load_students_by_source_id(
                    session, self.organization_id
                )
        return self.cache.students_by_source_id

    async def schedules(self) -> dict[str, UUID]:
        if self.cache.schedules_by_time is None:
            async with self.session_factory() as session:
                self.cache.schedules_by_time = await load_schedules_by_time(
                    session, self.organization_id
                )
        return self.cache.schedules_by_time


@dataclass
class PageResult:
    """Outcome of importing one page."""

    imported: int = 0
    updated: int = 0
    skipped: int = 0
    next_offset: int = 0
    total: int = 0
    completed: bool = False


class BaseImporter(ABC):
    """Abstract base class for per-datatype importers."""

    data_type: str = ""
    # Singular name stored on SkippedRecords
    record_type: str = ""

    def __init__(self):
        self.logger = structlog.get_logger(f"{__name__}.{self.data_type}")

    @abstractmethod
    async def import_page(self, run: ImportRun, start_offset: int) -> PageResult:
        """Import one page of source records starting at ``start_offset``.

        Raises:
            SourceAPIError: Page fetch failed
            StorageError / SQLAlchemyError: Writes failed
        """

    async def _finish(self, run: ImportRun, page: Page, result: PageResult) -> PageResult:
        """Fill pagination fields from the fetched page and report progress."""
        result.next_offset = page.next_offset
        result.total = page.total_results
        result.completed = not page.has_more

        if run.on_progress is not None:
            await run.on_progress(result.next_offset, result.total)

        self.logger.info(
            "import_page_completed",
            job_id=run.job_id,
            organization_id=run.organization_id,
            data_type=self.data_type,
            offset=page.offset,
            next_offset=result.next_offset,
            total=result.total,
            imported=result.imported,
            updated=result.updated,
            skipped=result.skipped,
            completed=result.completed,
        )
        return result

    async def _skip_failed(
        self,
        session: AsyncSession,
        run: ImportRun,
        result: PageResult,
        record: Any,
        exc: Exception,
        *,
        record_id: Any = None,
    ) -> None:
        """Audit a record whose mapping or write raised and count it as skipped.

        Must be called after the record's savepoint has been rolled back.
        """
        if record_id is None and isinstance(record, dict):
            record_id = source_id(record.get("Id"))
        reason = str(exc) or type(exc).__name__
        self.logger.warning(
            "import_record_failed",
            job_id=run.job_id,
            data_type=self.data_type,
            record_id=record_id,
            error=reason,
        )
        await record_skipped(
            session,
            organization_id=run.organization_id,
            import_job_id=run.job_id,
            data_type=self.record_type,
            source_record_id=record_id,
            reason=reason,
            raw_payload=record if isinstance(record, dict) else {"value": record},
        )
        result.skipped += 1

    @staticmethod
    async def _maybe_yield(index: int) -> None:
        if index and index % YIELD_EVERY == 0:
            await asyncio.sleep(0)


def is_page_fatal(exc: BaseException) -> bool:
    """True for errors that must fail the page rather than skip one record.

    Source API errors and lost database connections affect every record
    after them; anything else is specific to the record being written.
    """
    if isinstance(exc, SourceAPIError) or is_connection_error(exc):
        return True
    return classify_error(exc) in PAGE_FATAL_KINDS


def nested_value(record: dict[str, Any], *path: str) -> Any:
    """``record[a][b]...`` or None when any level is missing."""
    value: Any = record
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def source_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
