"""Type definitions for import jobs."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from studiosync.core.errors import InvalidImportConfigError
from studiosync.db.models import ImportJobModel, SkippedImportRecordModel
from studiosync.jobs.progress import DATA_TYPE_ORDER, ImportProgress

DATA_TYPE_ALIASES = {"students": "clients"}


class JobStatus(str, Enum):
    """Status of an import job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)


def normalize_data_types(data_types: Iterable[str]) -> list[str]:
    """Deduplicate and order requested data types.

    Raises:
        InvalidImportConfigError: If empty or an unknown type is requested
    """
    requested = set()
    for raw in data_types:
        name = DATA_TYPE_ALIASES.get(raw.strip().lower(), raw.strip().lower())
        if not name:
            continue
        if name not in DATA_TYPE_ORDER:
            raise InvalidImportConfigError(
                f"Unknown data type '{raw}' (expected: {', '.join(DATA_TYPE_ORDER)})"
            )
        requested.add(name)

    if not requested:
        raise InvalidImportConfigError("At least one data type must be selected")
    return [name for name in DATA_TYPE_ORDER if name in requested]


@dataclass
class ImportJob:
    """Snapshot of an import job row."""

    id: str
    organization_id: str
    status: JobStatus
    data_types: list[str]
    start_date: date
    end_date: date
    progress: ImportProgress
    current_data_type: str | None = None
    current_offset: int = 0
    heartbeat_at: datetime | None = None
    paused_at: datetime | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ImportJobModel) -> ImportJob:
        return cls(
            id=str(model.id),
            organization_id=model.organization_id,
            status=JobStatus(model.status),
            data_types=list(model.data_types or []),
            start_date=model.start_date,
            end_date=model.end_date,
            progress=ImportProgress.parse(model.progress),
            current_data_type=model.current_data_type,
            current_offset=model.current_offset or 0,
            heartbeat_at=model.heartbeat_at,
            paused_at=model.paused_at,
            error=model.error,
            started_at=model.started_at,
            completed_at=model.completed_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def status_payload(self) -> dict[str, Any]:
        """Shape returned to status pollers."""
        return {
            "id": self.id,
            "status": self.status.value,
            "progress": self.progress.to_dict(),
            "currentDataType": self.current_data_type,
            "error": self.error,
            "pausedAt": self.paused_at.isoformat() if self.paused_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class SkippedRecord:
    """Read-only view of a skipped source record."""

    id: str
    organization_id: str
    import_job_id: str | None
    data_type: str
    source_record_id: str | None
    reason: str
    raw_payload: str | None
    created_at: datetime | None

    @classmethod
    def from_model(cls, model: SkippedImportRecordModel) -> SkippedRecord:
        return cls(
            id=str(model.id),
            organization_id=model.organization_id,
            import_job_id=str(model.import_job_id) if model.import_job_id else None,
            data_type=model.data_type,
            source_record_id=model.source_record_id,
            reason=model.reason,
            raw_payload=model.raw_payload,
            created_at=model.created_at,
        )
