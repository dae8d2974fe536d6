"""Per-datatype progress carried on an import job.

The persisted form is a JSON object keyed by data type plus two pipeline-wide
keys::

    {
        "clients": {"current": 200, "total": 350, "imported": 180,
                    "updated": 20, "completed": false},
        "apiCallCount": 4,
        "importStartTime": "2024-02-01T09:00:00+00:00"
    }

Parsing never raises: missing, malformed or legacy blobs yield an empty
progress object. Keys this version does not know about are kept in ``extra``
and written back unchanged.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

DATA_TYPE_ORDER = ("clients", "classes", "visits", "sales")

_KNOWN_TYPE_KEYS = ("current", "total", "imported", "updated", "skipped", "completed")


def _as_int(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class DataTypeProgress:
    current: int = 0
    total: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    completed: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> DataTypeProgress:
        if not isinstance(data, dict):
            return cls()
        return cls(
            current=_as_int(data.get("current")),
            total=_as_int(data.get("total")),
            imported=_as_int(data.get("imported")),
            updated=_as_int(data.get("updated")),
            skipped=_as_int(data.get("skipped")),
            completed=data.get("completed") is True,
            extra={k: v for k, v in data.items() if k not in _KNOWN_TYPE_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "current": self.current,
            "total": self.total,
            "imported": self.imported,
            "updated": self.updated,
            "skipped": self.skipped,
            "completed": self.completed,
        }


@dataclass
class ImportProgress:
    """Progress of a whole job: one entry per data type started so far."""

    data_types: dict[str, DataTypeProgress] = field(default_factory=dict)
    api_call_count: int = 0
    import_start_time: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: Any) -> ImportProgress:
        """Parse a stored progress blob (JSON text or dict)."""
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError:
                return cls()
        if not isinstance(raw, dict):
            return cls()

        progress = cls()
        for key, value in raw.items():
            if key in DATA_TYPE_ORDER:
                progress.data_types[key] = DataTypeProgress.from_dict(value)
            elif key == "apiCallCount":
                progress.api_call_count = _as_int(value)
            elif key == "importStartTime":
                progress.import_start_time = value if isinstance(value, str) else None
            else:
                progress.extra[key] = value
        return progress

    def for_type(self, data_type: str) -> DataTypeProgress:
        """Progress entry for ``data_type``, created on first use."""
        if data_type not in self.data_types:
            self.data_types[data_type] = DataTypeProgress()
        return self.data_types[data_type]

    def is_complete(self, data_type: str) -> bool:
        entry = self.data_types.get(data_type)
        return entry is not None and entry.completed

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        for name in DATA_TYPE_ORDER:
            if name in self.data_types:
                data[name] = self.data_types[name].to_dict()
        data["apiCallCount"] = self.api_call_count
        if self.import_start_time:
            data["importStartTime"] = self.import_start_time
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
