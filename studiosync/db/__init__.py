"""Database layer for StudioSync with async SQLAlchemy."""

from studiosync.db.connection import get_session_factory, init_db
from studiosync.db.models import (
    AttendanceModel,
    Base,
    ClassModel,
    ClassScheduleModel,
    ImportJobModel,
    RevenueModel,
    ScheduledImportModel,
    SkippedImportRecordModel,
    StudentModel,
)

__all__ = [
    "Base",
    "ImportJobModel",
    "SkippedImportRecordModel",
    "ScheduledImportModel",
    "StudentModel",
    "ClassModel",
    "ClassScheduleModel",
    "AttendanceModel",
    "RevenueModel",
    "get_session_factory",
    "init_db",
]
