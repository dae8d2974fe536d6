"""SQLAlchemy async database models for StudioSync.

Import job bookkeeping (jobs, skipped records, schedules) plus the local
entities the importers write: students, classes, schedules, attendance and
revenue. Every entity row keeps the source-system identifier it was built
from; that identifier is the upsert key.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from studiosync.utils.dates import as_utc, utcnow


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops the offset on write; values read back are re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# ============================================================================
# Import bookkeeping
# ============================================================================


class ImportJobModel(Base):
    """One run of the import pipeline for an organization."""

    __tablename__ = "import_jobs"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    data_types: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Serialized progress blob; parsed leniently by studiosync.jobs.progress
    progress: Mapped[str | None] = mapped_column(Text)

    # Checkpoint
    current_data_type: Mapped[str | None] = mapped_column(Text)
    current_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    heartbeat_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    error: Mapped[str | None] = mapped_column(Text)

    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_import_jobs_org_status", "organization_id", "status"),
        Index("idx_import_jobs_status_heartbeat", "status", "heartbeat_at"),
    )


class SkippedImportRecordModel(Base):
    """Audit entry for a source record rejected during mapping. Never mutated."""

    __tablename__ = "skipped_import_records"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    import_job_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("import_jobs.id", ondelete="SET NULL"), index=True
    )
    data_type: Mapped[str] = mapped_column(Text, nullable=False)
    source_record_id: Mapped[str | None] = mapped_column(Text)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    raw_payload: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class ScheduledImportModel(Base):
    """Per-organization cron schedule for automatic imports."""

    __tablename__ = "scheduled_imports"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    cron_expression: Mapped[str] = mapped_column(Text, nullable=False, default="0 2 * * *")
    data_types: Mapped[str] = mapped_column(
        Text, nullable=False, default="clients,classes,visits,sales"
    )
    days_to_import: Mapped[int] = mapped_column(Integer, nullable=False, default=7)

    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_run_status: Mapped[str | None] = mapped_column(Text)  # success, failed, cancelled, running
    last_run_error: Mapped[str | None] = mapped_column(Text)
    last_job_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


# ============================================================================
# Imported entities
# ============================================================================


class StudentModel(Base):
    __tablename__ = "students"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    source_client_id: Mapped[str | None] = mapped_column(Text)

    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")
    join_date: Mapped[date | None] = mapped_column(Date)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "source_client_id", name="uq_students_org_source"),
    )


class ClassModel(Base):
    """Class definition (one per source class description)."""

    __tablename__ = "classes"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    source_class_id: Mapped[str | None] = mapped_column(Text)

    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    instructor_name: Mapped[str | None] = mapped_column(Text)
    capacity: Mapped[int | None] = mapped_column(Integer)
    duration_minutes: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "source_class_id", name="uq_classes_org_source"),
    )


class ClassScheduleModel(Base):
    """One scheduled occurrence of a class."""

    __tablename__ = "class_schedules"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    class_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("classes.id", ondelete="CASCADE"), nullable=False
    )
    source_schedule_id: Mapped[str | None] = mapped_column(Text)

    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    instructor_name: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(Text)
    capacity: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "class_id",
            "source_schedule_id",
            "start_time",
            name="uq_class_schedules_occurrence",
        ),
        Index("idx_class_schedules_org_start", "organization_id", "start_time"),
    )


class AttendanceModel(Base):
    """A student's visit to one class occurrence."""

    __tablename__ = "attendance"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    student_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    schedule_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("class_schedules.id", ondelete="CASCADE"), nullable=False
    )
    source_visit_id: Mapped[str | None] = mapped_column(Text)

    attended_on: Mapped[date] = mapped_column(Date, nullable=False)
    attended_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="attended")  # attended, noshow

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "student_id",
            "schedule_id",
            "attended_on",
            name="uq_attendance_student_schedule_day",
        ),
    )


class RevenueModel(Base):
    """One revenue line: a sold item, or a whole sale when items are unknown."""

    __tablename__ = "revenue"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    student_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("students.id", ondelete="SET NULL")
    )
    source_sale_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_item_id: Mapped[str | None] = mapped_column(Text)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    revenue_type: Mapped[str] = mapped_column(Text, nullable=False, default="Product")
    description: Mapped[str | None] = mapped_column(Text)
    transaction_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "source_sale_id", "source_item_id", name="uq_revenue_sale_item"
        ),
        Index("idx_revenue_org_date", "organization_id", "transaction_date"),
    )
