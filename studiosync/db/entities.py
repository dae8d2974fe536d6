"""Idempotent write helpers for imported entities.

Each helper works inside the caller's session; the caller commits. Inserts
that must tolerate replays use the dialect's ``ON CONFLICT DO NOTHING``.
"""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from studiosync.db.models import (
    AttendanceModel,
    ClassModel,
    ClassScheduleModel,
    RevenueModel,
    SkippedImportRecordModel,
    StudentModel,
)
from studiosync.utils.dates import time_key


def dialect_insert(session: AsyncSession, model):
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


# ============================================================================
# Skipped records
# ============================================================================


async def record_skipped(
    session: AsyncSession,
    *,
    organization_id: str,
    import_job_id: UUID | str | None,
    data_type: str,
    source_record_id: Any,
    reason: str,
    raw_payload: dict | None,
) -> SkippedImportRecordModel:
    if isinstance(import_job_id, str):
        import_job_id = UUID(import_job_id)

    record = SkippedImportRecordModel(
        organization_id=organization_id,
        import_job_id=import_job_id,
        data_type=data_type,
        source_record_id=str(source_record_id) if source_record_id is not None else None,
        reason=reason,
        raw_payload=json.dumps(raw_payload, default=str) if raw_payload is not None else None,
    )
    session.add(record)
    await session.flush()
    return record


# ============================================================================
# Students
# ============================================================================


async def load_students_by_source_id(session: AsyncSession, organization_id: str) -> dict[str, UUID]:
    """Map source client id -> local student id for one organization."""
    result = await session.execute(
        select(StudentModel.source_client_id, StudentModel.id).where(
            StudentModel.organization_id == organization_id,
            StudentModel.source_client_id.is_not(None),
        )
    )
    return {source_id: student_id for source_id, student_id in result.all()}


async def upsert_student(
    session: AsyncSession,
    organization_id: str,
    source_client_id: str,
    fields: dict[str, Any],
) -> tuple[UUID, bool]:
    """Create or update a student keyed by source client id.

    Returns:
        (student id, created flag)
    """
    existing = (
        await session.execute(
            select(StudentModel).where(
                StudentModel.organization_id == organization_id,
                StudentModel.source_client_id == source_client_id,
            )
        )
    ).scalar_one_or_none()

    if existing is not None:
        for key, value in fields.items():
            setattr(existing, key, value)
        await session.flush()
        return existing.id, False

    student = StudentModel(
        organization_id=organization_id, source_client_id=source_client_id, **fields
    )
    session.add(student)
    await session.flush()
    return student.id, True


# ============================================================================
# Classes and schedules
# ============================================================================


async def get_or_create_class(
    session: AsyncSession,
    organization_id: str,
    source_class_id: str,
    fields: dict[str, Any],
) -> UUID:
    """Return the class for a source class description, creating it once."""
    query = select(ClassModel.id).where(
        ClassModel.organization_id == organization_id,
        ClassModel.source_class_id == source_class_id,
    )
    class_id = (await session.execute(query)).scalar_one_or_none()
    if class_id is not None:
        return class_id

    stmt = (
        dialect_insert(session, ClassModel)
        .values(organization_id=organization_id, source_class_id=source_class_id, **fields)
        .on_conflict_do_nothing()
        .returning(ClassModel.id)
    )
    class_id = (await session.execute(stmt)).scalar_one_or_none()
    if class_id is None:
        class_id = (await session.execute(query)).scalar_one()
    return class_id


async def create_class_schedule(
    session: AsyncSession,
    *,
    organization_id: str,
    class_id: UUID,
    source_schedule_id: str,
    start_time: datetime,
    end_time: datetime,
    instructor_name: str | None = None,
    location: str | None = None,
    capacity: int | None = None,
) -> bool:
    """Insert one class occurrence. Returns False if it already existed."""
    stmt = (
        dialect_insert(session, ClassScheduleModel)
        .values(
            organization_id=organization_id,
            class_id=class_id,
            source_schedule_id=source_schedule_id,
            start_time=start_time,
            end_time=end_time,
            instructor_name=instructor_name,
            location=location,
            capacity=capacity,
        )
        .on_conflict_do_nothing()
        .returning(ClassScheduleModel.id)
    )
    return (await session.execute(stmt)).scalar_one_or_none() is not None


async def load_schedules_by_time(session: AsyncSession, organization_id: str) -> dict[str, UUID]:
    """Map normalised occurrence start time -> schedule id."""
    result = await session.execute(
        select(ClassScheduleModel.start_time, ClassScheduleModel.id).where(
            ClassScheduleModel.organization_id == organization_id
        )
    )
    return {time_key(start_time): schedule_id for start_time, schedule_id in result.all()}


# ============================================================================
# Attendance
# ============================================================================


async def create_attendance(
    session: AsyncSession,
    *,
    organization_id: str,
    student_id: UUID,
    schedule_id: UUID,
    attended_at: datetime,
    status: str,
    source_visit_id: str | None = None,
) -> tuple[UUID, bool]:
    """Create an attendance row, or return the existing one for the same day.

    Returns:
        (attendance id, created flag)
    """
    attended_on = attended_at.date()
    stmt = (
        dialect_insert(session, AttendanceModel)
        .values(
            organization_id=organization_id,
            student_id=student_id,
            schedule_id=schedule_id,
            source_visit_id=source_visit_id,
            attended_on=attended_on,
            attended_at=attended_at,
            status=status,
        )
        .on_conflict_do_nothing()
        .returning(AttendanceModel.id)
    )
    attendance_id = (await session.execute(stmt)).scalar_one_or_none()
    if attendance_id is not None:
        return attendance_id, True

    existing_id = (
        await session.execute(
            select(AttendanceModel.id).where(
                AttendanceModel.organization_id == organization_id,
                AttendanceModel.student_id == student_id,
                AttendanceModel.schedule_id == schedule_id,
                AttendanceModel.attended_on == attended_on,
            )
        )
    ).scalar_one()
    return existing_id, False


# ============================================================================
# Revenue
# ============================================================================


async def upsert_revenue(
    session: AsyncSession,
    *,
    organization_id: str,
    source_sale_id: str,
    source_item_id: str | None,
    student_id: UUID | None,
    amount: Decimal,
    revenue_type: str,
    description: str | None,
    transaction_date: datetime,
) -> bool:
    """Create or update one revenue line.

    With an item id, the exact (sale, item) row is updated; failing that the
    sale's item-less row is claimed by setting its item id. Without an item
    id, the sale's item-less row is updated in place.

    Returns:
        True if a new row was created
    """
    fields = {
        "student_id": student_id,
        "amount": amount,
        "revenue_type": revenue_type,
        "description": description,
        "transaction_date": transaction_date,
    }
    sale_rows = select(RevenueModel).where(
        RevenueModel.organization_id == organization_id,
        RevenueModel.source_sale_id == source_sale_id,
    )
    itemless = sale_rows.where(RevenueModel.source_item_id.is_(None)).limit(1)

    existing = None
    if source_item_id:
        existing = (
            await session.execute(sale_rows.where(RevenueModel.source_item_id == source_item_id))
        ).scalar_one_or_none()
        if existing is None:
            existing = (await session.execute(itemless)).scalars().first()
            if existing is not None:
                existing.source_item_id = source_item_id
    else:
        existing = (await session.execute(itemless)).scalars().first()

    if existing is not None:
        for key, value in fields.items():
            setattr(existing, key, value)
        await session.flush()
        return False

    session.add(
        RevenueModel(
            organization_id=organization_id,
            source_sale_id=source_sale_id,
            source_item_id=source_item_id,
            **fields,
        )
    )
    await session.flush()
    return True
