"""Attendance store: one row per (lesson, student), created on first mark and updated in place."""

import logging
from datetime import datetime
from typing import List
from uuid import UUID

from fastapi import status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lesson_ledger.auth.rbac import is_staff
from lesson_ledger.auth.schemas import CurrentUser
from lesson_ledger.core.enums import UserRole
from lesson_ledger.core.exceptions import ServiceError
from lesson_ledger.core.models import Lesson, LessonAttendance, Student

from .schemas import AttendanceRecordResponse, AttendanceUpsert

logger = logging.getLogger(__name__)


async def get_lesson_for_school(db: AsyncSession, school_id: UUID, lesson_id: UUID) -> Lesson:
    lesson = await db.get(Lesson, lesson_id)
    if not lesson:
        raise ServiceError("Lesson not found", status.HTTP_404_NOT_FOUND)
    if lesson.school_id != school_id:
        raise ServiceError("Lesson belongs to another school", status.HTTP_403_FORBIDDEN)
    return lesson


async def get_student_for_school(db: AsyncSession, school_id: UUID, student_id: UUID) -> Student:
    result = await db.execute(
        select(Student).where(Student.id == student_id, Student.school_id == school_id)
    )
    student = result.scalar_one_or_none()
    if not student:
        raise ServiceError("Student not found", status.HTTP_404_NOT_FOUND)
    return student


def _ensure_can_mark(user: CurrentUser, lesson: Lesson) -> None:
    """Staff: any lesson of the school; Teacher: own lessons only."""
    if is_staff(user.role):
        return
    if user.role == UserRole.TEACHER.value and lesson.teacher_id == user.id:
        return
    raise ServiceError(
        "You can only record attendance for your own lessons",
        status.HTTP_403_FORBIDDEN,
    )


async def _find_record(db: AsyncSession, lesson_id: UUID, student_id: UUID):
    result = await db.execute(
        select(LessonAttendance)
        .where(
            LessonAttendance.lesson_id == lesson_id,
            LessonAttendance.student_id == student_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _apply(record: LessonAttendance, payload: AttendanceUpsert) -> None:
    record.attended = payload.attended
    if "comment" in payload.model_fields_set:
        record.comment = (payload.comment or "").strip() or None
    record.updated_at = datetime.utcnow()


async def save_attendance(
    db: AsyncSession,
    user: CurrentUser,
    lesson_id: UUID,
    student_id: UUID,
    payload: AttendanceUpsert,
) -> AttendanceRecordResponse:
    """Upsert keyed on (lesson, student). Package linkage is left to the usage reconciler."""
    lesson = await get_lesson_for_school(db, user.school_id, lesson_id)
    _ensure_can_mark(user, lesson)
    await get_student_for_school(db, user.school_id, student_id)

    record = await _find_record(db, lesson_id, student_id)
    if record is None:
        record = LessonAttendance(lesson_id=lesson_id, student_id=student_id)
        _apply(record, payload)
        db.add(record)
        try:
            await db.commit()
        except IntegrityError:
            # Another request created the row first; update that one instead.
            await db.rollback()
            record = await _find_record(db, lesson_id, student_id)
            if record is None:
                raise ServiceError("Could not save attendance", status.HTTP_409_CONFLICT)
            _apply(record, payload)
            await db.commit()
    else:
        _apply(record, payload)
        await db.commit()
    await db.refresh(record)
    logger.info(
        "attendance saved lesson=%s student=%s attended=%s record=%s",
        lesson_id, student_id, record.attended, record.id,
    )
    return AttendanceRecordResponse.model_validate(record)


async def list_lesson_attendance(
    db: AsyncSession,
    user: CurrentUser,
    lesson_id: UUID,
) -> List[AttendanceRecordResponse]:
    await get_lesson_for_school(db, user.school_id, lesson_id)
    result = await db.execute(
        select(LessonAttendance)
        .where(LessonAttendance.lesson_id == lesson_id)
        .order_by(LessonAttendance.created_at)
    )
    return [AttendanceRecordResponse.model_validate(r) for r in result.scalars().all()]
