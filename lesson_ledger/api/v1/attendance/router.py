"""Attendance API router."""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from lesson_ledger.auth.rbac import require_roles
from lesson_ledger.auth.schemas import CurrentUser
from lesson_ledger.core.exceptions import ServiceError
from lesson_ledger.db.session import get_db

from . import service
from .schemas import AttendanceRecordResponse, AttendanceUpsert

router = APIRouter(prefix="/api/v1/lessons", tags=["attendance"])

_any_staff = require_roles("ADMIN", "MANAGER", "TEACHER")


@router.get(
    "/{lesson_id}/attendance",
    response_model=List[AttendanceRecordResponse],
)
async def list_lesson_attendance(
    lesson_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(_any_staff),
):
    """All attendance rows of a lesson, for batch display."""
    try:
        return await service.list_lesson_attendance(db, current_user, lesson_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put(
    "/{lesson_id}/attendance/{student_id}",
    response_model=AttendanceRecordResponse,
)
async def save_attendance(
    lesson_id: UUID,
    student_id: UUID,
    payload: AttendanceUpsert,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(_any_staff),
):
    """Create the attendance row on first mark, update it afterwards. Admin/Manager: any lesson; Teacher: own lessons."""
    try:
        return await service.save_attendance(db, current_user, lesson_id, student_id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
