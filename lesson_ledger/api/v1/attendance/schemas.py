"""Attendance schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class AttendanceUpsert(BaseModel):
    attended: bool
    comment: Optional[str] = Field(None, max_length=2000)


class AttendanceRecordResponse(BaseModel):
    id: UUID
    lesson_id: UUID
    student_id: UUID
    attended: bool
    comment: Optional[str] = None
    package_purchase_id: Optional[UUID] = None
    revenue_amount: Optional[Decimal] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
