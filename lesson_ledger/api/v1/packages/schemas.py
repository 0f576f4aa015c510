"""Package purchase schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from lesson_ledger.core.enums import PackageStatus


class PackageCreate(BaseModel):
    student_id: UUID
    lessons_total: int = Field(1, ge=1, description="1 for a single-lesson purchase")
    total_amount: Decimal = Field(..., ge=0)
    price_per_lesson: Optional[Decimal] = Field(None, ge=0)
    purchase_date: Optional[date] = None
    expires_at: Optional[date] = None
    teacher_id: Optional[UUID] = None


class PackageUpdate(BaseModel):
    """Manual admin edit. Omitted fields are left unchanged."""

    lessons_total: Optional[int] = Field(None, ge=1)
    lessons_used: Optional[int] = Field(None, ge=0)
    total_amount: Optional[Decimal] = Field(None, ge=0)
    price_per_lesson: Optional[Decimal] = Field(None, ge=0)
    expires_at: Optional[date] = None
    status: Optional[PackageStatus] = None
    teacher_id: Optional[UUID] = None


class PackageResponse(BaseModel):
    id: UUID
    school_id: UUID
    student_id: UUID
    teacher_id: Optional[UUID] = None
    lessons_total: int
    lessons_used: int
    lessons_remaining: int
    total_amount: Decimal
    price_per_lesson: Optional[Decimal] = None
    status: PackageStatus
    purchase_date: date
    expires_at: Optional[date] = None
    created_by: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StudentPackageSummary(BaseModel):
    """Totals over the student's active packages, plus every package of the student."""

    student_id: UUID
    remaining_lessons: int
    used_lessons: int
    active_packages_count: int
    packages: List[PackageResponse]


class ExpirePackagesResponse(BaseModel):
    expired: int
