"""Package usage (reconciler) schemas."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class PackageUsageRequest(BaseModel):
    lesson_id: UUID
    student_id: UUID
    attended: bool
    attendance_record_id: Optional[UUID] = None


class PackageUsageResponse(BaseModel):
    """ok is true whenever the attendance side committed; missing_package flags a mark with no credit applied."""

    ok: bool = True
    missing_package: Optional[bool] = None
    attendance_id: Optional[UUID] = None
    package_purchase_id: Optional[UUID] = None
