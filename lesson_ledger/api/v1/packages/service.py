"""Package store: purchases, manual edits, deletion and expiry."""

import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lesson_ledger.api.v1.attendance.service import get_student_for_school
from lesson_ledger.core.enums import PackageStatus
from lesson_ledger.core.exceptions import ServiceError
from lesson_ledger.core.models import LessonAttendance, PackagePurchase

from .schemas import (
    ExpirePackagesResponse,
    PackageCreate,
    PackageResponse,
    PackageUpdate,
    StudentPackageSummary,
)

logger = logging.getLogger(__name__)


async def _get_package(db: AsyncSession, school_id: UUID, package_id: UUID) -> PackagePurchase:
    result = await db.execute(
        select(PackagePurchase).where(
            PackagePurchase.id == package_id,
            PackagePurchase.school_id == school_id,
        )
    )
    pkg = result.scalar_one_or_none()
    if not pkg:
        raise ServiceError("Package not found", status.HTTP_404_NOT_FOUND)
    return pkg


async def create_package(
    db: AsyncSession,
    school_id: UUID,
    payload: PackageCreate,
    created_by: Optional[UUID],
) -> PackageResponse:
    await get_student_for_school(db, school_id, payload.student_id)
    price = payload.price_per_lesson
    if price is None:
        price = (payload.total_amount / payload.lessons_total).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    pkg = PackagePurchase(
        school_id=school_id,
        student_id=payload.student_id,
        teacher_id=payload.teacher_id,
        lessons_total=payload.lessons_total,
        lessons_used=0,
        total_amount=payload.total_amount,
        price_per_lesson=price,
        status=PackageStatus.active.value,
        purchase_date=payload.purchase_date or date.today(),
        expires_at=payload.expires_at,
        created_by=created_by,
    )
    db.add(pkg)
    await db.commit()
    await db.refresh(pkg)
    logger.info("package created id=%s student=%s lessons=%s", pkg.id, pkg.student_id, pkg.lessons_total)
    return PackageResponse.model_validate(pkg)


async def list_packages(
    db: AsyncSession,
    school_id: UUID,
    student_id: Optional[UUID] = None,
    status_filter: Optional[PackageStatus] = None,
) -> List[PackageResponse]:
    stmt = select(PackagePurchase).where(PackagePurchase.school_id == school_id)
    if student_id is not None:
        stmt = stmt.where(PackagePurchase.student_id == student_id)
    if status_filter is not None:
        stmt = stmt.where(PackagePurchase.status == status_filter.value)
    stmt = stmt.order_by(PackagePurchase.purchase_date.desc(), PackagePurchase.created_at.desc())
    result = await db.execute(stmt)
    return [PackageResponse.model_validate(p) for p in result.scalars().all()]


async def get_student_package_summary(
    db: AsyncSession,
    school_id: UUID,
    student_id: UUID,
) -> StudentPackageSummary:
    await get_student_for_school(db, school_id, student_id)
    packages = await list_packages(db, school_id, student_id=student_id)
    active = [p for p in packages if p.status == PackageStatus.active]
    return StudentPackageSummary(
        student_id=student_id,
        remaining_lessons=sum(p.lessons_remaining for p in active),
        used_lessons=sum(p.lessons_used for p in active),
        active_packages_count=len(active),
        packages=packages,
    )


async def update_package(
    db: AsyncSession,
    school_id: UUID,
    package_id: UUID,
    payload: PackageUpdate,
) -> PackageResponse:
    pkg = await _get_package(db, school_id, package_id)
    data = payload.model_dump(exclude_unset=True)

    lessons_total = data.get("lessons_total") or pkg.lessons_total
    lessons_used = data["lessons_used"] if data.get("lessons_used") is not None else pkg.lessons_used
    if lessons_used > lessons_total:
        raise ServiceError("lessons_used cannot exceed lessons_total", status.HTTP_400_BAD_REQUEST)

    for field in ("total_amount", "price_per_lesson", "expires_at", "teacher_id"):
        if field in data:
            setattr(pkg, field, data[field])
    pkg.lessons_total = lessons_total
    pkg.lessons_used = lessons_used

    if data.get("status") is not None:
        pkg.status = PackageStatus(data["status"]).value
    elif lessons_used >= lessons_total:
        pkg.status = PackageStatus.exhausted.value
    elif pkg.status == PackageStatus.exhausted.value:
        pkg.status = PackageStatus.active.value
    pkg.updated_at = datetime.utcnow()

    await db.commit()
    await db.refresh(pkg)
    logger.info(
        "package edited id=%s lessons_used=%s/%s status=%s",
        pkg.id, pkg.lessons_used, pkg.lessons_total, pkg.status,
    )
    return PackageResponse.model_validate(pkg)


async def delete_package(db: AsyncSession, school_id: UUID, package_id: UUID) -> int:
    """Delete a package. Attendance rows that consumed it are detached, not deleted. Returns detached count."""
    pkg = await _get_package(db, school_id, package_id)
    result = await db.execute(
        update(LessonAttendance)
        .where(LessonAttendance.package_purchase_id == pkg.id)
        .values(package_purchase_id=None, revenue_amount=None, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    detached = result.rowcount or 0
    await db.execute(
        delete(PackagePurchase)
        .where(PackagePurchase.id == pkg.id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("package deleted id=%s detached_attendance=%s", package_id, detached)
    return detached


async def expire_packages(
    db: AsyncSession,
    school_id: UUID,
    today: Optional[date] = None,
) -> ExpirePackagesResponse:
    """Mark packages past their expiry date as expired."""
    today = today or date.today()
    result = await db.execute(
        update(PackagePurchase)
        .where(
            PackagePurchase.school_id == school_id,
            PackagePurchase.status.in_([PackageStatus.active.value, PackageStatus.exhausted.value]),
            PackagePurchase.expires_at.is_not(None),
            PackagePurchase.expires_at < today,
        )
        .values(status=PackageStatus.expired.value, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    count = result.rowcount or 0
    if count:
        logger.info("expired %s packages for school %s", count, school_id)
    return ExpirePackagesResponse(expired=count)
