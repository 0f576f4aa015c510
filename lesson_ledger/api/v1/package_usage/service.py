"""
Usage reconciler: keeps package credits consistent with attendance marks.

Every decision is derived from the stored attendance row, never from caller state,
so replaying an event is a no-op. Credit and attendance writes of one event commit
together; guarded updates detect concurrent writers and the event is re-run from
fresh state.
"""

import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lesson_ledger.api.v1.attendance.service import get_lesson_for_school, get_student_for_school
from lesson_ledger.core.config import settings
from lesson_ledger.core.enums import PackageStatus
from lesson_ledger.core.exceptions import ServiceError, StoreConflictError
from lesson_ledger.core.models import LessonAttendance, PackagePurchase

from .schemas import PackageUsageRequest, PackageUsageResponse

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def revenue_per_lesson(pkg: PackagePurchase) -> Decimal:
    if pkg.price_per_lesson is not None:
        return Decimal(pkg.price_per_lesson)
    if not pkg.lessons_total:
        return Decimal("0")
    return (Decimal(pkg.total_amount or 0) / pkg.lessons_total).quantize(_CENT, rounding=ROUND_HALF_UP)


async def _load_attendance(db: AsyncSession, payload: PackageUsageRequest) -> Optional[LessonAttendance]:
    if payload.attendance_record_id is not None:
        result = await db.execute(
            select(LessonAttendance)
            .where(LessonAttendance.id == payload.attendance_record_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise ServiceError("Attendance record not found", status.HTTP_404_NOT_FOUND)
        if record.lesson_id != payload.lesson_id or record.student_id != payload.student_id:
            raise ServiceError(
                "Attendance record does not match lesson and student",
                status.HTTP_400_BAD_REQUEST,
            )
        return record
    result = await db.execute(
        select(LessonAttendance)
        .where(
            LessonAttendance.lesson_id == payload.lesson_id,
            LessonAttendance.student_id == payload.student_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def select_package_for_usage(
    db: AsyncSession,
    school_id: UUID,
    student_id: UUID,
    today: Optional[date] = None,
) -> Optional[PackagePurchase]:
    """Oldest active package with credits left. Ties on purchase_date fall back to created_at, then id."""
    today = today or date.today()
    result = await db.execute(
        select(PackagePurchase)
        .where(
            PackagePurchase.school_id == school_id,
            PackagePurchase.student_id == student_id,
            PackagePurchase.status == PackageStatus.active.value,
            PackagePurchase.lessons_used < PackagePurchase.lessons_total,
            or_(PackagePurchase.expires_at.is_(None), PackagePurchase.expires_at >= today),
        )
        .order_by(
            PackagePurchase.purchase_date.asc(),
            PackagePurchase.created_at.asc(),
            PackagePurchase.id.asc(),
        )
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _swap_package_usage(db: AsyncSession, pkg: PackagePurchase, new_used: int, new_status: str) -> None:
    """Compare-and-swap on lessons_used: fails if anyone moved the counter since we read it."""
    result = await db.execute(
        update(PackagePurchase)
        .where(
            PackagePurchase.id == pkg.id,
            PackagePurchase.lessons_used == pkg.lessons_used,
        )
        .values(lessons_used=new_used, status=new_status, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StoreConflictError("Package was modified concurrently")


async def _swap_attendance_link(
    db: AsyncSession,
    record: LessonAttendance,
    expected_package_id: Optional[UUID],
    attended: bool,
    package_id: Optional[UUID],
    revenue_amount: Optional[Decimal],
) -> None:
    if expected_package_id is None:
        link_guard = LessonAttendance.package_purchase_id.is_(None)
    else:
        link_guard = LessonAttendance.package_purchase_id == expected_package_id
    result = await db.execute(
        update(LessonAttendance)
        .where(LessonAttendance.id == record.id, link_guard)
        .values(
            attended=attended,
            package_purchase_id=package_id,
            revenue_amount=revenue_amount,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StoreConflictError("Attendance record was modified concurrently")


async def _set_attended(db: AsyncSession, record: LessonAttendance, attended: bool) -> None:
    if record.attended == attended:
        return
    await db.execute(
        update(LessonAttendance)
        .where(LessonAttendance.id == record.id)
        .values(attended=attended, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )


async def _consume(db: AsyncSession, school_id: UUID, payload: PackageUsageRequest) -> PackageUsageResponse:
    record = await _load_attendance(db, payload)
    if record is None:
        record = LessonAttendance(
            lesson_id=payload.lesson_id,
            student_id=payload.student_id,
            attended=True,
        )
        db.add(record)
        await db.flush()
    else:
        await _set_attended(db, record, True)

    if record.package_purchase_id is not None:
        logger.info(
            "package usage: attendance %s already linked to package %s",
            record.id, record.package_purchase_id,
        )
        return PackageUsageResponse(
            attendance_id=record.id,
            package_purchase_id=record.package_purchase_id,
        )

    pkg = await select_package_for_usage(db, school_id, payload.student_id)
    if pkg is None:
        logger.warning(
            "package usage: missing package student=%s school=%s lesson=%s",
            payload.student_id, school_id, payload.lesson_id,
        )
        return PackageUsageResponse(missing_package=True, attendance_id=record.id)

    new_used = pkg.lessons_used + 1
    new_status = PackageStatus.exhausted.value if new_used >= pkg.lessons_total else pkg.status
    await _swap_package_usage(db, pkg, new_used, new_status)
    await _swap_attendance_link(db, record, None, True, pkg.id, revenue_per_lesson(pkg))
    logger.info(
        "package usage: consumed credit package=%s attendance=%s lessons_used=%s/%s",
        pkg.id, record.id, new_used, pkg.lessons_total,
    )
    return PackageUsageResponse(attendance_id=record.id, package_purchase_id=pkg.id)


async def _restore(db: AsyncSession, payload: PackageUsageRequest) -> PackageUsageResponse:
    record = await _load_attendance(db, payload)
    if record is None:
        return PackageUsageResponse()

    linked_id = record.package_purchase_id
    if linked_id is None:
        await _set_attended(db, record, False)
        return PackageUsageResponse(attendance_id=record.id)

    pkg = (
        await db.execute(
            select(PackagePurchase)
            .where(PackagePurchase.id == linked_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if pkg is not None:
        new_used = max(0, pkg.lessons_used - 1)
        new_status = pkg.status
        if pkg.status == PackageStatus.exhausted.value and new_used < pkg.lessons_total:
            new_status = PackageStatus.active.value
        await _swap_package_usage(db, pkg, new_used, new_status)
        logger.info(
            "package usage: restored credit package=%s attendance=%s lessons_used=%s/%s",
            pkg.id, record.id, new_used, pkg.lessons_total,
        )
    else:
        logger.warning("package usage: linked package %s no longer exists", linked_id)
    await _swap_attendance_link(db, record, linked_id, False, None, None)
    return PackageUsageResponse(attendance_id=record.id)


async def apply_package_usage(
    db: AsyncSession,
    school_id: UUID,
    payload: PackageUsageRequest,
) -> PackageUsageResponse:
    """
    Consume (attended=True) or restore (attended=False) one credit for the
    attendance row of (lesson, student). Idempotent: a row already linked to a
    package consumes nothing, an unlinked row restores nothing.
    A mark without an eligible package still commits and reports missing_package.
    """
    await get_lesson_for_school(db, school_id, payload.lesson_id)
    await get_student_for_school(db, school_id, payload.student_id)

    attempts = settings.reconcile_conflict_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            if payload.attended:
                response = await _consume(db, school_id, payload)
            else:
                response = await _restore(db, payload)
            await db.commit()
            return response
        except (StoreConflictError, IntegrityError) as e:
            await db.rollback()
            if attempt >= attempts:
                logger.error(
                    "package usage: conflict persisted after %s attempts lesson=%s student=%s",
                    attempts, payload.lesson_id, payload.student_id,
                )
                raise StoreConflictError() from e
            logger.info(
                "package usage: conflict on attempt %s, re-reading lesson=%s student=%s",
                attempt, payload.lesson_id, payload.student_id,
            )
        except ServiceError:
            await db.rollback()
            raise
        except SQLAlchemyError as e:
            await db.rollback()
            logger.exception("package usage: store failure lesson=%s student=%s", payload.lesson_id, payload.student_id)
            raise ServiceError("Package store unavailable", status.HTTP_503_SERVICE_UNAVAILABLE) from e
    raise StoreConflictError()
