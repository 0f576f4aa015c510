"""Packages router: purchases, summary, manual edit, delete, expiry sweep."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from lesson_ledger.auth.rbac import require_roles
from lesson_ledger.auth.schemas import CurrentUser
from lesson_ledger.core.enums import PackageStatus
from lesson_ledger.core.exceptions import ServiceError
from lesson_ledger.db.session import get_db

from . import service
from .schemas import (
    ExpirePackagesResponse,
    PackageCreate,
    PackageResponse,
    PackageUpdate,
    StudentPackageSummary,
)

router = APIRouter(prefix="/api/v1", tags=["packages"])

_staff = require_roles("ADMIN", "MANAGER")


@router.post(
    "/packages",
    response_model=PackageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_package(
    payload: PackageCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(_staff),
) -> PackageResponse:
    try:
        return await service.create_package(db, current_user.school_id, payload, current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/packages", response_model=List[PackageResponse])
async def list_packages(
    student_id: Optional[UUID] = Query(None),
    package_status: Optional[PackageStatus] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(_staff),
) -> List[PackageResponse]:
    return await service.list_packages(db, current_user.school_id, student_id, package_status)


@router.post("/packages/expire", response_model=ExpirePackagesResponse)
async def expire_packages(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(_staff),
) -> ExpirePackagesResponse:
    return await service.expire_packages(db, current_user.school_id)


@router.patch("/packages/{package_id}", response_model=PackageResponse)
async def update_package(
    package_id: UUID,
    payload: PackageUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(_staff),
) -> PackageResponse:
    try:
        return await service.update_package(db, current_user.school_id, package_id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete("/packages/{package_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_package(
    package_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(_staff),
) -> Response:
    try:
        await service.delete_package(db, current_user.school_id, package_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/students/{student_id}/package-summary", response_model=StudentPackageSummary)
async def get_student_package_summary(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(_staff),
) -> StudentPackageSummary:
    try:
        return await service.get_student_package_summary(db, current_user.school_id, student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
