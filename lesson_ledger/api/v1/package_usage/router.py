"""Privileged functions router: package usage reconciliation."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from lesson_ledger.auth.dependencies import get_current_user, require_service_key
from lesson_ledger.auth.schemas import CurrentUser
from lesson_ledger.core.exceptions import ServiceError
from lesson_ledger.db.session import get_db

from . import service
from .schemas import PackageUsageRequest, PackageUsageResponse

router = APIRouter(prefix="/api/v1/functions", tags=["functions"])


@router.post(
    "/apply-package-usage",
    response_model=PackageUsageResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_service_key)],
)
async def apply_package_usage(
    payload: PackageUsageRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Consume or restore a package credit for an attendance mark.
    Runs with service privileges: any authenticated user of the lesson's school may trigger it.
    """
    try:
        return await service.apply_package_usage(db, current_user.school_id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
