from fastapi import Depends, HTTPException, status

from lesson_ledger.auth.dependencies import get_current_user
from lesson_ledger.auth.schemas import CurrentUser
from lesson_ledger.core.enums import UserRole


STAFF_ROLES = (UserRole.ADMIN.value, UserRole.MANAGER.value)


def is_staff(user_role: str) -> bool:
    return user_role in STAFF_ROLES


def require_roles(*roles: str):
    """
    Dependency factory to restrict an endpoint to the given roles.

    Example:
        Depends(require_roles("ADMIN", "MANAGER"))
    """

    async def _checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return current_user

    return _checker
