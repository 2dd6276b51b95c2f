from fastapi import Depends, HTTPException, status

from app.auth.dependencies import get_current_user
from app.auth.schemas import CurrentUser

# Roles that hold every permission without it being listed in the token.
UNRESTRICTED_ROLES = ("SUPER_ADMIN", "PLATFORM_ADMIN")


def has_permission(user: CurrentUser, module: str, action: str) -> bool:
    if user.role in UNRESTRICTED_ROLES:
        return True
    return bool((user.permissions or {}).get(module, {}).get(action, False))


def check_permission(module: str, action: str):
    """
    Dependency factory to enforce a specific permission.

    Example:
        Depends(check_permission("students", "update"))
    """

    async def _checker(current_user: CurrentUser = Depends(get_current_user)) -> None:
        if not has_permission(current_user, module, action):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )

    return _checker
