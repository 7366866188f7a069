from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException, status

from app.core.auth import AuthUser, get_current_user


def require_permissions(*permissions: str) -> Callable[..., Awaitable[AuthUser]]:
    """Dependency factory for routes outside the CRM routers, where roles double as permissions."""

    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        missing = [permission for permission in permissions if permission not in user.roles]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {', '.join(missing)}",
            )
        return user

    return checker
