"""
StockPulse API Dependencies

Dependency injection for the inventory core, auth, and role checks.
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.config import get_settings
from core.runtime import InventoryCore
from core.security import actor_from_claims, decode_access_token, role_from_claims

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

OPERATOR_ROLES = ("admin", "manager", "warehouse_staff")


def get_core(request: Request) -> InventoryCore:
    """The process-scoped core built in the application lifespan."""
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inventory core not initialised",
        )
    return core


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "email": "dev@stockpulse.local",
            "role": "admin",
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


def require_roles(*roles: str):
    """Dependency factory: the caller's ``role`` claim must be one of ``roles``."""

    async def checker(user: dict = Depends(get_current_user)) -> dict:
        if role_from_claims(user) not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return checker


def get_actor(user: dict = Depends(get_current_user)) -> str:
    return actor_from_claims(user)


require_operator = require_roles(*OPERATOR_ROLES)
