"""FastAPI dependencies."""

from collections.abc import Awaitable, Callable
from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, SystemClock
from app.core.security import decode_access_token
from app.database import get_db
from app.schemas.auth import Principal
from app.services.appointment_service import AppointmentService

# Security
security = HTTPBearer()

_system_clock = SystemClock()


def _credentials_error(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Principal:
    """
    Build the caller's principal from a bearer token.

    Args:
        credentials: Bearer token credentials

    Returns:
        Principal with the user ID from ``sub`` and the ``permissions`` claim

    Raises:
        HTTPException: If token is invalid or expired
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _credentials_error()

    subject = payload.get("sub")
    if subject is None or not isinstance(subject, str):
        raise _credentials_error()

    try:
        user_id = UUID(subject)
    except ValueError:
        raise _credentials_error("Invalid user ID format")

    permissions = payload.get("permissions") or []
    if not isinstance(permissions, list):
        raise _credentials_error("Invalid permissions claim")

    return Principal(id=user_id, permissions=frozenset(str(p) for p in permissions))


def get_clock() -> Clock:
    """Clock used by request handlers; overridden in tests."""
    return _system_clock


async def get_appointment_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> AppointmentService:
    return AppointmentService(db, clock=clock)


def require_permission(permission: str) -> Callable[..., Awaitable[Principal]]:
    """Dependency factory rejecting principals that lack ``permission``."""

    async def checker(
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        if not principal.has(permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission '{permission}' required",
            )
        return principal

    return checker


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
AppointmentServiceDep = Annotated[AppointmentService, Depends(get_appointment_service)]
