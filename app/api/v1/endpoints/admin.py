"""Operator endpoints for notification follow-up."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from app.core.security import APPOINTMENTS_MANAGE
from app.dependencies import AppointmentServiceDep, require_permission
from app.schemas.appointments import FailedNotificationListResponse
from app.schemas.auth import Principal

router = APIRouter(prefix="/admin", tags=["Admin"])

RequireManager = Annotated[Principal, Depends(require_permission(APPOINTMENTS_MANAGE))]


@router.get(
    "/notifications/failed",
    response_model=FailedNotificationListResponse,
    summary="List appointments whose notification gave up",
)
async def list_failed_notifications(
    service: AppointmentServiceDep,
    manager: RequireManager,
    limit: int = Query(100, ge=1, le=500, description="Maximum rows to return"),
) -> FailedNotificationListResponse:
    """
    Appointments pinned to a failed notification outcome.

    These are never retried automatically; operators contact the owner or fix
    the address and rebook.
    """
    total, items = await service.list_failed_notifications(limit)
    return FailedNotificationListResponse(total=total, items=items)
