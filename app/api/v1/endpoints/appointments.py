"""Appointment endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query, status

from app.core.exceptions import ForbiddenException
from app.dependencies import AppointmentServiceDep, CurrentPrincipal
from app.schemas.appointments import (
    Appointment,
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentStatus,
)

router = APIRouter()


@router.post(
    "/",
    response_model=Appointment,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Book new appointment",
)
async def create_appointment(
    data: AppointmentCreate,
    principal: CurrentPrincipal,
    service: AppointmentServiceDep,
) -> Appointment:
    """
    Book an appointment for a pet.

    The owner defaults to the caller. Booking on behalf of another owner
    requires the ``appointments:manage`` permission.

    Args:
        data: Booking request
        principal: Authenticated caller
        service: Appointment service

    Returns:
        Created appointment in the pending state
    """
    owner_id = data.owner_id or principal.id
    if not principal.may_act_for(owner_id):
        raise ForbiddenException("Not allowed to book for another owner")

    return await service.create_appointment(
        subject_id=data.subject_id,
        owner_id=owner_id,
        scheduled_at=data.scheduled_at,
        contact_email=data.contact_email,
    )


@router.get(
    "/",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List own appointments",
)
async def list_appointments(
    principal: CurrentPrincipal,
    service: AppointmentServiceDep,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
) -> AppointmentListResponse:
    """List the caller's appointments, newest first."""
    total, items = await service.list_appointments(principal.id, status_filter, limit)
    return AppointmentListResponse(total=total, items=items)


@router.get(
    "/{appointment_id}",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    principal: CurrentPrincipal,
    service: AppointmentServiceDep,
) -> Appointment:
    """
    Get a specific appointment, including its notification state.

    Raises:
        NotFoundException: If appointment not found
        ForbiddenException: If the caller may not see it
    """
    appointment = await service.get_appointment(appointment_id)
    if not principal.may_act_for(appointment.owner_id):
        raise ForbiddenException("Access denied to this appointment")
    return appointment


@router.post(
    "/{appointment_id}/cancel",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    principal: CurrentPrincipal,
    service: AppointmentServiceDep,
) -> Appointment:
    """
    Cancel an appointment. Repeating the call is harmless.

    Raises:
        NotFoundException: If appointment not found
        ForbiddenException: If the caller may not act on it
        InvalidTransitionException: If it already completed, expired or started
    """
    appointment = await service.get_appointment(appointment_id)
    return await service.cancel_appointment(
        appointment_id, authorized=principal.may_act_for(appointment.owner_id)
    )


@router.post(
    "/{appointment_id}/confirm",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Confirm appointment",
)
async def confirm_appointment(
    appointment_id: UUID,
    principal: CurrentPrincipal,
    service: AppointmentServiceDep,
) -> Appointment:
    """Explicitly acknowledge a pending appointment."""
    appointment = await service.get_appointment(appointment_id)
    return await service.confirm_appointment(
        appointment_id, authorized=principal.may_act_for(appointment.owner_id)
    )
