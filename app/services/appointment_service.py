"""Appointment lifecycle: booking, confirmation, cancellation and time-based moves."""

from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.core.clock import Clock, SystemClock
from app.core.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidTransitionException,
    ValidationException,
)
from app.schemas.appointments import (
    Appointment,
    AppointmentStatus,
    NotificationOutcome,
)
from app.services.appointment_store import AppointmentStore, ConflictWindow

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED, AppointmentStatus.EXPIRED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED}
    ),
}


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    """Check whether ``current -> target`` is an edge of the state machine."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class AppointmentService:
    """Service for managing the appointment lifecycle."""

    # Re-read and retry this many times when a client action loses a CAS race
    MAX_CAS_RETRIES = 3

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock | None = None,
        app_settings: Settings | None = None,
    ):
        """Initialize service with database session."""
        self.db = db
        self.clock = clock or SystemClock()
        self.settings = app_settings or settings
        self.store = AppointmentStore(db, ConflictWindow.from_settings(self.settings))

    async def create_appointment(
        self,
        subject_id: UUID,
        owner_id: UUID,
        scheduled_at: datetime,
        contact_email: str,
    ) -> Appointment:
        """
        Book a new appointment in the pending state.

        The confirmation e-mail is not sent here; the row is made due
        immediately and the notification scheduler picks it up.

        Args:
            subject_id: Pet the appointment is for
            owner_id: User who owns the pet
            scheduled_at: Timezone-aware appointment time
            contact_email: Address the confirmation is sent to

        Returns:
            Created appointment

        Raises:
            ValidationException: If scheduled_at is naive, past, or beyond the horizon
            ConflictException: If the subject is already booked in the window
        """
        if scheduled_at.tzinfo is None:
            raise ValidationException("scheduled_at must include a timezone")

        now = self.clock.now()
        if scheduled_at <= now:
            raise ValidationException("scheduled_at must be in the future")

        horizon = now + timedelta(days=self.settings.booking_max_horizon_days)
        if scheduled_at > horizon:
            raise ValidationException(
                f"scheduled_at must be within {self.settings.booking_max_horizon_days} days"
            )

        appointment = await self.store.create(
            {
                "subject_id": subject_id,
                "owner_id": owner_id,
                "contact_email": contact_email,
                "scheduled_at": scheduled_at,
                "status": AppointmentStatus.PENDING.value,
                "template_id": self.settings.notification_template_id,
                "next_attempt_at": now,
                "attempt_count": 0,
                "last_outcome": NotificationOutcome.UNSENT.value,
                "created_at": now,
                "updated_at": now,
            },
            now,
        )

        logger.info(
            "appointment_created",
            appointment_id=str(appointment.id),
            subject_id=str(subject_id),
            scheduled_at=scheduled_at.isoformat(),
        )
        return appointment

    async def get_appointment(self, appointment_id: UUID) -> Appointment:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
        """
        return await self.store.get(appointment_id)

    async def list_appointments(
        self,
        owner_id: UUID,
        status: AppointmentStatus | None = None,
        limit: int = 100,
    ) -> tuple[int, list[Appointment]]:
        return await self.store.list_for_owner(owner_id, status, limit)

    async def list_failed_notifications(self, limit: int = 100) -> tuple[int, list[Appointment]]:
        return await self.store.failed_notifications(limit)

    async def cancel_appointment(self, appointment_id: UUID, authorized: bool) -> Appointment:
        """
        Cancel an appointment.

        Cancelling is idempotent: an already cancelled appointment is returned
        as-is. A confirmed appointment can only be cancelled before it starts.

        Args:
            appointment_id: Appointment ID
            authorized: Whether the caller may act on this appointment

        Returns:
            The cancelled appointment

        Raises:
            ForbiddenException: If the caller is not authorized
            NotFoundException: If appointment not found
            InvalidTransitionException: If the appointment is completed, expired,
                or confirmed and already started
            ConflictException: If the row kept changing underneath us
        """
        if not authorized:
            raise ForbiddenException("Not allowed to cancel this appointment")

        for _ in range(self.MAX_CAS_RETRIES):
            appointment = await self.store.get(appointment_id)
            if appointment.status == AppointmentStatus.CANCELLED:
                return appointment

            now = self.clock.now()
            self._ensure_transition(appointment, AppointmentStatus.CANCELLED)
            if appointment.status == AppointmentStatus.CONFIRMED and appointment.scheduled_at <= now:
                raise InvalidTransitionException(
                    appointment.status.value,
                    AppointmentStatus.CANCELLED.value,
                    "Cannot cancel a confirmed appointment that has already started",
                )

            try:
                cancelled = await self.store.update_status(
                    appointment.id,
                    appointment.status,
                    AppointmentStatus.CANCELLED,
                    now,
                    {"cancelled_at": now, "next_attempt_at": None},
                )
            except ConflictException:
                continue

            logger.info(
                "appointment_cancelled",
                appointment_id=str(appointment_id),
                previous_status=appointment.status.value,
            )
            return cancelled

        raise ConflictException("Appointment is being modified concurrently, try again")

    async def confirm_appointment(self, appointment_id: UUID, authorized: bool) -> Appointment:
        """
        Explicitly confirm a pending appointment.

        Confirming an already confirmed appointment returns it unchanged.

        Raises:
            ForbiddenException: If the caller is not authorized
            NotFoundException: If appointment not found
            InvalidTransitionException: If the appointment is in a terminal state
        """
        if not authorized:
            raise ForbiddenException("Not allowed to confirm this appointment")

        for _ in range(self.MAX_CAS_RETRIES):
            appointment = await self.store.get(appointment_id)
            if appointment.status == AppointmentStatus.CONFIRMED:
                return appointment

            self._ensure_transition(appointment, AppointmentStatus.CONFIRMED)
            try:
                confirmed = await self.store.update_status(
                    appointment.id,
                    AppointmentStatus.PENDING,
                    AppointmentStatus.CONFIRMED,
                    self.clock.now(),
                )
            except ConflictException:
                continue

            logger.info("appointment_confirmed", appointment_id=str(appointment_id), via="explicit")
            return confirmed

        raise ConflictException("Appointment is being modified concurrently, try again")

    async def mark_delivered(self, appointment: Appointment, now: datetime) -> Appointment | None:
        """
        Record a successful dispatch for a claimed appointment.

        The sent outcome and the ``pending -> confirmed`` move are written in
        one transaction. An appointment that was confirmed or cancelled in the
        meantime keeps its status and only gets the outcome.

        Args:
            appointment: The appointment as returned by the claim
            now: Tick time

        Returns:
            The updated appointment, or None if a newer claim owns the row
        """
        delivered = await self.store.record_delivery(
            appointment.id, appointment.notification.attempt_count, now
        )
        if delivered is None:
            return None

        updated, confirmed = delivered
        if confirmed:
            logger.info(
                "appointment_confirmed", appointment_id=str(appointment.id), via="notification"
            )
        return updated

    async def advance_time_based(
        self, appointment: Appointment, now: datetime
    ) -> Appointment | None:
        """
        Apply the clock-driven transition for an appointment whose time has passed.

        pending becomes expired, confirmed becomes completed. Only the
        notification scheduler calls this. A lost CAS race means another tick
        already handled the row and is reported as None.
        """
        if appointment.scheduled_at >= now:
            return None

        if appointment.status == AppointmentStatus.PENDING:
            target = AppointmentStatus.EXPIRED
        elif appointment.status == AppointmentStatus.CONFIRMED:
            target = AppointmentStatus.COMPLETED
        else:
            return None

        try:
            advanced = await self.store.update_status(
                appointment.id, appointment.status, target, now, {"next_attempt_at": None}
            )
        except ConflictException:
            return None

        logger.info(
            "appointment_time_transition",
            appointment_id=str(appointment.id),
            from_status=appointment.status.value,
            to_status=target.value,
        )
        return advanced

    @staticmethod
    def _ensure_transition(appointment: Appointment, target: AppointmentStatus) -> None:
        if not can_transition(appointment.status, target):
            raise InvalidTransitionException(appointment.status.value, target.value)
