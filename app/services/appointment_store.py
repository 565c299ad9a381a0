"""Persistent appointment store with compare-and-swap primitives.

The store is the only shared mutable state between request handlers and the
notification scheduler. Every write is conditional on the state the caller last
observed, so two writers racing on the same row produce exactly one winner; the
loser sees a ``ConflictException`` (status changes) or ``None`` (notification claims).
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.core.exceptions import ConflictException, NotFoundException, ValidationException
from app.models.appointments import appointments
from app.schemas.appointments import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    NotificationOutcome,
)

logger = structlog.get_logger(__name__)

_ACTIVE = [status.value for status in ACTIVE_STATUSES]


class ConflictWindow:
    """Decides which existing bookings collide with a requested time.

    ``slot`` mode splits the day into fixed slots of ``minutes`` length (aligned
    to the UTC epoch) and allows one live booking per subject per slot.
    ``overlap`` mode rejects any live booking strictly closer than ``minutes``.
    """

    def __init__(self, mode: str = "slot", minutes: int = 30):
        if mode not in ("slot", "overlap"):
            raise ValueError(f"unknown conflict mode: {mode}")
        if minutes < 1:
            raise ValueError("conflict window must be at least one minute")
        self.mode = mode
        self.length = timedelta(minutes=minutes)

    @classmethod
    def from_settings(cls, app_settings: Settings) -> "ConflictWindow":
        return cls(app_settings.booking_conflict_mode, app_settings.booking_slot_minutes)

    def slot_start(self, scheduled_at: datetime) -> datetime:
        size = int(self.length.total_seconds())
        epoch_seconds = int(scheduled_at.timestamp()) // size * size
        return datetime.fromtimestamp(epoch_seconds, UTC)

    def slot_key(self, scheduled_at: datetime) -> datetime | None:
        """Value for the unique slot index, or None when only the range check applies."""
        return self.slot_start(scheduled_at) if self.mode == "slot" else None

    def bounds(self, scheduled_at: datetime) -> tuple[datetime, datetime]:
        """Half-open ``[lower, upper)`` range of conflicting ``scheduled_at`` values."""
        if self.mode == "slot":
            start = self.slot_start(scheduled_at)
            return start, start + self.length
        # exclusive lower bound
        return scheduled_at - self.length + timedelta(microseconds=1), scheduled_at + self.length


class AppointmentStore:
    """Data access for the appointments table."""

    def __init__(self, db: AsyncSession, conflict_window: ConflictWindow | None = None):
        """Initialize store with database session."""
        self.db = db
        self.conflict_window = conflict_window or ConflictWindow()

    async def create(self, values: dict[str, Any], now: datetime) -> Appointment:
        """
        Insert a new appointment.

        Args:
            values: Column values; must include subject_id and scheduled_at
            now: Current time according to the caller's clock

        Returns:
            The stored appointment

        Raises:
            ValidationException: If scheduled_at is not strictly after now
            ConflictException: If a live booking already occupies the window
        """
        scheduled_at: datetime = values["scheduled_at"]
        if scheduled_at <= now:
            raise ValidationException("scheduled_at must be in the future")

        lower, upper = self.conflict_window.bounds(scheduled_at)
        clash_stmt = (
            select(appointments.c.id)
            .where(
                and_(
                    appointments.c.subject_id == values["subject_id"],
                    appointments.c.status.in_(_ACTIVE),
                    appointments.c.scheduled_at >= lower,
                    appointments.c.scheduled_at < upper,
                )
            )
            .limit(1)
        )
        clash = (await self.db.execute(clash_stmt)).first()
        if clash is not None:
            await self.db.rollback()
            raise ConflictException("Subject already has an appointment in this time slot")

        stmt = (
            insert(appointments)
            .values(**values, slot_start=self.conflict_window.slot_key(scheduled_at))
            .returning(appointments)
        )
        try:
            result = await self.db.execute(stmt)
            row = result.fetchone()
            await self.db.commit()
        except IntegrityError:
            # a concurrent booking won the unique slot index
            await self.db.rollback()
            raise ConflictException("Subject already has an appointment in this time slot")

        return Appointment.from_row(row)

    async def get(self, appointment_id: UUID) -> Appointment:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
        """
        result = await self.db.execute(
            select(appointments).where(appointments.c.id == appointment_id)
        )
        row = result.fetchone()
        if not row:
            raise NotFoundException("Appointment not found")
        return Appointment.from_row(row)

    async def update_status(
        self,
        appointment_id: UUID,
        expected_status: AppointmentStatus,
        new_status: AppointmentStatus,
        now: datetime,
        extra_values: dict[str, Any] | None = None,
    ) -> Appointment:
        """
        Compare-and-swap the status of one appointment.

        Args:
            appointment_id: Appointment ID
            expected_status: Status the caller last observed
            new_status: Status to write
            now: Timestamp recorded as updated_at
            extra_values: Additional columns written in the same statement

        Returns:
            The updated appointment

        Raises:
            NotFoundException: If appointment not found
            ConflictException: If the stored status no longer matches expected_status
        """
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status == expected_status.value,
                )
            )
            .values(status=new_status.value, updated_at=now, **(extra_values or {}))
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()

        if row is None:
            await self.db.rollback()
            current = await self.get(appointment_id)
            logger.info(
                "appointment_status_cas_lost",
                appointment_id=str(appointment_id),
                expected=expected_status.value,
                actual=current.status.value,
                target=new_status.value,
            )
            raise ConflictException(
                f"Appointment status changed to '{current.status.value}' concurrently"
            )

        await self.db.commit()
        return Appointment.from_row(row)

    async def due_for_notification(self, now: datetime, limit: int) -> list[Appointment]:
        """
        Appointments whose notification should be attempted now.

        Ordered by next_attempt_at ascending and bounded by limit. Callers page
        through by re-invoking after recording outcomes, since each outcome
        either clears next_attempt_at or pushes it into the future.
        """
        stmt = (
            select(appointments)
            .where(
                and_(
                    appointments.c.next_attempt_at.is_not(None),
                    appointments.c.next_attempt_at <= now,
                    appointments.c.last_outcome != NotificationOutcome.FAILED.value,
                    appointments.c.status.in_(_ACTIVE),
                )
            )
            .order_by(appointments.c.next_attempt_at.asc(), appointments.c.id.asc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return [Appointment.from_row(row) for row in result.fetchall()]

    async def claim_notification(
        self,
        appointment_id: UUID,
        expected_attempts: int,
        lease_until: datetime,
        now: datetime,
    ) -> Appointment | None:
        """
        Take ownership of one delivery attempt before calling the gateway.

        Increments attempt_count and moves next_attempt_at to the lease deadline
        in a single conditional update. If another scheduler claimed the row
        first, nothing is written and None is returned. If this process dies
        mid-delivery the lease expires and the attempt still counts.
        """
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.attempt_count == expected_attempts,
                    appointments.c.next_attempt_at.is_not(None),
                    appointments.c.next_attempt_at <= now,
                    appointments.c.last_outcome != NotificationOutcome.FAILED.value,
                    appointments.c.status.in_(_ACTIVE),
                )
            )
            .values(
                attempt_count=expected_attempts + 1,
                next_attempt_at=lease_until,
                last_attempt_at=now,
            )
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()
        await self.db.commit()
        return Appointment.from_row(row) if row is not None else None

    async def record_notification_outcome(
        self,
        appointment_id: UUID,
        outcome: NotificationOutcome,
        next_attempt_at: datetime | None,
        error: str | None = None,
        expected_attempts: int | None = None,
    ) -> bool:
        """
        Persist the result of a delivery attempt.

        Args:
            appointment_id: Appointment ID
            outcome: New last_outcome
            next_attempt_at: When to retry, or None to stop scheduling
            error: Failure reason, cleared on success
            expected_attempts: If given, only write while attempt_count still
                equals it, so a slow worker cannot overwrite a newer claim

        Returns:
            False if the write was skipped because of expected_attempts

        Raises:
            NotFoundException: If appointment not found
        """
        conditions = [appointments.c.id == appointment_id]
        if expected_attempts is not None:
            conditions.append(appointments.c.attempt_count == expected_attempts)

        stmt = (
            update(appointments)
            .where(and_(*conditions))
            .values(last_outcome=outcome.value, next_attempt_at=next_attempt_at, last_error=error)
            .returning(appointments.c.id)
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()

        if row is None:
            await self.db.rollback()
            # raises NotFoundException for unknown ids
            await self.get(appointment_id)
            return False

        await self.db.commit()
        return True

    async def record_delivery(
        self,
        appointment_id: UUID,
        expected_attempts: int,
        now: datetime,
    ) -> tuple[Appointment, bool] | None:
        """
        Mark the notification sent and confirm a pending appointment atomically.

        The outcome and the ``pending -> confirmed`` move commit in the same
        transaction, so a failure leaves the claim in place instead of a
        sent-but-pending row. Rows in any other status only get the outcome.

        Returns:
            (updated appointment, whether this write confirmed it), or None if
            attempt_count moved on since the claim
        """
        claim_held = and_(
            appointments.c.id == appointment_id,
            appointments.c.attempt_count == expected_attempts,
        )
        sent = {
            "last_outcome": NotificationOutcome.SENT.value,
            "next_attempt_at": None,
            "last_error": None,
        }

        result = await self.db.execute(
            update(appointments)
            .where(and_(claim_held, appointments.c.status == AppointmentStatus.PENDING.value))
            .values(**sent, status=AppointmentStatus.CONFIRMED.value, updated_at=now)
            .returning(appointments)
        )
        row = result.fetchone()
        confirmed = row is not None

        if row is None:
            result = await self.db.execute(
                update(appointments).where(claim_held).values(**sent).returning(appointments)
            )
            row = result.fetchone()

        if row is None:
            await self.db.rollback()
            return None

        await self.db.commit()
        return Appointment.from_row(row), confirmed

    async def past_due(self, now: datetime, limit: int) -> list[Appointment]:
        """Live appointments whose scheduled time has already passed."""
        stmt = (
            select(appointments)
            .where(
                and_(
                    appointments.c.status.in_(_ACTIVE),
                    appointments.c.scheduled_at < now,
                )
            )
            .order_by(appointments.c.scheduled_at.asc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return [Appointment.from_row(row) for row in result.fetchall()]

    async def list_for_owner(
        self,
        owner_id: UUID,
        status: AppointmentStatus | None = None,
        limit: int = 100,
    ) -> tuple[int, list[Appointment]]:
        """Return (total, newest-first page) of an owner's appointments."""
        conditions = [appointments.c.owner_id == owner_id]
        if status:
            conditions.append(appointments.c.status == status.value)

        count_stmt = select(func.count()).select_from(appointments).where(and_(*conditions))
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(appointments)
            .where(and_(*conditions))
            .order_by(appointments.c.scheduled_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return total, [Appointment.from_row(row) for row in result.fetchall()]

    async def failed_notifications(self, limit: int = 100) -> tuple[int, list[Appointment]]:
        """Return (total, most recent page) of notifications pinned to failed."""
        condition = appointments.c.last_outcome == NotificationOutcome.FAILED.value

        count_stmt = select(func.count()).select_from(appointments).where(condition)
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(appointments)
            .where(condition)
            .order_by(appointments.c.last_attempt_at.desc(), appointments.c.id.asc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return total, [Appointment.from_row(row) for row in result.fetchall()]
