"""Tests for the appointment lifecycle service."""

from datetime import datetime, timedelta
from itertools import product
from unittest.mock import patch
from uuid import uuid4

import pytest

from app.core.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from app.schemas.appointments import (
    TERMINAL_STATUSES,
    AppointmentStatus,
    NotificationOutcome,
)
from app.services.appointment_service import AppointmentService, can_transition

S = AppointmentStatus


async def _create(service: AppointmentService, subject_id=None, delta=timedelta(hours=1)):
    return await service.create_appointment(
        subject_id=subject_id or uuid4(),
        owner_id=uuid4(),
        scheduled_at=service.clock.now() + delta,
        contact_email="owner@example.com",
    )


def test_state_machine_edges() -> None:
    """Only the documented edges are allowed."""
    allowed = {
        (S.PENDING, S.CONFIRMED),
        (S.PENDING, S.CANCELLED),
        (S.PENDING, S.EXPIRED),
        (S.CONFIRMED, S.CANCELLED),
        (S.CONFIRMED, S.COMPLETED),
    }
    for current, target in product(AppointmentStatus, repeat=2):
        assert can_transition(current, target) == ((current, target) in allowed)

    for terminal in TERMINAL_STATUSES:
        assert terminal.is_terminal
        assert not any(can_transition(terminal, target) for target in AppointmentStatus)


async def test_create_appointment_starts_pending(service: AppointmentService) -> None:
    now = service.clock.now()
    appointment = await _create(service)

    assert appointment.status == S.PENDING
    assert appointment.notification.attempt_count == 0
    assert appointment.notification.next_attempt_at == now
    assert appointment.notification.last_outcome == NotificationOutcome.UNSENT
    assert appointment.notification.template_id == "appointment_confirmation"
    assert appointment.created_at == now
    assert appointment.updated_at == now
    assert appointment.cancelled_at is None

    stored = await service.get_appointment(appointment.id)
    assert stored == appointment


@pytest.mark.parametrize("delta", [timedelta(0), timedelta(seconds=-1), timedelta(days=-3)])
async def test_create_rejects_non_future_times(service: AppointmentService, delta) -> None:
    with pytest.raises(ValidationException):
        await _create(service, delta=delta)


async def test_create_rejects_beyond_horizon(service: AppointmentService) -> None:
    with pytest.raises(ValidationException):
        await _create(service, delta=timedelta(days=366))

    # the horizon itself is still bookable
    appointment = await _create(service, delta=timedelta(days=365))
    assert appointment.status == S.PENDING


async def test_create_rejects_naive_datetime(service: AppointmentService) -> None:
    with pytest.raises(ValidationException):
        await service.create_appointment(
            subject_id=uuid4(),
            owner_id=uuid4(),
            scheduled_at=datetime(2026, 3, 3, 10, 0),
            contact_email="owner@example.com",
        )


@pytest.mark.parametrize("first,second", [(5, 20), (20, 5), (0, 29)])
async def test_same_slot_conflicts_regardless_of_order(
    service: AppointmentService, first: int, second: int
) -> None:
    """Two bookings for one pet in the same 30-minute slot: the second always loses."""
    subject_id = uuid4()
    slot = timedelta(hours=1)

    await _create(service, subject_id, slot + timedelta(minutes=first))
    with pytest.raises(ConflictException):
        await _create(service, subject_id, slot + timedelta(minutes=second))


async def test_other_subject_or_slot_does_not_conflict(service: AppointmentService) -> None:
    subject_id = uuid4()
    await _create(service, subject_id, timedelta(hours=1))

    other_pet = await _create(service, uuid4(), timedelta(hours=1))
    next_slot = await _create(service, subject_id, timedelta(hours=1, minutes=30))

    assert other_pet.status == S.PENDING
    assert next_slot.status == S.PENDING


async def test_cancelled_booking_frees_slot(service: AppointmentService) -> None:
    subject_id = uuid4()
    first = await _create(service, subject_id)
    await service.cancel_appointment(first.id, authorized=True)

    rebooked = await _create(service, subject_id)
    assert rebooked.id != first.id


async def test_overlap_mode_rejects_close_bookings(service: AppointmentService) -> None:
    overlap_settings = service.settings.model_copy(update={"booking_conflict_mode": "overlap"})
    service = AppointmentService(service.db, clock=service.clock, app_settings=overlap_settings)
    subject_id = uuid4()

    # 10:10 is in a different slot from 9:55 but only 15 minutes away
    await _create(service, subject_id, timedelta(minutes=55))
    with pytest.raises(ConflictException):
        await _create(service, subject_id, timedelta(minutes=70))

    # exactly one window apart is fine
    later = await _create(service, subject_id, timedelta(minutes=85))
    assert later.status == S.PENDING


async def test_get_unknown_appointment(service: AppointmentService) -> None:
    with pytest.raises(NotFoundException):
        await service.get_appointment(uuid4())


async def test_cancel_is_idempotent(service: AppointmentService) -> None:
    appointment = await _create(service)

    first = await service.cancel_appointment(appointment.id, authorized=True)
    service.clock.advance(minutes=1)
    second = await service.cancel_appointment(appointment.id, authorized=True)

    assert first.status == S.CANCELLED
    assert second.status == S.CANCELLED
    assert second.cancelled_at == first.cancelled_at
    assert second.updated_at == first.updated_at
    assert first.notification.next_attempt_at is None


async def test_cancel_requires_authorization(service: AppointmentService) -> None:
    appointment = await _create(service)

    with pytest.raises(ForbiddenException):
        await service.cancel_appointment(appointment.id, authorized=False)

    assert (await service.get_appointment(appointment.id)).status == S.PENDING


async def test_cancel_confirmed_only_before_start(service: AppointmentService) -> None:
    appointment = await _create(service)
    await service.confirm_appointment(appointment.id, authorized=True)

    service.clock.advance(hours=2)
    with pytest.raises(InvalidTransitionException):
        await service.cancel_appointment(appointment.id, authorized=True)


async def test_cancel_confirmed_before_start(service: AppointmentService) -> None:
    appointment = await _create(service)
    await service.confirm_appointment(appointment.id, authorized=True)

    cancelled = await service.cancel_appointment(appointment.id, authorized=True)
    assert cancelled.status == S.CANCELLED
    assert cancelled.cancelled_at == service.clock.now()


async def test_confirm_explicit_and_idempotent(service: AppointmentService) -> None:
    appointment = await _create(service)

    confirmed = await service.confirm_appointment(appointment.id, authorized=True)
    again = await service.confirm_appointment(appointment.id, authorized=True)

    assert confirmed.status == S.CONFIRMED
    assert again.updated_at == confirmed.updated_at


async def test_terminal_states_reject_transitions(service: AppointmentService) -> None:
    appointment = await _create(service)
    service.clock.advance(hours=2)
    expired = await service.advance_time_based(appointment, service.clock.now())
    assert expired is not None and expired.status == S.EXPIRED

    with pytest.raises(InvalidTransitionException):
        await service.cancel_appointment(appointment.id, authorized=True)
    with pytest.raises(InvalidTransitionException):
        await service.confirm_appointment(appointment.id, authorized=True)

    assert (await service.get_appointment(appointment.id)).status == S.EXPIRED


async def test_cancelled_cannot_be_confirmed(service: AppointmentService) -> None:
    appointment = await _create(service)
    await service.cancel_appointment(appointment.id, authorized=True)

    with pytest.raises(InvalidTransitionException) as exc_info:
        await service.confirm_appointment(appointment.id, authorized=True)
    assert exc_info.value.current_status == "cancelled"
    assert exc_info.value.status_code == 409


async def test_advance_time_based(service: AppointmentService) -> None:
    pending = await _create(service, delta=timedelta(hours=1))
    confirmed = await _create(service, delta=timedelta(hours=1, minutes=30))
    confirmed = await service.confirm_appointment(confirmed.id, authorized=True)
    future = await _create(service, delta=timedelta(hours=5))

    now = service.clock.advance(hours=2)

    expired = await service.advance_time_based(pending, now)
    completed = await service.advance_time_based(confirmed, now)
    assert expired is not None and expired.status == S.EXPIRED
    assert completed is not None and completed.status == S.COMPLETED
    assert expired.notification.next_attempt_at is None

    assert await service.advance_time_based(future, now) is None
    # a second sweep holding the stale snapshot loses the CAS quietly
    assert await service.advance_time_based(pending, now) is None


async def test_update_status_is_compare_and_swap(service: AppointmentService) -> None:
    appointment = await _create(service)
    now = service.clock.now()

    await service.store.update_status(appointment.id, S.PENDING, S.CONFIRMED, now)
    with pytest.raises(ConflictException):
        await service.store.update_status(appointment.id, S.PENDING, S.CANCELLED, now)
    with pytest.raises(NotFoundException):
        await service.store.update_status(uuid4(), S.PENDING, S.CANCELLED, now)


async def test_concurrent_cancel_loser_sees_success(service: AppointmentService) -> None:
    """Two cancels race on a confirmed appointment: one writes, the other observes it."""
    appointment = await service.confirm_appointment(
        (await _create(service)).id, authorized=True
    )
    rival = AppointmentService(service.db, clock=service.clock, app_settings=service.settings)
    real_get = service.store.get
    reads = 0

    async def get_then_lose_race(appointment_id):
        nonlocal reads
        reads += 1
        if reads == 1:
            # the rival request commits between our read and our write
            await rival.cancel_appointment(appointment_id, authorized=True)
            return appointment
        return await real_get(appointment_id)

    with (
        patch.object(service.store, "get", side_effect=get_then_lose_race),
        patch.object(service.store, "update_status", wraps=service.store.update_status) as writes,
    ):
        result = await service.cancel_appointment(appointment.id, authorized=True)

    assert result.status == S.CANCELLED
    # our single write attempt lost the CAS; the retry took the idempotent path
    assert writes.await_count == 1
    # stale read, the read behind the lost CAS, then the fresh re-read
    assert reads == 3
    stored = await real_get(appointment.id)
    assert stored.status == S.CANCELLED
    assert stored.cancelled_at == result.cancelled_at
