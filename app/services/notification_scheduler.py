"""Periodic sweep of time-based transitions and due confirmation e-mails.

Each tick is a poll-and-CAS cycle against the appointments table. Nothing is
kept in memory between ticks, so several scheduler processes can run side by
side and a cold restart picks up exactly where the table says work is left.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings
from app.core.clock import Clock, SystemClock
from app.schemas.appointments import Appointment, AppointmentStatus, NotificationOutcome
from app.services.appointment_service import AppointmentService
from app.services.notification_gateway import (
    DeliveryResult,
    DeliveryStatus,
    FatalDeliveryError,
    NotificationGateway,
)

logger = structlog.get_logger(__name__)

JOB_ID = "appointment_notification_tick"


def compute_backoff(attempt: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Delay before retry number ``attempt + 1``: base * 2**(attempt - 1), capped."""
    exponent = max(attempt - 1, 0)
    return timedelta(seconds=min(base_seconds * 2**exponent, max_seconds))


@dataclass
class TickReport:
    """Counters for one scheduler tick."""

    started_at: datetime
    expired: int = 0
    completed: int = 0
    sent: int = 0
    retry_scheduled: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    errors: list[str] = field(default_factory=list)


class NotificationScheduler:
    """Runs ticks on a fixed interval and delivers due notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: NotificationGateway,
        clock: Clock | None = None,
        app_settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.settings = app_settings or settings
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def max_attempts(self) -> int:
        return self.settings.notification_max_attempts

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Register the tick job and start the background scheduler."""
        if self.running:
            return

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self.settings.scheduler_tick_seconds),
            id=JOB_ID,
            name="Appointment notification tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(UTC),
        )
        self._scheduler.start()
        logger.info(
            "notification_scheduler_started",
            tick_seconds=self.settings.scheduler_tick_seconds,
            batch_size=self.settings.scheduler_batch_size,
        )

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("notification_scheduler_stopped")
        self._scheduler = None

    async def tick(self) -> TickReport:
        """
        Run one scheduler cycle.

        A database failure aborts the tick: the session is rolled back, the
        error is logged, and the remaining work stays queued for the next tick.
        """
        now = self.clock.now()
        report = TickReport(started_at=now)

        async with self.session_factory() as db:
            service = AppointmentService(db, clock=self.clock, app_settings=self.settings)
            try:
                await self._sweep(service, now, report)
                await self._dispatch_due(service, now, report)
            except (SQLAlchemyError, OSError) as e:
                await db.rollback()
                report.aborted = True
                report.errors.append(str(e))
                logger.error("scheduler_tick_aborted", error=str(e))

        logger.info(
            "scheduler_tick_finished",
            expired=report.expired,
            completed=report.completed,
            sent=report.sent,
            retry_scheduled=report.retry_scheduled,
            failed=report.failed,
            skipped=report.skipped,
            aborted=report.aborted,
        )
        return report

    async def _sweep(self, service: AppointmentService, now: datetime, report: TickReport) -> None:
        past_due = await service.store.past_due(now, self.settings.scheduler_sweep_batch_size)
        for appointment in past_due:
            advanced = await service.advance_time_based(appointment, now)
            if advanced is None:
                continue
            if advanced.status == AppointmentStatus.EXPIRED:
                report.expired += 1
            else:
                report.completed += 1

    async def _dispatch_due(
        self, service: AppointmentService, now: datetime, report: TickReport
    ) -> None:
        due = await service.store.due_for_notification(now, self.settings.scheduler_batch_size)
        for appointment in due:
            await self._deliver(service, appointment, now, report)

    async def _deliver(
        self,
        service: AppointmentService,
        appointment: Appointment,
        now: datetime,
        report: TickReport,
    ) -> None:
        store = service.store
        attempts = appointment.notification.attempt_count
        log = logger.bind(appointment_id=str(appointment.id), attempt=attempts + 1)

        if attempts >= self.max_attempts:
            # A previous process claimed the last attempt and never reported back
            await store.record_notification_outcome(
                appointment.id,
                NotificationOutcome.FAILED,
                None,
                error=appointment.notification.last_error or "retry ceiling reached",
                expected_attempts=attempts,
            )
            report.failed += 1
            log.warning("notification_abandoned_lease_failed")
            return

        lease_until = now + timedelta(
            seconds=self.settings.notification_timeout_seconds
            + self.settings.notification_lease_grace_seconds
        )
        claimed = await store.claim_notification(appointment.id, attempts, lease_until, now)
        if claimed is None:
            report.skipped += 1
            log.debug("notification_claim_lost")
            return

        attempt = claimed.notification.attempt_count
        result = await self._send(claimed)

        if result.status is DeliveryStatus.SUCCESS:
            if await service.mark_delivered(claimed, now) is None:
                log.warning("notification_sent_claim_superseded", message_id=result.message_id)
            report.sent += 1
            log.info("notification_sent", message_id=result.message_id)
            return

        if result.status is DeliveryStatus.FATAL_FAILURE or attempt >= self.max_attempts:
            await store.record_notification_outcome(
                claimed.id,
                NotificationOutcome.FAILED,
                None,
                error=result.detail,
                expected_attempts=attempt,
            )
            report.failed += 1
            log.error(
                "notification_failed",
                reason=result.status.value,
                detail=result.detail,
                max_attempts=self.max_attempts,
            )
            return

        retry_at = now + compute_backoff(
            attempt,
            self.settings.notification_backoff_base_seconds,
            self.settings.notification_backoff_max_seconds,
        )
        await store.record_notification_outcome(
            claimed.id,
            NotificationOutcome.UNSENT,
            retry_at,
            error=result.detail,
            expected_attempts=attempt,
        )
        report.retry_scheduled += 1
        log.warning(
            "notification_retry_scheduled", retry_at=retry_at.isoformat(), detail=result.detail
        )

    async def _send(self, appointment: Appointment) -> DeliveryResult:
        """Call the gateway under the per-attempt timeout and classify what happened."""
        payload: dict[str, Any] = {
            "appointment_id": str(appointment.id),
            "subject_id": str(appointment.subject_id),
            "owner_id": str(appointment.owner_id),
            "scheduled_at": appointment.scheduled_at.isoformat(),
        }
        timeout = self.settings.notification_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.gateway.send(
                    appointment.notification.template_id,
                    appointment.contact_email,
                    payload,
                ),
                timeout=timeout,
            )
        except TimeoutError:
            return DeliveryResult.transient(f"delivery timed out after {timeout}s")
        except FatalDeliveryError as e:
            return DeliveryResult.fatal(str(e))
        except Exception as e:
            logger.exception("notification_gateway_error", appointment_id=str(appointment.id))
            return DeliveryResult.transient(f"{type(e).__name__}: {e}")
