"""Appointment schemas for request/response validation."""

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.EXPIRED}
)
ACTIVE_STATUSES = frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED})


class NotificationOutcome(str, Enum):
    """Result of the most recent delivery attempt."""

    UNSENT = "unsent"
    SENT = "sent"
    FAILED = "failed"


class AppointmentCreate(BaseModel):
    """Schema for booking a new appointment."""

    subject_id: UUID
    owner_id: UUID | None = Field(
        None, description="Defaults to the authenticated principal when omitted"
    )
    scheduled_at: datetime
    contact_email: EmailStr

    @field_validator("scheduled_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class NotificationState(BaseModel):
    """Delivery bookkeeping stored alongside each appointment."""

    template_id: str
    next_attempt_at: datetime | None = None
    attempt_count: int = Field(0, ge=0)
    last_outcome: NotificationOutcome = NotificationOutcome.UNSENT
    last_attempt_at: datetime | None = None
    last_error: str | None = None


class Appointment(BaseModel):
    """An appointment row as seen by services and API clients."""

    id: UUID
    subject_id: UUID
    owner_id: UUID
    contact_email: str
    scheduled_at: datetime
    status: AppointmentStatus
    notification: NotificationState
    created_at: datetime
    updated_at: datetime
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}

    @classmethod
    def from_row(cls, row: Any) -> "Appointment":
        """Build from a Core result row, nesting the notification columns."""
        data: Mapping[str, Any] = row._mapping
        return cls(
            id=data["id"],
            subject_id=data["subject_id"],
            owner_id=data["owner_id"],
            contact_email=data["contact_email"],
            scheduled_at=data["scheduled_at"],
            status=data["status"],
            notification=NotificationState(
                template_id=data["template_id"],
                next_attempt_at=data["next_attempt_at"],
                attempt_count=data["attempt_count"],
                last_outcome=data["last_outcome"],
                last_attempt_at=data["last_attempt_at"],
                last_error=data["last_error"],
            ),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            cancelled_at=data["cancelled_at"],
        )


class AppointmentListResponse(BaseModel):
    """Schema for an owner's appointment list."""

    total: int
    items: list[Appointment]


class FailedNotificationListResponse(BaseModel):
    """Appointments whose notification gave up, for operational follow-up."""

    total: int
    items: list[Appointment]
