"""Appointments table model using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    Uuid,
    text,
)

from app.models.types import UTCDateTime

# Metadata for all tables
metadata = MetaData()

ACTIVE_STATUS_SQL = "status IN ('pending', 'confirmed')"

# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    # References owned by the record-management side (pet, user)
    Column("subject_id", Uuid, nullable=False),
    Column("owner_id", Uuid, nullable=False),
    # Snapshot of the owner's address at booking time
    Column("contact_email", String(320), nullable=False),
    # Appointment details
    Column("scheduled_at", UTCDateTime, nullable=False),
    Column("slot_start", UTCDateTime, nullable=True),
    # Status management
    Column("status", String(20), nullable=False, server_default="pending"),
    # Notification bookkeeping
    Column("template_id", String(100), nullable=False),
    Column("next_attempt_at", UTCDateTime, nullable=True),
    Column("attempt_count", Integer, nullable=False, server_default="0"),
    Column("last_outcome", String(20), nullable=False, server_default="unsent"),
    Column("last_attempt_at", UTCDateTime, nullable=True),
    Column("last_error", Text, nullable=True),
    # Audit fields
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    Column("cancelled_at", UTCDateTime, nullable=True),
    # Constraints
    CheckConstraint(
        "status IN ('pending', 'confirmed', 'cancelled', 'completed', 'expired')",
        name="appointments_status_check",
    ),
    CheckConstraint(
        "last_outcome IN ('unsent', 'sent', 'failed')",
        name="appointments_last_outcome_check",
    ),
    CheckConstraint("attempt_count >= 0", name="appointments_attempt_count_check"),
    Index("idx_appointments_subject_scheduled", "subject_id", "scheduled_at"),
    Index("idx_appointments_owner_id", "owner_id"),
    Index("idx_appointments_status_scheduled", "status", "scheduled_at"),
    Index(
        "idx_appointments_next_attempt",
        "next_attempt_at",
        postgresql_where=text("next_attempt_at IS NOT NULL"),
        sqlite_where=text("next_attempt_at IS NOT NULL"),
    ),
    # One live booking per subject and calendar slot; slot_start is NULL in overlap mode
    Index(
        "uq_appointments_active_slot",
        "subject_id",
        "slot_start",
        unique=True,
        postgresql_where=text(ACTIVE_STATUS_SQL),
        sqlite_where=text(ACTIVE_STATUS_SQL),
    ),
)
