"""create appointments table

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_STATUS_SQL = "status IN ('pending', 'confirmed')"


def upgrade() -> None:
    """Create appointments table with lifecycle and notification bookkeeping."""
    op.create_table(
        "appointments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subject_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("contact_email", sa.String(320), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("slot_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("template_id", sa.String(100), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "last_outcome",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'unsent'"),
        ),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled', 'completed', 'expired')",
            name="appointments_status_check",
        ),
        sa.CheckConstraint(
            "last_outcome IN ('unsent', 'sent', 'failed')",
            name="appointments_last_outcome_check",
        ),
        sa.CheckConstraint("attempt_count >= 0", name="appointments_attempt_count_check"),
    )

    op.create_index(
        "idx_appointments_subject_scheduled", "appointments", ["subject_id", "scheduled_at"]
    )
    op.create_index("idx_appointments_owner_id", "appointments", ["owner_id"])
    op.create_index("idx_appointments_status_scheduled", "appointments", ["status", "scheduled_at"])
    op.create_index(
        "idx_appointments_next_attempt",
        "appointments",
        ["next_attempt_at"],
        postgresql_where=sa.text("next_attempt_at IS NOT NULL"),
        sqlite_where=sa.text("next_attempt_at IS NOT NULL"),
    )
    op.create_index(
        "uq_appointments_active_slot",
        "appointments",
        ["subject_id", "slot_start"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_STATUS_SQL),
        sqlite_where=sa.text(ACTIVE_STATUS_SQL),
    )


def downgrade() -> None:
    """Drop appointments table."""
    op.drop_index("uq_appointments_active_slot", table_name="appointments")
    op.drop_index("idx_appointments_next_attempt", table_name="appointments")
    op.drop_index("idx_appointments_status_scheduled", table_name="appointments")
    op.drop_index("idx_appointments_owner_id", table_name="appointments")
    op.drop_index("idx_appointments_subject_scheduled", table_name="appointments")
    op.drop_table("appointments")
