"""guard active doctor slots and add outbox hot-path index

Revision ID: 0002_active_slot_guard
Revises: 0001_clinic
Create Date: 2026-02-21
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_active_slot_guard"
down_revision = "0001_clinic"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # At most one pending/confirmed appointment per doctor slot.
    op.create_index(
        "uq_appointments_doctor_active_slot",
        "appointments",
        ["doctor_id", "slot_bucket"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'confirmed')"),
    )
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("uq_appointments_doctor_active_slot", table_name="appointments")
