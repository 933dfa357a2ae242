"""initial notification schema

Revision ID: 0001_notification
Revises:
Create Date: 2026-02-20
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_notification"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notification_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("appointment_id", sa.String(), nullable=True),
        sa.Column("doctor_id", sa.String(), nullable=True),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_logs_event_id", "notification_logs", ["event_id"])
    op.create_index("ix_notification_logs_appointment_id", "notification_logs", ["appointment_id"])

    # Consumer de-duplication shares the webhook ledger shape, keyed by service name.
    op.create_table(
        "webhook_idempotency",
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("provider", "event_id"),
    )
    op.create_index("ix_webhook_idempotency_status", "webhook_idempotency", ["status"])


def downgrade() -> None:
    op.drop_index("ix_webhook_idempotency_status", table_name="webhook_idempotency")
    op.drop_table("webhook_idempotency")
    op.drop_index("ix_notification_logs_appointment_id", table_name="notification_logs")
    op.drop_index("ix_notification_logs_event_id", table_name="notification_logs")
    op.drop_table("notification_logs")
