"""one open payment order per appointment; dead-letter webhook table

Revision ID: 0003_open_order_dead_letters
Revises: 0002_active_slot_guard
Create Date: 2026-03-04
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_open_order_dead_letters"
down_revision = "0002_active_slot_guard"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Retire duplicates left by earlier link re-creation before the guard goes on.
    op.execute(
        """
        UPDATE payment_orders SET status = 'expired', state_version = state_version + 1
        WHERE status = 'created' AND id NOT IN (
            SELECT DISTINCT ON (appointment_id) id FROM payment_orders
            WHERE status = 'created'
            ORDER BY appointment_id, created_at DESC
        )
        """
    )
    op.create_index(
        "uq_payment_orders_open_per_appointment",
        "payment_orders",
        ["appointment_id"],
        unique=True,
        postgresql_where=sa.text("status = 'created'"),
    )

    op.create_table(
        "dead_letter_webhooks",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("payload_encrypted", sa.Text(), nullable=False),
        sa.Column("error_message", sa.String(), nullable=False),
        sa.Column("failed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("reprocess_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dead_letter_webhooks_provider", "dead_letter_webhooks", ["provider"])
    op.create_index("ix_dead_letter_webhooks_event_id", "dead_letter_webhooks", ["event_id"])
    op.create_index("ix_dead_letter_webhooks_failed_at", "dead_letter_webhooks", ["failed_at"])


def downgrade() -> None:
    op.drop_index("ix_dead_letter_webhooks_failed_at", table_name="dead_letter_webhooks")
    op.drop_index("ix_dead_letter_webhooks_event_id", table_name="dead_letter_webhooks")
    op.drop_index("ix_dead_letter_webhooks_provider", table_name="dead_letter_webhooks")
    op.drop_table("dead_letter_webhooks")
    op.drop_index("uq_payment_orders_open_per_appointment", table_name="payment_orders")
