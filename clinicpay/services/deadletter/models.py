"""Dead-letter persistence model.

`payload_encrypted` is the Fernet token of the raw delivery body. It may
hold patient data, so it is never logged and never decrypted outside
`DeadLetterQueue.get`.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from clinicpay.common.db import Base


class DeadLetterWebhook(Base):
    """A verified delivery that could not be applied, kept for manual replay."""

    __tablename__ = "dead_letter_webhooks"
    __table_args__ = (
        Index("ix_dead_letter_webhooks_provider", "provider"),
        Index("ix_dead_letter_webhooks_event_id", "event_id"),
        Index("ix_dead_letter_webhooks_failed_at", "failed_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    provider: Mapped[str] = mapped_column(String)
    event_id: Mapped[str] = mapped_column(String)
    correlation_id: Mapped[str] = mapped_column(String, default="unknown")
    payload_encrypted: Mapped[str] = mapped_column(Text)
    error_message: Mapped[str] = mapped_column(String)
    failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    reprocess_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
