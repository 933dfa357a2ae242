"""Idempotency ledger persistence model."""

from datetime import datetime

from sqlalchemy import DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from clinicpay.common.db import Base


class IdempotencyRecord(Base):
    """One externally-identified event, claimed at most once per source."""

    __tablename__ = "webhook_idempotency"
    __table_args__ = (
        Index("ix_webhook_idempotency_status", "status"),
        Index("ix_webhook_idempotency_received_at", "received_at"),
    )

    provider: Mapped[str] = mapped_column(String, primary_key=True)
    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    correlation_id: Mapped[str] = mapped_column(String, default="unknown")
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
