"""Transactional outbox: rows written next to domain mutations, published later.

Domain code calls `enqueue_event` inside its own transaction, so an event
exists if and only if the mutation committed. `OutboxPublisher` drains the
table to Kafka in the background.

Row lifecycle: PENDING -> PROCESSING -> SENT. A row whose publish keeps
failing goes back to PENDING until `max_attempts`, then is parked as FAILED
with its last error for an operator to look at.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Integer, String, func, or_, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from clinicpay.common.db import Base
from clinicpay.common.events import EventEnvelope, KafkaBus
from clinicpay.common.logging import logger
from clinicpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total

JSONType = JSON().with_variant(JSONB(), "postgresql")

IN_FLIGHT = ("PENDING", "PROCESSING")


class OutboxEvent(Base):
    """Events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def enqueue_event(
    db,
    topic: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict[str, Any],
    trace_id: str,
) -> OutboxEvent:
    """Stage one envelope in the caller's transaction. Payloads carry ids, never PHI."""

    row = OutboxEvent(
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        event_type=topic,
        topic=topic,
        status="PENDING",
        attempts=0,
        payload=EventEnvelope(
            event_type=topic,
            aggregate_id=aggregate_id,
            trace_id=trace_id or str(uuid4()),
            payload=payload,
        ).model_dump(),
    )
    db.add(row)
    return row


class OutboxPublisher:
    """Background loop that drains `outbox_events` to Kafka."""

    def __init__(
        self,
        session_factory,
        kafka: KafkaBus,
        service_name: str,
        interval_seconds: float = 0.5,
        batch_size: int = 100,
        max_attempts: int = 10,
        claim_timeout_seconds: int = 30,
    ) -> None:
        self.session_factory = session_factory
        self.kafka = kafka
        self.service_name = service_name
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)

    def claim_batch(self, db, now: datetime | None = None) -> list[OutboxEvent]:
        """Lock PENDING rows, plus PROCESSING rows whose publisher died mid-batch."""

        now = now or datetime.now(timezone.utc)
        rows = (
            db.execute(
                select(OutboxEvent)
                .where(
                    or_(
                        OutboxEvent.status == "PENDING",
                        (OutboxEvent.status == "PROCESSING") & (OutboxEvent.claimed_at < now - self.claim_timeout),
                    )
                )
                .order_by(OutboxEvent.created_at)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            )
            .scalars()
            .all()
        )
        for row in rows:
            row.status = "PROCESSING"
            row.claimed_at = now
            row.attempts += 1
        return rows

    def settle(self, row_id: str, error: str | None = None) -> None:
        with self.session_factory() as db:
            row = db.get(OutboxEvent, row_id)
            if row is None or row.status != "PROCESSING":
                return
            if error is None:
                row.status = "SENT"
                row.sent_at = datetime.now(timezone.utc)
                row.last_error = None
            else:
                row.status = "FAILED" if row.attempts >= self.max_attempts else "PENDING"
                row.last_error = error[:500]
                if row.status == "FAILED":
                    logger.error("outbox_event_parked id=%s topic=%s attempts=%s", row.id, row.topic, row.attempts)
            db.commit()

    def record_backlog(self, db) -> None:
        pending, oldest = db.execute(
            select(func.count(), func.min(OutboxEvent.created_at)).where(OutboxEvent.status.in_(IN_FLIGHT))
        ).one()
        age_seconds = 0.0
        if oldest is not None:
            if oldest.tzinfo is None:
                oldest = oldest.replace(tzinfo=timezone.utc)
            age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest).total_seconds())
        outbox_pending_total.labels(service=self.service_name).set(float(pending))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age_seconds)

    async def publish_pending(self) -> int:
        """Publish one claimed batch; returns how many rows reached Kafka."""

        with self.session_factory() as db:
            claimed = [(row.id, row.topic, row.payload) for row in self.claim_batch(db)]
            db.commit()
            self.record_backlog(db)

        sent = 0
        for row_id, topic, payload in claimed:
            try:
                await self.kafka.publish(topic, EventEnvelope.model_validate(payload))
            except Exception as exc:
                logger.warning("outbox_publish_failed id=%s topic=%s error=%s", row_id, topic, exc)
                self.settle(row_id, error=f"{type(exc).__name__}: {exc}")
                continue
            self.settle(row_id)
            sent += 1
        return sent

    async def run(self) -> None:
        while True:
            try:
                await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_publisher_error error=%s", exc)
            await asyncio.sleep(self.interval_seconds)
