"""Outbox publishing: delivery, retry and parking of poison rows."""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from clinicpay.common.events import EventEnvelope
from clinicpay.common.outbox import OutboxEvent, OutboxPublisher, enqueue_event


class RecordingBus:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.published: list[tuple[str, EventEnvelope]] = []

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        if self.error is not None:
            raise self.error
        self.published.append((topic, event))


def _stage(session_factory, *aggregate_ids):
    with session_factory() as db:
        for aggregate_id in aggregate_ids:
            enqueue_event(
                db,
                topic="appointments.confirmed",
                aggregate_type="appointment",
                aggregate_id=aggregate_id,
                payload={"appointment_id": aggregate_id},
                trace_id="trace-1",
            )
        db.commit()


def _rows(session_factory):
    with session_factory() as db:
        return db.execute(select(OutboxEvent).order_by(OutboxEvent.aggregate_id)).scalars().all()


def test_pending_rows_are_published_once(session_factory):
    _stage(session_factory, "appt-1", "appt-2")
    bus = RecordingBus()
    publisher = OutboxPublisher(session_factory, bus, "test")

    assert asyncio.run(publisher.publish_pending()) == 2
    assert asyncio.run(publisher.publish_pending()) == 0

    assert sorted(event.aggregate_id for _, event in bus.published) == ["appt-1", "appt-2"]
    assert {topic for topic, _ in bus.published} == {"appointments.confirmed"}
    rows = _rows(session_factory)
    assert [row.status for row in rows] == ["SENT", "SENT"]
    assert all(row.attempts == 1 and row.sent_at is not None for row in rows)


def test_failing_row_is_retried_then_parked(session_factory):
    _stage(session_factory, "appt-1")
    publisher = OutboxPublisher(session_factory, RecordingBus(ConnectionError("broker down")), "test", max_attempts=2)

    assert asyncio.run(publisher.publish_pending()) == 0
    [row] = _rows(session_factory)
    assert row.status == "PENDING"
    assert row.attempts == 1
    assert row.last_error == "ConnectionError: broker down"

    asyncio.run(publisher.publish_pending())
    [row] = _rows(session_factory)
    assert row.status == "FAILED"
    assert row.attempts == 2

    publisher.kafka = RecordingBus()
    assert asyncio.run(publisher.publish_pending()) == 0
    assert publisher.kafka.published == []


def test_abandoned_claim_is_picked_up_after_timeout(session_factory):
    _stage(session_factory, "appt-1")
    publisher = OutboxPublisher(session_factory, RecordingBus(), "test", claim_timeout_seconds=30)
    claimed_at = datetime(2026, 2, 20, 9, 0, tzinfo=timezone.utc)

    with session_factory() as db:
        assert len(publisher.claim_batch(db, now=claimed_at)) == 1
        db.commit()

    with session_factory() as db:
        assert publisher.claim_batch(db, now=claimed_at + timedelta(seconds=10)) == []
        reclaimed = publisher.claim_batch(db, now=claimed_at + timedelta(seconds=31))
        assert [row.attempts for row in reclaimed] == [2]
        db.commit()


def test_envelope_queue_delay_is_never_negative():
    event = EventEnvelope(
        event_type="appointments.booked",
        aggregate_id="appt-1",
        trace_id="trace-1",
        occurred_at="2026-02-20T09:00:00Z",
        payload={},
    )
    later = datetime(2026, 2, 20, 9, 0, 5, tzinfo=timezone.utc)

    assert event.queue_delay_seconds(now=later) == 5.0
    assert event.queue_delay_seconds(now=later - timedelta(minutes=1)) == 0.0
