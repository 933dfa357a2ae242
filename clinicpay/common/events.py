"""Kafka envelope plus the producer and consumer used around the outbox.

Producers key every record by aggregate id so that all events for one
appointment or payment order land on the same partition in commit order.
Consumers see at-least-once delivery and de-duplicate on `event_id`.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field, ValidationError

from clinicpay.common.logging import correlation_id_ctx, event_id_ctx, logger
from clinicpay.common.metrics import event_queue_delay_seconds


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics. Payloads carry ids, never PHI."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]

    def queue_delay_seconds(self, now: datetime | None = None) -> float:
        occurred_at = datetime.fromisoformat(self.occurred_at.replace("Z", "+00:00"))
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - occurred_at).total_seconds())


class KafkaBus:
    """Lazily started producer shared by the outbox publisher."""

    def __init__(self, bootstrap_servers: str) -> None:
        self.bootstrap_servers = bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers, acks="all")
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            event.model_dump_json().encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None


async def _handle_record(record, group_id: str, handler, service_name: str) -> None:
    """Decode one record and run the handler with the event's ids bound to the log context."""

    try:
        event = EventEnvelope.model_validate_json(record.value)
    except ValidationError as exc:
        logger.error(
            "event_undecodable topic=%s group=%s offset=%s errors=%s",
            record.topic,
            group_id,
            record.offset,
            exc.error_count(),
        )
        return

    event_queue_delay_seconds.labels(service=service_name, topic=record.topic).observe(event.queue_delay_seconds())
    correlation_token = correlation_id_ctx.set(event.trace_id)
    event_token = event_id_ctx.set(event.event_id)
    try:
        logger.info(
            "event_received topic=%s group=%s event_type=%s aggregate_id=%s",
            record.topic,
            group_id,
            event.event_type,
            event.aggregate_id,
        )
        await handler(event)
    except Exception as exc:
        logger.error("handler_error topic=%s group=%s offset=%s error=%s", record.topic, group_id, record.offset, exc)
    finally:
        correlation_id_ctx.reset(correlation_token)
        event_id_ctx.reset(event_token)


async def consume_forever(
    bootstrap_servers: str,
    topics: list[str],
    group_id: str,
    handler,
    service_name: str,
    batch_size: int = 50,
) -> None:
    """Consume `topics` until cancelled, committing offsets after each batch.

    A failing handler is logged and skipped; a broken connection restarts the
    consumer after a short pause.
    """

    while True:
        consumer = AIOKafkaConsumer(
            *topics,
            bootstrap_servers=bootstrap_servers,
            group_id=group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )
        try:
            await consumer.start()
            while True:
                batches = await consumer.getmany(timeout_ms=500, max_records=batch_size)
                for records in batches.values():
                    for record in records:
                        await _handle_record(record, group_id, handler, service_name)
                if batches:
                    await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topics=%s group=%s error=%s", topics, group_id, exc)
            await asyncio.sleep(2)
        finally:
            await consumer.stop()
