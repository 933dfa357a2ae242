"""Notification consumer for booking and payment outcomes."""

import asyncio

from clinicpay.common.events import EventEnvelope, consume_forever
from clinicpay.common.logging import logger
from clinicpay.common.metrics import duplicate_events_skipped_total
from clinicpay.services.ledger.service import IdempotencyLedger
from clinicpay.services.notification.models import NotificationLog

NOTIFICATION_TOPICS = ["appointments.confirmed", "appointments.cancelled", "payments.failed"]

MESSAGES = {
    "appointments.confirmed": "Appointment {appointment_id} confirmed after payment",
    "appointments.cancelled": "Appointment {appointment_id} cancelled",
    "payments.failed": "Payment for appointment {appointment_id} {status}",
}


class NotificationService:
    """Writes one notification log per consumed event; replays are skipped via the ledger."""

    def __init__(
        self,
        session_factory,
        ledger: IdempotencyLedger,
        bootstrap_servers: str = "kafka:9092",
        service_name: str = "notification",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.bootstrap_servers = bootstrap_servers
        self.service_name = service_name

    async def handle_event(self, event: EventEnvelope) -> bool:
        """Persist the notification; False when the event was already handled."""

        payload = event.payload
        with self.session_factory() as db:
            if not self.ledger.claim(db, self.service_name, event.event_id, event.trace_id):
                db.rollback()
                duplicate_events_skipped_total.labels(service=self.service_name, source=event.event_type).inc()
                return False
            template = MESSAGES.get(event.event_type, "Event {event_type} for {aggregate_id}")
            message = template.format(
                appointment_id=payload.get("appointment_id", event.aggregate_id),
                status=payload.get("status", "failed"),
                event_type=event.event_type,
                aggregate_id=event.aggregate_id,
            )
            db.add(
                NotificationLog(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    appointment_id=payload.get("appointment_id"),
                    doctor_id=payload.get("doctor_id"),
                    channel="dashboard",
                    message=message,
                )
            )
            self.ledger.mark_processed(db, self.service_name, event.event_id)
            db.commit()
        logger.info("notification_logged event_type=%s event_id=%s", event.event_type, event.event_id)
        return True

    async def start_consumers(self) -> None:
        await asyncio.gather(
            consume_forever(
                self.bootstrap_servers,
                NOTIFICATION_TOPICS,
                f"{self.service_name}-outcomes",
                self.handle_event,
                self.service_name,
            ),
        )
