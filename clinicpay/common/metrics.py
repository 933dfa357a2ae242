"""Prometheus metric definitions shared across processes."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook deliveries by provider and outcome",
    ["provider", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate webhook/inbox events skipped",
    ["service", "source"],
)
payment_links_created_total = Counter(
    "payment_links_created_total",
    "Payment links minted per gateway",
    ["gateway"],
)
payment_link_failures_total = Counter(
    "payment_link_failures_total",
    "Payment link creation failures per gateway",
    ["gateway"],
)
gateway_request_seconds = Histogram(
    "gateway_request_seconds",
    "Outbound payment gateway call latency",
    ["gateway", "operation"],
)
dead_letters_stored_total = Counter(
    "dead_letters_stored_total",
    "Verified webhook deliveries parked in the dead-letter table",
    ["service", "provider"],
)
booking_conflicts_total = Counter(
    "booking_conflicts_total",
    "Bookings rejected because the slot was taken",
    ["service"],
)
audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Audit rows that could not be written next to a committed mutation",
    ["service"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
