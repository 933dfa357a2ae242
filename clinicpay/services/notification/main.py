"""Notification worker: Kafka consumer for booking and payment outcomes, plus health checks."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from clinicpay.common.config import settings
from clinicpay.common.db import SessionLocal
from clinicpay.common.logging import configure_logging
from clinicpay.common.metrics import metrics_response
from clinicpay.common.startup import log_startup_config
from clinicpay.common.tracing import instrument_app, setup_tracing
from clinicpay.services.ledger.service import IdempotencyLedger
from clinicpay.services.notification.service import NOTIFICATION_TOPICS, NotificationService

configure_logging(settings.service_name, settings.log_level)
setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
log_startup_config(settings, ["postgres_dsn", "kafka_bootstrap_servers"])

worker = NotificationService(
    SessionLocal,
    IdempotencyLedger(),
    bootstrap_servers=settings.kafka_bootstrap_servers,
    service_name=settings.service_name,
)
consumer_tasks: list[asyncio.Task] = []


@asynccontextmanager
async def lifespan(_: FastAPI):
    consumer_tasks.append(asyncio.create_task(worker.start_consumers()))
    try:
        yield
    finally:
        for task in consumer_tasks:
            task.cancel()
        consumer_tasks.clear()


app = FastAPI(title="Clinic Notification Worker", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """503 once the consumer loop has died, so the orchestrator restarts the container."""

    running = any(not task.done() for task in consumer_tasks)
    body = {"ok": running, "topics": NOTIFICATION_TOPICS}
    return JSONResponse(status_code=200 if running else 503, content=body)


@app.get("/metrics")
def metrics():
    return metrics_response()
