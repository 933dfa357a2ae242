"""Process entrypoint for the clinic API and its outbox publisher."""

import asyncio
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI

from clinicpay.common.config import settings
from clinicpay.common.db import SessionLocal
from clinicpay.common.events import KafkaBus
from clinicpay.common.logging import configure_logging
from clinicpay.common.outbox import OutboxPublisher
from clinicpay.common.startup import log_startup_config
from clinicpay.common.tracing import instrument_app, setup_tracing
from clinicpay.services.api.app import create_app
from clinicpay.services.api.container import build_services
from clinicpay.services.gateways.registry import build_http_client

configure_logging(settings.service_name, settings.log_level)
setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "rate_limit_per_minute",
        "identity_url",
        "default_doctor_country",
        "slot_interval_minutes",
        "gateway_timeout_seconds",
        "paypal_mode",
    ],
)

http_client = build_http_client(settings.gateway_timeout_seconds)
services = build_services(
    SessionLocal,
    settings,
    http_client,
    redis_client=redis.Redis.from_url(settings.redis_url, decode_responses=True),
)
kafka = KafkaBus(settings.kafka_bootstrap_servers)
publisher = OutboxPublisher(SessionLocal, kafka, settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Drain the outbox for as long as the API serves requests."""

    publisher_task = asyncio.create_task(publisher.run())
    try:
        yield
    finally:
        publisher_task.cancel()
        await kafka.close()
        http_client.close()


app = create_app(services, lifespan=lifespan)
instrument_app(app)
