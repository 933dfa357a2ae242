"""Wires components together from settings.

Everything a request handler needs hangs off one `Services` object stored on
`app.state`, so tests can build the same graph around an in-memory database
and fake provider transports.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from clinicpay.services.api.deps import IdentityClient, TokenBucket
from clinicpay.services.appointments.service import AppointmentService
from clinicpay.services.deadletter.service import DeadLetterQueue, build_cipher
from clinicpay.services.gateways.registry import build_gateways
from clinicpay.services.gateways.routing import GatewayRoutingRule
from clinicpay.services.ledger.service import IdempotencyLedger
from clinicpay.services.orchestrator.service import PaymentOrchestrator
from clinicpay.services.webhooks.dispatcher import WebhookDispatcher
from clinicpay.services.webhooks.instagram import InstagramIngress


@dataclass
class Services:
    api_key: str
    appointments: AppointmentService
    orchestrator: PaymentOrchestrator
    dispatcher: WebhookDispatcher
    instagram: InstagramIngress
    identity: IdentityClient
    dead_letters: DeadLetterQueue
    rate_limiter: TokenBucket | None = None
    service_name: str = "clinic-api"


def build_services(
    session_factory,
    settings,
    http_client: httpx.Client,
    redis_client=None,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> Services:
    ledger = IdempotencyLedger()
    dead_letters = DeadLetterQueue(
        session_factory,
        build_cipher(settings.dead_letter_encryption_key),
        clock=clock,
        service_name=settings.service_name,
    )
    appointments = AppointmentService(
        session_factory,
        slot_minutes=settings.slot_interval_minutes,
        clock=clock,
        service_name=settings.service_name,
    )
    orchestrator = PaymentOrchestrator(
        session_factory,
        gateways=build_gateways(settings, http_client, clock=clock),
        routing=GatewayRoutingRule(default_region=settings.default_doctor_country),
        ledger=ledger,
        appointments=appointments,
        dead_letters=dead_letters,
        clock=clock,
        service_name=settings.service_name,
    )
    instagram = InstagramIngress(
        session_factory,
        ledger,
        app_secret=settings.instagram_app_secret,
        verify_token=settings.instagram_webhook_verify_token,
        dead_letters=dead_letters,
        service_name=settings.service_name,
    )
    return Services(
        api_key=settings.api_key,
        appointments=appointments,
        orchestrator=orchestrator,
        dispatcher=WebhookDispatcher(orchestrator, instagram),
        instagram=instagram,
        identity=IdentityClient(http_client, settings.identity_url, settings.identity_api_key),
        dead_letters=dead_letters,
        rate_limiter=TokenBucket(redis_client, settings.rate_limit_per_minute) if redis_client is not None else None,
        service_name=settings.service_name,
    )
