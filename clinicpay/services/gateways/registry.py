"""Builds the gateway registry from settings."""

from collections.abc import Callable
from datetime import datetime, timezone

import httpx

from clinicpay.services.gateways.base import PaymentGateway
from clinicpay.services.gateways.paypal import PayPalGateway
from clinicpay.services.gateways.razorpay import RazorpayGateway


def build_http_client(timeout_seconds: float) -> httpx.Client:
    return httpx.Client(timeout=httpx.Timeout(timeout_seconds))


def build_gateways(
    settings,
    http_client: httpx.Client,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> dict[str, PaymentGateway]:
    """Map gateway name -> adapter. Unconfigured adapters still verify as failed.

    `clock` must be the one the orchestrator uses, so link expiry and the
    stale-order sweep agree on what "now" is.
    """

    return {
        "razorpay": RazorpayGateway(
            http_client,
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            base_url=settings.razorpay_base_url,
            link_expiry_seconds=settings.payment_link_expiry_seconds,
            clock=clock,
        ),
        "paypal": PayPalGateway(
            http_client,
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            webhook_id=settings.paypal_webhook_id,
            base_url=settings.paypal_base_url,
        ),
    }
