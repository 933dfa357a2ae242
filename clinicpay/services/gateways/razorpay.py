"""Razorpay adapter (India, INR) on the Payment Links API.

Amounts are paise on both directions. The link id (`plink_...`) is the
gateway order reference, echoed back in every `payment_link.*` webhook.
"""

from collections.abc import Mapping
from datetime import datetime, timezone

import httpx

from clinicpay.common.errors import GatewayError
from clinicpay.services.gateways.base import (
    CanonicalEvent,
    IgnoredEvent,
    ParsedEvent,
    ParseFailure,
    PaymentGateway,
    PaymentLink,
    as_dict,
    load_json_object,
)
from clinicpay.services.webhooks.signatures import normalize_headers, verify_razorpay_signature

SUCCESS_EVENTS = {"payment_link.paid"}
FAILURE_EVENTS = {"payment_link.expired": "expired", "payment_link.cancelled": "cancelled"}


class RazorpayGateway(PaymentGateway):
    name = "razorpay"
    supported_currencies = frozenset({"INR"})

    def __init__(
        self,
        http_client: httpx.Client,
        key_id: str | None,
        key_secret: str | None,
        webhook_secret: str | None,
        base_url: str = "https://api.razorpay.com",
        link_expiry_seconds: int = 7 * 24 * 60 * 60,
        clock=lambda: datetime.now(timezone.utc),
    ) -> None:
        super().__init__(http_client, webhook_secret)
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.link_expiry_seconds = link_expiry_seconds
        self.clock = clock

    def create_payment_link(
        self, order_id: str, amount_minor: int, currency: str, metadata: Mapping[str, str]
    ) -> PaymentLink:
        if not (self.key_id and self.key_secret):
            raise GatewayError("razorpay is not configured")
        expire_by = int(self.clock().timestamp()) + self.link_expiry_seconds
        payload = self._request(
            "create_payment_link",
            "POST",
            f"{self.base_url}/v1/payment_links",
            auth=(self.key_id, self.key_secret),
            json={
                "amount": amount_minor,
                "currency": currency,
                "reference_id": order_id,
                "description": f"Appointment {metadata.get('appointment_id', order_id)}",
                "notes": dict(metadata),
                "expire_by": expire_by,
            },
        )
        link_id = payload.get("id")
        url = payload.get("short_url")
        if not link_id or not url:
            raise GatewayError("razorpay returned a payment link without id or url")
        expires_at = payload.get("expire_by") or expire_by
        return PaymentLink(
            url=url,
            gateway_order_ref=link_id,
            expires_at=datetime.fromtimestamp(int(expires_at), tz=timezone.utc),
        )

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            return False
        return verify_razorpay_signature(raw_body, headers, self.webhook_secret)

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> ParsedEvent:
        body = load_json_object(raw_body)
        if body is None:
            return ParseFailure(reason="body is not a JSON object")
        event_type = body.get("event")
        if not isinstance(event_type, str) or not event_type:
            return ParseFailure(reason="missing event type")
        if event_type not in SUCCESS_EVENTS and event_type not in FAILURE_EVENTS:
            return IgnoredEvent(event_type=event_type)

        entities = as_dict(body.get("payload"))
        link = as_dict(as_dict(entities.get("payment_link")).get("entity"))
        if not isinstance(link.get("id"), str) or not link["id"]:
            return ParseFailure(reason="missing payment_link entity")
        payment = as_dict(as_dict(entities.get("payment")).get("entity"))

        event_id = normalize_headers(headers).get("x-razorpay-event-id") or f"razorpay-{event_type}-{link['id']}"

        if event_type in FAILURE_EVENTS:
            return CanonicalEvent(
                provider_event_id=event_id,
                gateway_order_ref=link["id"],
                outcome="failure",
                reason=FAILURE_EVENTS[event_type],
                event_type=event_type,
            )

        amount = link.get("amount_paid")
        if amount is None:
            amount = payment.get("amount")
        currency = link.get("currency") or payment.get("currency")
        if not isinstance(amount, int) or isinstance(amount, bool) or not isinstance(currency, str):
            return ParseFailure(reason="missing amount or currency")
        return CanonicalEvent(
            provider_event_id=event_id,
            gateway_order_ref=link["id"],
            outcome="success",
            gateway_payment_ref=payment.get("id"),
            amount_minor=amount,
            currency=currency.upper(),
            event_type=event_type,
        )
