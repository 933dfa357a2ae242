"""Gateway adapters: link creation over httpx and webhook parsing."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from clinicpay.common.errors import GatewayError, ValidationError
from clinicpay.services.gateways.base import (
    CanonicalEvent,
    IgnoredEvent,
    ParseFailure,
    major_to_minor,
    minor_to_major,
)
from clinicpay.services.gateways.paypal import PayPalGateway
from clinicpay.services.gateways.razorpay import RazorpayGateway
from clinicpay.services.gateways.routing import GatewayRoutingRule

NOW = datetime(2026, 2, 20, 9, 0, tzinfo=timezone.utc)


def _razorpay(handler) -> RazorpayGateway:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return RazorpayGateway(client, "key", "secret", "whsec", base_url="https://api.razorpay.test", clock=lambda: NOW)


def _paypal(handler) -> PayPalGateway:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return PayPalGateway(client, "client", "secret", "WH-1")


def test_razorpay_create_link_sends_reference_and_expiry():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        captured["auth"] = request.headers["authorization"]
        return httpx.Response(
            200, json={"id": "plink_abc", "short_url": "https://rzp.io/i/abc", "expire_by": captured["body"]["expire_by"]}
        )

    link = _razorpay(handler).create_payment_link("order-1", 50000, "INR", {"appointment_id": "appt-1"})

    assert link.gateway_order_ref == "plink_abc"
    assert link.url == "https://rzp.io/i/abc"
    assert captured["body"]["reference_id"] == "order-1"
    assert captured["body"]["amount"] == 50000
    assert captured["body"]["notes"] == {"appointment_id": "appt-1"}
    assert captured["auth"].startswith("Basic ")
    assert link.expires_at > NOW


def test_razorpay_timeout_raises_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GatewayError):
        _razorpay(handler).create_payment_link("order-1", 50000, "INR", {})


def test_razorpay_http_error_raises_gateway_error():
    with pytest.raises(GatewayError):
        _razorpay(lambda request: httpx.Response(400, json={"error": {}})).create_payment_link(
            "order-1", 50000, "INR", {}
        )


def test_razorpay_parses_paid_event(payloads):
    body = payloads.razorpay_paid("plink_abc", amount=50000, payment_id="pay_9")
    event = _razorpay(None).parse_event(body, {"X-Razorpay-Event-Id": "evt_1"})

    assert isinstance(event, CanonicalEvent)
    assert event.provider_event_id == "evt_1"
    assert event.gateway_order_ref == "plink_abc"
    assert event.outcome == "success"
    assert event.amount_minor == 50000
    assert event.currency == "INR"
    assert event.gateway_payment_ref == "pay_9"


def test_razorpay_event_id_falls_back_to_event_and_entity(payloads):
    event = _razorpay(None).parse_event(payloads.razorpay_paid("plink_abc"), {})
    assert event.provider_event_id == "razorpay-payment_link.paid-plink_abc"


@pytest.mark.parametrize(
    "event_type,reason",
    [("payment_link.expired", "expired"), ("payment_link.cancelled", "cancelled")],
)
def test_razorpay_failure_events(payloads, event_type, reason):
    event = _razorpay(None).parse_event(payloads.razorpay_event(event_type, "plink_abc"), {})
    assert event.outcome == "failure"
    assert event.reason == reason


def test_razorpay_unknown_event_is_ignored_and_garbage_is_a_parse_failure(payloads):
    gateway = _razorpay(None)
    assert isinstance(gateway.parse_event(payloads.razorpay_event("refund.created", "x"), {}), IgnoredEvent)
    assert isinstance(gateway.parse_event(b"not json", {}), ParseFailure)
    assert isinstance(gateway.parse_event(b'{"event":"payment_link.paid","payload":[]}', {}), ParseFailure)


def test_paypal_create_order_uses_decimal_amount_and_approve_link():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            201,
            json={
                "id": "ORDER-1",
                "links": [
                    {"rel": "self", "href": "https://api/orders/ORDER-1"},
                    {"rel": "approve", "href": "https://paypal/checkoutnow?token=ORDER-1"},
                ],
            },
        )

    link = _paypal(handler).create_payment_link("order-1", 2599, "USD", {})

    unit = captured["body"]["purchase_units"][0]
    assert unit["amount"] == {"currency_code": "USD", "value": "25.99"}
    assert unit["reference_id"] == "order-1"
    assert link.gateway_order_ref == "ORDER-1"
    assert link.url == "https://paypal/checkoutnow?token=ORDER-1"


def test_paypal_parses_capture_completed(payloads):
    event = _paypal(None).parse_event(payloads.paypal_capture("ORDER-1", value="25.99", event_id="WH-9"), {})
    assert event.provider_event_id == "WH-9"
    assert event.gateway_order_ref == "ORDER-1"
    assert event.amount_minor == 2599
    assert event.currency == "USD"


def test_paypal_voided_order_is_a_cancel_failure():
    body = json.dumps({"id": "WH-2", "event_type": "CHECKOUT.ORDER.VOIDED", "resource": {"id": "ORDER-1"}}).encode()
    event = _paypal(None).parse_event(body, {})
    assert event.outcome == "failure"
    assert event.reason == "cancelled"
    assert event.gateway_order_ref == "ORDER-1"


@pytest.mark.parametrize("event_type", ["PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"])
def test_paypal_refused_capture_is_a_declined_failure(event_type):
    body = json.dumps(
        {
            "id": "WH-3",
            "event_type": event_type,
            "resource": {
                "id": "CAPTURE-9",
                "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
            },
        }
    ).encode()
    event = _paypal(None).parse_event(body, {})
    assert isinstance(event, CanonicalEvent)
    assert event.outcome == "failure"
    assert event.reason == "declined"
    assert event.gateway_order_ref == "ORDER-1"
    assert event.gateway_payment_ref == "CAPTURE-9"
    assert event.provider_event_id == "WH-3"


def test_paypal_refused_capture_without_order_is_parse_failure():
    body = json.dumps({"id": "WH-4", "event_type": "PAYMENT.CAPTURE.DENIED", "resource": {"id": "CAPTURE-9"}}).encode()
    assert isinstance(_paypal(None).parse_event(body, {}), ParseFailure)


def test_paypal_bad_amount_is_parse_failure(payloads):
    event = _paypal(None).parse_event(payloads.paypal_capture("ORDER-1", value="twenty"), {})
    assert isinstance(event, ParseFailure)


def test_amount_conversion_uses_currency_exponent():
    assert minor_to_major(50000, "INR") == "500.00"
    assert minor_to_major(1500, "JPY") == "1500"
    assert major_to_minor("0.29", "USD") == 29
    assert major_to_minor("1500", "JPY") == 1500
    assert major_to_minor("NaN", "USD") is None


def test_routing_by_region():
    rule = GatewayRoutingRule(default_region="IN")
    assert rule.select("in") == "razorpay"
    assert rule.select("INDIA") == "razorpay"
    assert rule.select("US") == "paypal"
    assert rule.select("de") == "paypal"
    assert rule.select("") == "razorpay"
    with pytest.raises(ValidationError):
        rule.select("ZZ")
