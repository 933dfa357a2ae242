"""Webhook signature verification against the raw request bytes."""

import hashlib
import hmac
import json

import httpx

from clinicpay.services.webhooks.signatures import (
    PayPalSignatureVerifier,
    verify_instagram_signature,
    verify_razorpay_signature,
)

SECRET = "whsec"
BODY = b'{"event":"payment_link.paid","payload":{}}'


def _hex(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_razorpay_accepts_valid_signature_with_any_header_casing():
    assert verify_razorpay_signature(BODY, {"x-razorpay-signature": _hex(BODY)}, SECRET)
    assert verify_razorpay_signature(BODY, {"X-RAZORPAY-SIGNATURE": _hex(BODY)}, SECRET)


def test_razorpay_rejects_single_byte_tampering():
    tampered = BODY.replace(b"paid", b"pai d")
    assert not verify_razorpay_signature(tampered, {"X-Razorpay-Signature": _hex(BODY)}, SECRET)


def test_razorpay_rejects_reserialized_body():
    reserialized = json.dumps(json.loads(BODY)).encode()
    assert reserialized != BODY
    assert not verify_razorpay_signature(reserialized, {"X-Razorpay-Signature": _hex(BODY)}, SECRET)


def test_razorpay_rejects_missing_header_and_wrong_secret():
    assert not verify_razorpay_signature(BODY, {}, SECRET)
    assert not verify_razorpay_signature(BODY, {"X-Razorpay-Signature": _hex(BODY, "other")}, SECRET)


def test_instagram_requires_sha256_prefix():
    digest = _hex(BODY)
    assert verify_instagram_signature(BODY, {"X-Hub-Signature-256": f"sha256={digest}"}, SECRET)
    assert not verify_instagram_signature(BODY, {"X-Hub-Signature-256": digest}, SECRET)
    assert not verify_instagram_signature(BODY, {"X-Hub-Signature-256": "sha256=zz-not-hex"}, SECRET)


def test_instagram_rejects_tampered_body():
    header = {"X-Hub-Signature-256": f"sha256={_hex(BODY)}"}
    assert not verify_instagram_signature(BODY + b" ", header, SECRET)


PAYPAL_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT",
    "paypal-transmission-id": "tx-1",
    "paypal-transmission-sig": "sig",
    "paypal-transmission-time": "2026-02-20T09:00:00Z",
}


def _paypal_verifier(handler) -> PayPalSignatureVerifier:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return PayPalSignatureVerifier(client, "https://api-m.sandbox.paypal.com", "client", "secret")


def test_paypal_verification_posts_event_and_webhook_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(200, json={"verification_status": "SUCCESS"})

    body = b'{"id":"WH-1","event_type":"PAYMENT.CAPTURE.COMPLETED"}'
    assert _paypal_verifier(handler)(body, PAYPAL_HEADERS, "WH-CONFIGURED")
    assert seen["auth"] == "Bearer tok"
    assert seen["body"]["webhook_id"] == "WH-CONFIGURED"
    assert seen["body"]["transmission_id"] == "tx-1"
    assert seen["body"]["webhook_event"]["id"] == "WH-1"


def test_paypal_failure_status_is_false():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        return httpx.Response(200, json={"verification_status": "FAILURE"})

    assert not _paypal_verifier(handler)(b"{}", PAYPAL_HEADERS, "WH-CONFIGURED")


def test_paypal_missing_headers_never_calls_provider():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"verification_status": "SUCCESS"})

    headers = dict(PAYPAL_HEADERS)
    headers.pop("paypal-transmission-sig")
    assert not _paypal_verifier(handler)(b"{}", headers, "WH-CONFIGURED")
    assert calls == []


def test_paypal_timeout_is_false_not_an_exception():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    assert not _paypal_verifier(handler)(b"{}", PAYPAL_HEADERS, "WH-CONFIGURED")
