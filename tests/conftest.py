"""Shared fixtures: in-memory database, fake provider HTTP, wired services."""

import hashlib
import hmac
import json
import os
from datetime import datetime, timezone

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "internal-test-key")

import httpx
import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import clinicpay.common.audit  # noqa: F401
import clinicpay.common.outbox  # noqa: F401
import clinicpay.services.appointments.models  # noqa: F401
import clinicpay.services.deadletter.models  # noqa: F401
import clinicpay.services.ledger.models  # noqa: F401
import clinicpay.services.notification.models  # noqa: F401
import clinicpay.services.orchestrator.models  # noqa: F401
from clinicpay.common.config import CommonSettings
from clinicpay.common.db import Base
from clinicpay.services.api.app import create_app
from clinicpay.services.api.container import build_services

NOW = datetime(2026, 2, 20, 9, 0, tzinfo=timezone.utc)
RAZORPAY_WEBHOOK_SECRET = "rzp-webhook-secret"
INSTAGRAM_APP_SECRET = "ig-app-secret"
API_KEY = "internal-test-key"
DEAD_LETTER_KEY = Fernet.generate_key().decode()


class FakeProviders:
    """httpx MockTransport handler standing in for Razorpay, PayPal and identity."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.fail_with: str | None = None
        self.paypal_verification_status = "SUCCESS"
        self.link_counter = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/auth/v1/user":
            token = request.headers.get("authorization", "").removeprefix("Bearer ")
            if token.startswith("doctor-"):
                return httpx.Response(200, json={"id": token.removeprefix("doctor-")})
            return httpx.Response(401, json={"message": "invalid token"})
        if self.fail_with == "timeout":
            raise httpx.ReadTimeout("provider timed out", request=request)
        if self.fail_with == "server_error":
            return httpx.Response(503, json={"error": "unavailable"})
        if path == "/v1/payment_links":
            self.link_counter += 1
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": f"plink_{self.link_counter}",
                    "short_url": f"https://rzp.io/i/link{self.link_counter}",
                    "expire_by": body["expire_by"],
                    "reference_id": body["reference_id"],
                },
            )
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "paypal-token", "expires_in": 3600})
        if path == "/v2/checkout/orders":
            self.link_counter += 1
            order_id = f"PAYPAL-ORDER-{self.link_counter}"
            return httpx.Response(
                201,
                json={
                    "id": order_id,
                    "status": "CREATED",
                    "links": [
                        {"rel": "self", "href": f"https://api-m.sandbox.paypal.com/v2/checkout/orders/{order_id}"},
                        {"rel": "approve", "href": f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}"},
                    ],
                },
            )
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.paypal_verification_status})
        return httpx.Response(404, json={"error": "not found"})

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


class Payloads:
    """Builders for signed provider deliveries."""

    @staticmethod
    def razorpay_paid(link_id: str, amount: int = 50000, currency: str = "INR", payment_id: str = "pay_001") -> bytes:
        return json.dumps(
            {
                "entity": "event",
                "event": "payment_link.paid",
                "payload": {
                    "payment_link": {
                        "entity": {"id": link_id, "amount": amount, "amount_paid": amount, "currency": currency}
                    },
                    "payment": {"entity": {"id": payment_id, "amount": amount, "currency": currency}},
                },
            }
        ).encode("utf-8")

    @staticmethod
    def razorpay_event(event_type: str, link_id: str) -> bytes:
        return json.dumps(
            {"entity": "event", "event": event_type, "payload": {"payment_link": {"entity": {"id": link_id}}}}
        ).encode("utf-8")

    @staticmethod
    def razorpay_headers(body: bytes, event_id: str | None = None, secret: str = RAZORPAY_WEBHOOK_SECRET) -> dict:
        headers = {
            "Content-Type": "application/json",
            "X-Razorpay-Signature": hmac.new(secret.encode(), body, hashlib.sha256).hexdigest(),
        }
        if event_id:
            headers["X-Razorpay-Event-Id"] = event_id
        return headers

    @staticmethod
    def paypal_capture(order_ref: str, value: str = "25.00", currency: str = "USD", event_id: str = "WH-EVT-1") -> bytes:
        return json.dumps(
            {
                "id": event_id,
                "event_type": "PAYMENT.CAPTURE.COMPLETED",
                "resource": {
                    "id": "CAPTURE-1",
                    "amount": {"currency_code": currency, "value": value},
                    "supplementary_data": {"related_ids": {"order_id": order_ref}},
                },
            }
        ).encode("utf-8")

    @staticmethod
    def paypal_headers() -> dict:
        return {
            "Content-Type": "application/json",
            "PAYPAL-AUTH-ALGO": "SHA256withRSA",
            "PAYPAL-CERT-URL": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-1",
            "PAYPAL-TRANSMISSION-ID": "tx-1",
            "PAYPAL-TRANSMISSION-SIG": "c2lnbmF0dXJl",
            "PAYPAL-TRANSMISSION-TIME": "2026-02-20T09:00:00Z",
        }

    @staticmethod
    def instagram_dm(mid: str = "m_1", page_id: str = "17841400000000000", text: str = "hi") -> bytes:
        return json.dumps(
            {
                "object": "instagram",
                "entry": [
                    {
                        "id": page_id,
                        "time": 1771578000,
                        "messaging": [
                            {
                                "sender": {"id": "patient-igsid"},
                                "recipient": {"id": page_id},
                                "timestamp": 1771578000,
                                "message": {"mid": mid, "text": text},
                            }
                        ],
                    }
                ],
            }
        ).encode("utf-8")

    @staticmethod
    def instagram_headers(body: bytes, secret: str = INSTAGRAM_APP_SECRET) -> dict:
        digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return {"Content-Type": "application/json", "X-Hub-Signature-256": f"sha256={digest}"}


@pytest.fixture
def payloads() -> type[Payloads]:
    return Payloads


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT support.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def settings() -> CommonSettings:
    return CommonSettings(
        _env_file=None,
        postgres_dsn="sqlite://",
        api_key=API_KEY,
        identity_url="https://identity.test",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        razorpay_webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        razorpay_base_url="https://api.razorpay.test",
        paypal_client_id="paypal-client",
        paypal_client_secret="paypal-secret",
        paypal_webhook_id="WH-CONFIGURED",
        instagram_app_secret=INSTAGRAM_APP_SECRET,
        instagram_webhook_verify_token="ig-verify-token",
        dead_letter_encryption_key=DEAD_LETTER_KEY,
    )


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def fake_providers() -> FakeProviders:
    return FakeProviders()


@pytest.fixture
def http_client(fake_providers):
    client = httpx.Client(transport=httpx.MockTransport(fake_providers), timeout=httpx.Timeout(5.0))
    yield client
    client.close()


@pytest.fixture
def services(session_factory, settings, http_client, clock):
    return build_services(session_factory, settings, http_client, clock=clock)


@pytest.fixture
def client(services) -> TestClient:
    return TestClient(create_app(services))


@pytest.fixture
def book(services):
    """Book a pending appointment for `doc-1` at 2026-03-01T10:00Z unless told otherwise."""

    def _book(doctor_id: str = "doc-1", starts_at: datetime = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)):
        return services.appointments.book(
            doctor_id=doctor_id,
            patient_name="Asha Rao",
            patient_phone="+919800000000",
            starts_at=starts_at,
        )

    return _book
