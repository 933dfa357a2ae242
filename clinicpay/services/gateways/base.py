"""Payment gateway contract and the canonical shapes every adapter produces.

Adding a provider means one `PaymentGateway` subclass, one routing entry and
one registry entry. The orchestrator only ever sees these types.
"""

import abc
import json
import time
from collections.abc import Mapping
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Literal

import httpx
from pydantic import BaseModel

from clinicpay.common.errors import GatewayError
from clinicpay.common.logging import logger
from clinicpay.common.metrics import gateway_request_seconds
from clinicpay.common.tracing import gateway_span

# ISO 4217 minor-unit exponents that differ from 2.
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "ISK", "HUF", "TWD"}


class PaymentLink(BaseModel):
    url: str
    gateway_order_ref: str
    expires_at: datetime | None = None


class CanonicalEvent(BaseModel):
    """A provider notification normalized to the fields the orchestrator applies."""

    provider_event_id: str
    gateway_order_ref: str
    outcome: Literal["success", "failure"]
    gateway_payment_ref: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    reason: str | None = None
    event_type: str = ""


class ParseFailure(BaseModel):
    """The body was signed but is not a shape we understand."""

    reason: str


class IgnoredEvent(BaseModel):
    """A well-formed event type this system does not act on."""

    event_type: str
    reason: str = "unhandled_event_type"


ParsedEvent = CanonicalEvent | ParseFailure | IgnoredEvent


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def minor_to_major(amount_minor: int, currency: str) -> str:
    """Render minor units as the decimal string providers expect (50000 INR -> "500.00")."""

    exponent = currency_exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return str((Decimal(amount_minor) / (Decimal(10) ** exponent)).quantize(quantum))


def major_to_minor(value: Any, currency: str) -> int | None:
    """Parse a decimal amount into minor units; None when it is not a number."""

    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    scaled = (amount * (Decimal(10) ** currency_exponent(currency))).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(scaled)


def as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def load_json_object(raw_body: bytes) -> dict | None:
    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


class PaymentGateway(abc.ABC):
    """One payment provider: link creation, webhook verification, event parsing."""

    name: str = ""
    supported_currencies: frozenset[str] = frozenset()

    def __init__(self, http_client: httpx.Client, webhook_secret: str | None) -> None:
        self.http_client = http_client
        self.webhook_secret = webhook_secret

    @abc.abstractmethod
    def create_payment_link(
        self, order_id: str, amount_minor: int, currency: str, metadata: Mapping[str, str]
    ) -> PaymentLink:
        """Mint a hosted payment link. Raises GatewayError on any provider failure."""

    @abc.abstractmethod
    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """Check the delivery came from the provider. Never raises for bad input."""

    @abc.abstractmethod
    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> ParsedEvent:
        """Normalize a verified body. Never raises for malformed input."""

    def has_webhook_secret(self) -> bool:
        return bool(self.webhook_secret)

    def _request(self, operation: str, method: str, url: str, **kwargs) -> dict:
        """Send one provider call, mapping transport and HTTP failures to GatewayError."""

        start = time.perf_counter()
        with gateway_span(self.name, operation):
            try:
                resp = self.http_client.request(method, url, **kwargs)
                resp.raise_for_status()
                payload = resp.json()
            except httpx.TimeoutException as exc:
                logger.error("gateway_timeout gateway=%s operation=%s", self.name, operation)
                raise GatewayError(f"{self.name} timed out") from exc
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "gateway_http_error gateway=%s operation=%s status_code=%s",
                    self.name,
                    operation,
                    exc.response.status_code,
                )
                raise GatewayError(f"{self.name} returned HTTP {exc.response.status_code}") from exc
            except httpx.HTTPError as exc:
                logger.error("gateway_transport_error gateway=%s operation=%s error=%s", self.name, operation, exc)
                raise GatewayError(f"{self.name} is unreachable") from exc
            except ValueError as exc:
                raise GatewayError(f"{self.name} returned a non-JSON response") from exc
            finally:
                gateway_request_seconds.labels(gateway=self.name, operation=operation).observe(
                    time.perf_counter() - start
                )
        if not isinstance(payload, dict):
            raise GatewayError(f"{self.name} returned an unexpected response")
        return payload
