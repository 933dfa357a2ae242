"""PayPal adapter (international) on the Orders v2 API.

PayPal amounts are decimal strings in major units; conversion always goes
through `Decimal` with the currency exponent. The checkout order id is the
gateway order reference. Capture webhooks carry it in
`resource.supplementary_data.related_ids.order_id`.
"""

from collections.abc import Mapping

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
    major_to_minor,
    minor_to_major,
)
from clinicpay.services.webhooks.signatures import PayPalSignatureVerifier

SUCCESS_EVENTS = {"PAYMENT.CAPTURE.COMPLETED"}
CAPTURE_FAILURE_EVENTS = {"PAYMENT.CAPTURE.DENIED": "declined", "PAYMENT.CAPTURE.DECLINED": "declined"}
ORDER_FAILURE_EVENTS = {"CHECKOUT.ORDER.VOIDED": "cancelled"}


class PayPalGateway(PaymentGateway):
    name = "paypal"
    supported_currencies = frozenset({"USD", "EUR", "GBP", "CAD", "AUD"})

    def __init__(
        self,
        http_client: httpx.Client,
        client_id: str | None,
        client_secret: str | None,
        webhook_id: str | None,
        base_url: str = "https://api-m.sandbox.paypal.com",
    ) -> None:
        super().__init__(http_client, webhook_id)
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.verifier = PayPalSignatureVerifier(http_client, self.base_url, client_id or "", client_secret or "")

    def _access_token(self) -> str:
        if not (self.client_id and self.client_secret):
            raise GatewayError("paypal is not configured")
        try:
            return self.verifier.access_token()
        except httpx.TimeoutException as exc:
            raise GatewayError("paypal timed out") from exc
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            raise GatewayError("paypal authentication failed") from exc

    def create_payment_link(
        self, order_id: str, amount_minor: int, currency: str, metadata: Mapping[str, str]
    ) -> PaymentLink:
        token = self._access_token()
        payload = self._request(
            "create_payment_link",
            "POST",
            f"{self.base_url}/v2/checkout/orders",
            headers={"Authorization": f"Bearer {token}", "PayPal-Request-Id": order_id},
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "reference_id": order_id,
                        "custom_id": order_id,
                        "description": f"Appointment {metadata.get('appointment_id', order_id)}",
                        "amount": {"currency_code": currency, "value": minor_to_major(amount_minor, currency)},
                    }
                ],
            },
        )
        paypal_order_id = payload.get("id")
        approve = next(
            (link.get("href") for link in payload.get("links") or [] if link.get("rel") == "approve"),
            None,
        )
        if not paypal_order_id or not approve:
            raise GatewayError("paypal returned an order without id or approval link")
        return PaymentLink(url=approve, gateway_order_ref=paypal_order_id, expires_at=None)

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            return False
        return self.verifier(raw_body, headers, self.webhook_secret)

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> ParsedEvent:
        body = load_json_object(raw_body)
        if body is None:
            return ParseFailure(reason="body is not a JSON object")
        event_type = body.get("event_type")
        event_id = body.get("id")
        if not isinstance(event_type, str) or not event_type:
            return ParseFailure(reason="missing event_type")
        if event_type not in SUCCESS_EVENTS and event_type not in CAPTURE_FAILURE_EVENTS and event_type not in ORDER_FAILURE_EVENTS:
            return IgnoredEvent(event_type=event_type)
        if not isinstance(event_id, str) or not event_id:
            return ParseFailure(reason="missing event id")
        resource = body.get("resource")
        if not isinstance(resource, dict):
            return ParseFailure(reason="missing resource")

        if event_type in ORDER_FAILURE_EVENTS:
            if not isinstance(resource.get("id"), str) or not resource["id"]:
                return ParseFailure(reason="missing order id")
            return CanonicalEvent(
                provider_event_id=event_id,
                gateway_order_ref=resource["id"],
                outcome="failure",
                reason=ORDER_FAILURE_EVENTS[event_type],
                event_type=event_type,
            )

        related = as_dict(as_dict(resource.get("supplementary_data")).get("related_ids"))
        order_ref = related.get("order_id")
        if not isinstance(order_ref, str) or not order_ref:
            return ParseFailure(reason="missing related order id")

        if event_type in CAPTURE_FAILURE_EVENTS:
            return CanonicalEvent(
                provider_event_id=event_id,
                gateway_order_ref=order_ref,
                outcome="failure",
                gateway_payment_ref=resource.get("id"),
                reason=CAPTURE_FAILURE_EVENTS[event_type],
                event_type=event_type,
            )

        amount = as_dict(resource.get("amount"))
        currency = amount.get("currency_code")
        if not isinstance(currency, str) or len(currency) != 3:
            return ParseFailure(reason="missing currency")
        amount_minor = major_to_minor(amount.get("value"), currency)
        if amount_minor is None:
            return ParseFailure(reason="unparseable amount")
        return CanonicalEvent(
            provider_event_id=event_id,
            gateway_order_ref=order_ref,
            outcome="success",
            gateway_payment_ref=resource.get("id"),
            amount_minor=amount_minor,
            currency=currency.upper(),
            event_type=event_type,
        )
