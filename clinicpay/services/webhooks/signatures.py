"""Webhook signature verification for every inbound provider.

All verifiers share one contract:

    verify(raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool

They operate on the exact bytes received; re-serializing a parsed body
changes its byte layout and breaks the signature. Bad or missing signatures
return False. Verifiers never log the signature or the body.
"""

import hashlib
import hmac
import json
import time
from collections.abc import Mapping

import httpx

from clinicpay.common.logging import logger

INSTAGRAM_SIGNATURE_PREFIX = "sha256="
PAYPAL_TRANSMISSION_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)


def normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Lower-case header names; provider header casing is not reliable."""

    return {str(key).lower(): value for key, value in headers.items()}


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def constant_time_compare(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def verify_razorpay_signature(raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
    """`X-Razorpay-Signature` is the hex HMAC-SHA256 of the body with the webhook secret."""

    signature = normalize_headers(headers).get("x-razorpay-signature")
    if not signature:
        logger.warning("webhook_signature_missing header=X-Razorpay-Signature")
        return False
    if not constant_time_compare(signature.strip().lower(), compute_hmac_sha256(secret, raw_body)):
        logger.warning("webhook_signature_invalid provider=razorpay")
        return False
    return True


def verify_instagram_signature(raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
    """`X-Hub-Signature-256` is `sha256=<hex HMAC-SHA256 of the body with the app secret>`."""

    signature = normalize_headers(headers).get("x-hub-signature-256")
    if not signature:
        logger.warning("webhook_signature_missing header=X-Hub-Signature-256")
        return False
    if not signature.startswith(INSTAGRAM_SIGNATURE_PREFIX):
        logger.warning("webhook_signature_malformed provider=instagram")
        return False
    received = signature[len(INSTAGRAM_SIGNATURE_PREFIX):].strip().lower()
    if not constant_time_compare(received, compute_hmac_sha256(secret, raw_body)):
        logger.warning("webhook_signature_invalid provider=instagram")
        return False
    return True


class PayPalSignatureVerifier:
    """Provider-side verification through PayPal's verify-webhook-signature API.

    PayPal signs with certificates rather than a shared secret, so the "secret"
    here is the webhook id registered in the PayPal dashboard. The OAuth token
    is cached until shortly before it expires.
    """

    def __init__(self, http_client: httpx.Client, base_url: str, client_id: str, client_secret: str) -> None:
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self._token: str | None = None
        self._token_expires_at = 0.0

    def access_token(self) -> str:
        """Fetch (or reuse) a client-credentials token. Raises httpx errors."""

        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        resp = self.http_client.post(
            f"{self.base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        resp.raise_for_status()
        payload = resp.json()
        self._token = payload["access_token"]
        # Refresh one minute early.
        self._token_expires_at = time.monotonic() + max(0, int(payload.get("expires_in", 300)) - 60)
        return self._token

    def __call__(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        normalized = normalize_headers(headers)
        missing = [name for name in PAYPAL_TRANSMISSION_HEADERS if not normalized.get(name)]
        if missing:
            logger.warning("webhook_signature_missing provider=paypal headers=%s", missing)
            return False
        try:
            webhook_event = json.loads(raw_body)
        except ValueError:
            logger.warning("webhook_signature_invalid provider=paypal reason=body_not_json")
            return False
        try:
            resp = self.http_client.post(
                f"{self.base_url}/v1/notifications/verify-webhook-signature",
                headers={"Authorization": f"Bearer {self.access_token()}"},
                json={
                    "auth_algo": normalized["paypal-auth-algo"],
                    "cert_url": normalized["paypal-cert-url"],
                    "transmission_id": normalized["paypal-transmission-id"],
                    "transmission_sig": normalized["paypal-transmission-sig"],
                    "transmission_time": normalized["paypal-transmission-time"],
                    "webhook_id": secret,
                    "webhook_event": webhook_event,
                },
            )
            resp.raise_for_status()
            status = resp.json().get("verification_status")
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.error("webhook_signature_check_error provider=paypal error=%s", exc)
            return False
        if status != "SUCCESS":
            logger.warning("webhook_signature_invalid provider=paypal verification_status=%s", status)
            return False
        return True
