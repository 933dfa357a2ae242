"""Instagram messaging webhook ingress.

Verifies the Meta signature, de-duplicates per message id and hands the
event to the conversation worker through the outbox. Message content stays
with Meta; the outbox row carries ids only. A delivery that cannot be queued
is marked failed and its body dead-lettered.
"""

import hashlib
import hmac
from collections.abc import Mapping

from clinicpay.common.audit import record_audit
from clinicpay.common.errors import InternalError, UnauthorizedError
from clinicpay.common.logging import event_id_ctx, logger, provider_ctx
from clinicpay.common.metrics import duplicate_events_skipped_total, webhook_events_total
from clinicpay.common.outbox import enqueue_event
from clinicpay.services.deadletter.service import DeadLetterQueue
from clinicpay.services.gateways.base import as_dict, load_json_object
from clinicpay.services.ledger.service import IdempotencyLedger
from clinicpay.services.webhooks.results import ApplyResult
from clinicpay.services.webhooks.signatures import verify_instagram_signature

PROVIDER = "instagram"
MESSAGE_KINDS = ("message", "reaction", "postback", "read", "message_edit")


def _messaging_items(entries: list) -> list[dict]:
    items = []
    for entry in entries:
        for item in as_dict(entry).get("messaging") or []:
            if isinstance(item, dict):
                items.append(item)
    return items


def _message_id(item: dict) -> str | None:
    for kind in MESSAGE_KINDS:
        mid = as_dict(item.get(kind)).get("mid")
        if mid:
            return str(mid)
    return None


def extract_event_id(body: dict, raw_body: bytes) -> str | None:
    """First message-level `mid` across all entries, else entry id plus a body digest."""

    entries = body.get("entry")
    if not isinstance(entries, list) or not entries or not as_dict(entries[0]).get("id"):
        return None
    for item in _messaging_items(entries):
        mid = _message_id(item)
        if mid:
            return mid
    digest = hashlib.sha256(raw_body).hexdigest()[:32]
    return f"instagram-{entries[0]['id']}-{digest}"


class InstagramIngress:
    """Meta hub handshake plus signed DM delivery handling."""

    def __init__(
        self,
        session_factory,
        ledger: IdempotencyLedger,
        app_secret: str | None,
        verify_token: str | None,
        dead_letters: DeadLetterQueue | None = None,
        service_name: str = "clinic-api",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.app_secret = app_secret
        self.verify_token = verify_token
        self.dead_letters = dead_letters
        self.service_name = service_name

    def verify_subscription(self, mode: str | None, token: str | None, challenge: str | None) -> str:
        """Return the challenge to echo when the subscription request is ours."""

        if not self.verify_token:
            raise InternalError("Instagram verify token is not configured")
        if mode != "subscribe":
            logger.warning("instagram_subscription_rejected reason=mode")
            raise UnauthorizedError("Invalid hub.mode")
        if not token or not hmac.compare_digest(token.encode("utf-8"), self.verify_token.encode("utf-8")):
            logger.warning("instagram_subscription_rejected reason=token")
            raise UnauthorizedError("Invalid verify token")
        return challenge or ""

    def _result(self, outcome: str, event_id: str | None = None, **kwargs) -> ApplyResult:
        webhook_events_total.labels(provider=PROVIDER, outcome=outcome).inc()
        return ApplyResult(outcome=outcome, provider=PROVIDER, event_id=event_id, **kwargs)

    def handle(self, raw_body: bytes, headers: Mapping[str, str], correlation_id: str) -> ApplyResult:
        if not self.app_secret:
            logger.error("webhook_secret_missing provider=instagram")
            raise InternalError("Webhook verification is not configured for instagram")

        provider_token = provider_ctx.set(PROVIDER)
        try:
            if not verify_instagram_signature(raw_body, headers, self.app_secret):
                with self.session_factory() as db:
                    record_audit(
                        db,
                        action="webhook_signature_failed",
                        resource_type="webhook",
                        resource_id=PROVIDER,
                        correlation_id=correlation_id,
                        status="failure",
                        metadata={"provider": PROVIDER},
                        service_name=self.service_name,
                    )
                    db.commit()
                return self._result("unauthorized", detail="invalid signature")

            body = load_json_object(raw_body)
            if body is None or body.get("object") != "instagram":
                return self._result("bad_request", detail="not an instagram webhook")
            event_id = extract_event_id(body, raw_body)
            if event_id is None:
                return self._result("bad_request", detail="missing entry id")

            event_token = event_id_ctx.set(event_id)
            try:
                return self._queue(body, raw_body, event_id, correlation_id)
            finally:
                event_id_ctx.reset(event_token)
        finally:
            provider_ctx.reset(provider_token)

    def _queue(self, body: dict, raw_body: bytes, event_id: str, correlation_id: str) -> ApplyResult:
        entries = body["entry"]
        page_id = str(entries[0]["id"])
        messages = [
            {
                "sender_id": str(as_dict(item.get("sender")).get("id") or ""),
                "recipient_id": str(as_dict(item.get("recipient")).get("id") or ""),
                "message_id": _message_id(item),
                "kind": next((kind for kind in MESSAGE_KINDS if kind in item), "unknown"),
            }
            for item in _messaging_items(entries)
        ]

        with self.session_factory() as db:
            if not self.ledger.claim(db, PROVIDER, event_id, correlation_id):
                db.rollback()
                duplicate_events_skipped_total.labels(service=self.service_name, source=PROVIDER).inc()
                return self._result("duplicate", event_id)
            try:
                with db.begin_nested():
                    enqueue_event(
                        db,
                        "instagram.message.received",
                        "instagram_page",
                        page_id,
                        {"page_id": page_id, "event_id": event_id, "messages": messages},
                        correlation_id,
                    )
                    db.flush()
            except Exception as exc:
                logger.exception("instagram_enqueue_failed event_id=%s", event_id)
                error_message = f"unexpected: {type(exc).__name__}"
                self.ledger.mark_failed(db, PROVIDER, event_id, error_message)
                if self.dead_letters is not None:
                    self.dead_letters.store(db, PROVIDER, event_id, raw_body, error_message, correlation_id)
                db.commit()
                raise InternalError("Webhook processing failed") from exc
            record_audit(
                db,
                action="webhook_received",
                resource_type="webhook",
                resource_id=event_id,
                correlation_id=correlation_id,
                metadata={"provider": PROVIDER, "event_id": event_id},
                service_name=self.service_name,
            )
            self.ledger.mark_processed(db, PROVIDER, event_id)
            db.commit()
        logger.info("instagram_event_queued event_id=%s messages=%s", event_id, len(messages))
        return self._result("applied", event_id, changed=True)
