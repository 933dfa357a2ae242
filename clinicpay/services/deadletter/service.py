"""Dead-letter queue for verified webhook deliveries that could not be applied.

The idempotency ledger only keeps ids and an error string for a `failed`
event. This table keeps the raw body as well, encrypted with Fernet, so an
operator can inspect and replay it. Only ids are ever logged or audited.
"""

from collections.abc import Callable
from datetime import datetime, timezone
from uuid import uuid4

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select

from clinicpay.common.audit import record_audit
from clinicpay.common.errors import InternalError, NotFoundError
from clinicpay.common.logging import correlation_id_ctx, logger
from clinicpay.common.metrics import dead_letters_stored_total
from clinicpay.services.deadletter.models import DeadLetterWebhook
from clinicpay.services.deadletter.schemas import DeadLetterDetail, DeadLetterSummary
from clinicpay.services.ledger.service import MAX_ERROR_LENGTH


def build_cipher(key: str | None) -> Fernet | None:
    return Fernet(key.encode("ascii")) if key else None


class DeadLetterQueue:
    def __init__(
        self,
        session_factory,
        cipher: Fernet | None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        service_name: str = "clinic-api",
    ) -> None:
        self.session_factory = session_factory
        self.cipher = cipher
        self.clock = clock
        self.service_name = service_name

    def store(
        self, db, provider: str, event_id: str, raw_body: bytes, error_message: str, correlation_id: str
    ) -> str | None:
        """Stage the encrypted delivery in the caller's transaction.

        Returns the dead-letter id, or None when no encryption key is
        configured; plaintext bodies are never stored.
        """

        if self.cipher is None:
            logger.warning("dead_letter_skipped provider=%s event_id=%s reason=no_key", provider, event_id)
            return None
        row = DeadLetterWebhook(
            id=str(uuid4()),
            provider=provider,
            event_id=event_id,
            correlation_id=correlation_id or "unknown",
            payload_encrypted=self.cipher.encrypt(raw_body).decode("ascii"),
            error_message=error_message[:MAX_ERROR_LENGTH],
        )
        db.add(row)
        record_audit(
            db,
            action="dead_letter_stored",
            resource_type="dead_letter_webhook",
            resource_id=row.id,
            correlation_id=correlation_id,
            metadata={"provider": provider, "event_id": event_id},
            service_name=self.service_name,
        )
        dead_letters_stored_total.labels(service=self.service_name, provider=provider).inc()
        logger.info("dead_letter_stored id=%s provider=%s event_id=%s", row.id, provider, event_id)
        return row.id

    def list_recent(
        self,
        provider: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[DeadLetterSummary]:
        query = select(DeadLetterWebhook)
        if provider:
            query = query.where(DeadLetterWebhook.provider == provider)
        if since is not None:
            query = query.where(DeadLetterWebhook.failed_at >= since)
        if until is not None:
            query = query.where(DeadLetterWebhook.failed_at <= until)
        with self.session_factory() as db:
            rows = db.execute(query.order_by(DeadLetterWebhook.failed_at.desc()).limit(limit)).scalars().all()
            return [DeadLetterSummary.model_validate(row) for row in rows]

    def get(self, dead_letter_id: str, actor_id: str | None = None) -> DeadLetterDetail:
        """Decrypt one entry for review. Every read is audited."""

        with self.session_factory() as db:
            row = db.get(DeadLetterWebhook, dead_letter_id)
            if row is None:
                raise NotFoundError("Dead letter not found")
            if self.cipher is None:
                raise InternalError("Dead-letter encryption key is not configured")
            try:
                payload = self.cipher.decrypt(row.payload_encrypted.encode("ascii"))
            except InvalidToken as exc:
                logger.error("dead_letter_decrypt_failed id=%s", dead_letter_id)
                raise InternalError("Failed to decrypt dead letter payload") from exc
            record_audit(
                db,
                action="dead_letter_accessed",
                resource_type="dead_letter_webhook",
                resource_id=row.id,
                correlation_id=correlation_id_ctx.get(),
                actor_id=actor_id,
                metadata={"provider": row.provider, "event_id": row.event_id},
                service_name=self.service_name,
            )
            db.commit()
            summary = DeadLetterSummary.model_validate(row)
        return DeadLetterDetail(**summary.model_dump(), payload=payload.decode("utf-8", errors="replace"))

    def request_reprocess(self, dead_letter_id: str, actor_id: str | None = None) -> DeadLetterSummary:
        """Flag an entry for replay. The row is kept until the replay succeeds."""

        with self.session_factory() as db:
            row = db.get(DeadLetterWebhook, dead_letter_id)
            if row is None:
                raise NotFoundError("Dead letter not found")
            row.reprocess_requested_at = self.clock()
            record_audit(
                db,
                action="dead_letter_reprocess_requested",
                resource_type="dead_letter_webhook",
                resource_id=row.id,
                correlation_id=correlation_id_ctx.get(),
                actor_id=actor_id,
                metadata={"provider": row.provider, "event_id": row.event_id},
                service_name=self.service_name,
            )
            db.commit()
            logger.info("dead_letter_reprocess_requested id=%s provider=%s", row.id, row.provider)
            return DeadLetterSummary.model_validate(row)
