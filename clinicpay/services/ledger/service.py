"""Idempotency ledger: the claim gate for externally-identified events.

Flow per event:
1. `claim` inserts `(provider, event_id)` in `pending`. The primary key makes
   this the mutual-exclusion point: of two concurrent deliveries only one
   insert succeeds, the other sees a duplicate.
2. The caller applies its side effects in the same transaction.
3. `mark_processed` or `mark_failed` records the outcome before commit.

`failed` rows are kept for manual reconciliation and are never retried here.
"""

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from clinicpay.common.logging import logger
from clinicpay.services.ledger.models import IdempotencyRecord

MAX_ERROR_LENGTH = 500


class IdempotencyLedger:
    """Claims and settles ledger rows inside the caller's session."""

    def claim(self, db, provider: str, event_id: str, correlation_id: str) -> bool:
        """Insert the `pending` claim; False when the event was already seen."""

        try:
            with db.begin_nested():
                db.add(
                    IdempotencyRecord(
                        provider=provider,
                        event_id=event_id,
                        status="pending",
                        correlation_id=correlation_id or "unknown",
                    )
                )
        except IntegrityError:
            logger.info("ledger_duplicate provider=%s event_id=%s", provider, event_id)
            return False
        return True

    def mark_processed(self, db, provider: str, event_id: str) -> None:
        db.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.provider == provider, IdempotencyRecord.event_id == event_id)
            .values(status="processed", processed_at=datetime.now(timezone.utc), error_message=None)
        )

    def mark_failed(self, db, provider: str, event_id: str, error_message: str) -> None:
        """Flag the row for manual reconciliation. `error_message` must not carry payload data."""

        db.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.provider == provider, IdempotencyRecord.event_id == event_id)
            .values(status="failed", error_message=error_message[:MAX_ERROR_LENGTH])
        )
        logger.warning("ledger_marked_failed provider=%s event_id=%s reason=%s", provider, event_id, error_message)

    def get(self, db, provider: str, event_id: str) -> IdempotencyRecord | None:
        return db.get(IdempotencyRecord, (provider, event_id))

    def list_failed(self, db, limit: int = 100) -> list[IdempotencyRecord]:
        return (
            db.execute(
                select(IdempotencyRecord)
                .where(IdempotencyRecord.status == "failed")
                .order_by(IdempotencyRecord.received_at)
                .limit(limit)
            )
            .scalars()
            .all()
        )
