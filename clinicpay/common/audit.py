"""Compliance audit trail written inside the domain transaction.

Each audit row is inserted in a SAVEPOINT: it commits together with the
mutation it describes, but a failed audit insert only rolls back the
savepoint. The mutation still commits and the failure is surfaced through
`audit_write_failures_total` and an error log.
"""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, String, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, mapped_column

from clinicpay.common.db import Base
from clinicpay.common.logging import logger
from clinicpay.common.metrics import audit_write_failures_total
from clinicpay.common.outbox import JSONType

PHI_FIELDS = ("patient_name", "patient_phone", "name", "phone", "date_of_birth", "content", "text")


class AuditLog(Base):
    """Append-only record of who did what to which resource (ids only)."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    correlation_id: Mapped[str] = mapped_column(String, index=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String, index=True)
    resource_type: Mapped[str] = mapped_column(String)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


def redact_phi(metadata: dict[str, Any] | None) -> dict[str, Any] | None:
    """Replace values of PHI-looking keys; audit metadata must carry ids only."""

    if not metadata:
        return metadata
    cleaned = {}
    for key, value in metadata.items():
        if any(field in key.lower() for field in PHI_FIELDS):
            logger.warning("audit_metadata_phi_redacted key=%s", key)
            cleaned[key] = "[redacted]"
        else:
            cleaned[key] = value
    return cleaned


def record_audit(
    db,
    *,
    action: str,
    resource_type: str,
    resource_id: str | None,
    correlation_id: str,
    actor_id: str | None = None,
    status: str = "success",
    metadata: dict[str, Any] | None = None,
    service_name: str = "clinic-api",
) -> bool:
    """Insert one audit row in a savepoint; returns False when the write failed."""

    # Pending domain rows must fail here, not inside the audit savepoint.
    db.flush()
    try:
        with db.begin_nested():
            db.add(
                AuditLog(
                    correlation_id=correlation_id or "unknown",
                    actor_id=actor_id,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    status=status,
                    metadata_=redact_phi(metadata),
                )
            )
        return True
    except SQLAlchemyError as exc:
        audit_write_failures_total.labels(service=service_name).inc()
        logger.error(
            "audit_write_failed action=%s resource_type=%s resource_id=%s error=%s",
            action,
            resource_type,
            resource_id,
            exc,
        )
        return False
