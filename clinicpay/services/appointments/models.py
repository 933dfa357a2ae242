"""Appointment persistence model.

`slot_bucket` is `floor(epoch(starts_at) / slot seconds)`. The partial
unique index on `(doctor_id, slot_bucket)` over slot-holding statuses is the
storage-level backstop for two bookings racing past the overlap check.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from clinicpay.common.db import Base

ACTIVE_SLOT_PREDICATE = text("status IN ('pending', 'confirmed')")


class Appointment(Base):
    """One booked consultation slot."""

    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "uq_appointments_doctor_active_slot",
            "doctor_id",
            "slot_bucket",
            unique=True,
            postgresql_where=ACTIVE_SLOT_PREDICATE,
            sqlite_where=ACTIVE_SLOT_PREDICATE,
        ),
        Index("ix_appointments_doctor_starts_at", "doctor_id", "starts_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    doctor_id: Mapped[str] = mapped_column(String, index=True)
    patient_id: Mapped[str | None] = mapped_column(String, nullable=True)
    patient_name: Mapped[str] = mapped_column(String)
    patient_phone: Mapped[str] = mapped_column(String)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    slot_bucket: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
