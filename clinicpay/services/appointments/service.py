"""Appointment booking and lifecycle.

Owns the appointment state machine. Every status write is guarded by
`(id, status, state_version)`; an update that matches no row lost a race and
is reported as a conflict. Booking is an overlap read plus insert in one
transaction, with the partial unique index catching the race the read cannot.
`confirm_on_payment` is the only path to `confirmed` and is called by the
payment orchestrator inside its own transaction.
"""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from clinicpay.common.audit import record_audit
from clinicpay.common.errors import ConflictError, NotFoundError, ValidationError
from clinicpay.common.logging import correlation_id_ctx, logger
from clinicpay.common.metrics import booking_conflicts_total
from clinicpay.common.outbox import enqueue_event
from clinicpay.common.state_machine import SLOT_HOLDING_STATUSES, validate_transition
from clinicpay.services.appointments.models import Appointment

SLOT_TAKEN_MESSAGE = "This time slot is no longer available"


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize(appointment: Appointment) -> Appointment:
    # Some drivers hand back naive timestamps.
    appointment.starts_at = as_utc(appointment.starts_at)
    appointment.ends_at = as_utc(appointment.ends_at)
    return appointment


class AppointmentService:
    """Books, confirms, cancels and completes appointments."""

    def __init__(
        self,
        session_factory,
        slot_minutes: int = 30,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        service_name: str = "clinic-api",
    ) -> None:
        self.session_factory = session_factory
        self.slot = timedelta(minutes=slot_minutes)
        self.clock = clock
        self.service_name = service_name

    def slot_bucket(self, starts_at: datetime) -> int:
        return int(as_utc(starts_at).timestamp()) // int(self.slot.total_seconds())

    def _owned(self, db, appointment_id: str, doctor_id: str, for_update: bool = False) -> Appointment:
        """Load an appointment the doctor owns; anything else is indistinguishable from missing."""

        stmt = select(Appointment).where(Appointment.id == appointment_id)
        if for_update:
            stmt = stmt.with_for_update()
        appointment = db.execute(stmt).scalar_one_or_none()
        if appointment is None or appointment.doctor_id != doctor_id:
            raise NotFoundError("Appointment not found")
        return appointment

    def _transition(self, db, appointment: Appointment, new_status: str) -> None:
        validate_transition(appointment.status, new_status)
        from_status = appointment.status
        current_version = appointment.state_version
        result = db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment.id,
                Appointment.status == from_status,
                Appointment.state_version == current_version,
            )
            .values(status=new_status, state_version=current_version + 1, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(f"Appointment {appointment.id} was modified concurrently")
        appointment.status = new_status
        appointment.state_version = current_version + 1
        logger.info(
            "appointment_transition appointment_id=%s from=%s to=%s", appointment.id, from_status, new_status
        )

    def _emit(self, db, topic: str, appointment: Appointment, **extra) -> None:
        payload = {
            "appointment_id": appointment.id,
            "doctor_id": appointment.doctor_id,
            "starts_at": as_utc(appointment.starts_at).isoformat(),
            "status": appointment.status,
            **extra,
        }
        enqueue_event(db, topic, "appointment", appointment.id, payload, correlation_id_ctx.get())

    def book(
        self,
        doctor_id: str,
        patient_name: str,
        patient_phone: str,
        starts_at: datetime,
        notes: str | None = None,
        patient_id: str | None = None,
        actor_id: str | None = None,
    ) -> Appointment:
        """Reserve a `pending` slot. `actor_id` is the calling doctor, None for internal callers."""

        if actor_id is not None and actor_id != doctor_id:
            raise NotFoundError("Doctor not found")
        starts_at = as_utc(starts_at)
        if starts_at < self.clock():
            raise ValidationError("Cannot book appointments in the past")
        ends_at = starts_at + self.slot

        with self.session_factory() as db:
            clash = db.execute(
                select(Appointment.id)
                .where(
                    Appointment.doctor_id == doctor_id,
                    Appointment.status.in_(SLOT_HOLDING_STATUSES),
                    Appointment.starts_at < ends_at,
                    Appointment.ends_at > starts_at,
                )
                .limit(1)
            ).scalar_one_or_none()
            if clash is not None:
                booking_conflicts_total.labels(service=self.service_name).inc()
                logger.info("booking_conflict doctor_id=%s reason=overlap", doctor_id)
                raise ConflictError(SLOT_TAKEN_MESSAGE)

            appointment = Appointment(
                doctor_id=doctor_id,
                patient_id=patient_id,
                patient_name=patient_name,
                patient_phone=patient_phone,
                starts_at=starts_at,
                ends_at=ends_at,
                slot_bucket=self.slot_bucket(starts_at),
                status="pending",
                notes=notes,
                state_version=0,
            )
            db.add(appointment)
            try:
                db.flush()
            except IntegrityError as exc:
                db.rollback()
                booking_conflicts_total.labels(service=self.service_name).inc()
                logger.info("booking_conflict doctor_id=%s reason=unique_slot", doctor_id)
                raise ConflictError(SLOT_TAKEN_MESSAGE) from exc

            self._emit(db, "appointments.booked", appointment)
            record_audit(
                db,
                action="appointment.booked",
                resource_type="appointment",
                resource_id=appointment.id,
                correlation_id=correlation_id_ctx.get(),
                actor_id=actor_id,
                metadata={"doctor_id": doctor_id},
                service_name=self.service_name,
            )
            db.commit()
        logger.info("appointment_booked appointment_id=%s doctor_id=%s", appointment.id, doctor_id)
        return _normalize(appointment)

    def confirm_on_payment(self, db, appointment_id: str, event_id: str, order_id: str) -> bool:
        """Move `pending -> confirmed` in the caller's transaction.

        Returns False when the appointment is already confirmed or completed
        (replays and out-of-order deliveries). A cancelled appointment raises
        InvalidStateError and the caller records the event for reconciliation.
        """

        appointment = db.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment not found")
        if appointment.status in ("confirmed", "completed"):
            logger.info("appointment_already_confirmed appointment_id=%s event_id=%s", appointment_id, event_id)
            return False
        self._transition(db, appointment, "confirmed")
        self._emit(db, "appointments.confirmed", appointment, order_id=order_id, source_event_id=event_id)
        record_audit(
            db,
            action="appointment.confirmed",
            resource_type="appointment",
            resource_id=appointment.id,
            correlation_id=correlation_id_ctx.get(),
            metadata={"order_id": order_id, "event_id": event_id},
            service_name=self.service_name,
        )
        return True

    def cancel(self, appointment_id: str, doctor_id: str) -> Appointment:
        """Cancel on behalf of the owning doctor; cancelling twice is a no-op."""

        with self.session_factory() as db:
            appointment = self._owned(db, appointment_id, doctor_id, for_update=True)
            if appointment.status == "cancelled":
                return _normalize(appointment)
            self._transition(db, appointment, "cancelled")
            self._emit(db, "appointments.cancelled", appointment)
            record_audit(
                db,
                action="appointment.cancelled",
                resource_type="appointment",
                resource_id=appointment.id,
                correlation_id=correlation_id_ctx.get(),
                actor_id=doctor_id,
                service_name=self.service_name,
            )
            db.commit()
        return _normalize(appointment)

    def complete(self, appointment_id: str, doctor_id: str) -> Appointment:
        with self.session_factory() as db:
            appointment = self._owned(db, appointment_id, doctor_id, for_update=True)
            if appointment.status == "completed":
                return _normalize(appointment)
            self._transition(db, appointment, "completed")
            record_audit(
                db,
                action="appointment.completed",
                resource_type="appointment",
                resource_id=appointment.id,
                correlation_id=correlation_id_ctx.get(),
                actor_id=doctor_id,
                service_name=self.service_name,
            )
            db.commit()
        return _normalize(appointment)

    def get(self, appointment_id: str, doctor_id: str) -> Appointment:
        with self.session_factory() as db:
            return _normalize(self._owned(db, appointment_id, doctor_id))

    def list_for_doctor(self, doctor_id: str, status: str | None = None, limit: int = 100) -> list[Appointment]:
        stmt = select(Appointment).where(Appointment.doctor_id == doctor_id)
        if status:
            stmt = stmt.where(Appointment.status == status)
        with self.session_factory() as db:
            rows = db.execute(stmt.order_by(Appointment.starts_at).limit(limit)).scalars().all()
        return [_normalize(row) for row in rows]
