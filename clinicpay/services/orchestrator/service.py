"""Payment orchestration.

Two flows meet here:

* `create_payment_link` reserves a `created` order in one transaction, calls
  the region's gateway outside any transaction, then stores the reference in a
  second transaction. A gateway failure leaves the order `created` without a
  reference; the next call reuses it. At most one order per appointment is
  `created` at a time: a live link on other terms is a conflict, and a lapsed
  or unlinked one is retired before a new order is reserved.
* `apply_payment_event` runs verify -> parse -> ledger claim -> apply -> settle
  for one webhook delivery. The claim, the order/appointment transitions and
  the outbox rows commit together. Domain rejections roll back only the apply
  savepoint, leave the ledger row `failed` and park the encrypted body in the
  dead-letter table for manual reconciliation.
"""

from collections.abc import Callable, Mapping
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from clinicpay.common.audit import record_audit
from clinicpay.common.errors import (
    AppError,
    ConflictError,
    GatewayError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from clinicpay.common.logging import correlation_id_ctx, event_id_ctx, logger, provider_ctx
from clinicpay.common.metrics import (
    duplicate_events_skipped_total,
    payment_link_failures_total,
    payment_links_created_total,
    webhook_events_total,
)
from clinicpay.common.outbox import enqueue_event
from clinicpay.common.state_machine import PAYMENT_ORDER_TRANSITIONS, validate_transition
from clinicpay.services.appointments.models import Appointment
from clinicpay.services.appointments.service import AppointmentService, as_utc
from clinicpay.services.deadletter.service import DeadLetterQueue
from clinicpay.services.gateways.base import CanonicalEvent, IgnoredEvent, ParseFailure, PaymentGateway
from clinicpay.services.gateways.routing import GatewayRoutingRule
from clinicpay.services.ledger.service import IdempotencyLedger
from clinicpay.services.orchestrator.models import PaymentOrder
from clinicpay.services.orchestrator.schemas import PaymentLinkResult, ReconciliationReport
from clinicpay.services.webhooks.results import ApplyResult


class PaymentOrchestrator:
    """Owns payment orders and applies verified provider events exactly once."""

    def __init__(
        self,
        session_factory,
        gateways: Mapping[str, PaymentGateway],
        routing: GatewayRoutingRule,
        ledger: IdempotencyLedger,
        appointments: AppointmentService,
        dead_letters: DeadLetterQueue | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        service_name: str = "clinic-api",
    ) -> None:
        self.session_factory = session_factory
        self.gateways = dict(gateways)
        self.routing = routing
        self.ledger = ledger
        self.appointments = appointments
        self.dead_letters = dead_letters
        self.clock = clock
        self.service_name = service_name

    @property
    def providers(self) -> set[str]:
        return set(self.gateways)

    # -- payment links -------------------------------------------------------

    def create_payment_link(
        self,
        appointment_id: str,
        amount_minor: int,
        currency: str,
        doctor_region: str | None,
        actor_id: str | None = None,
    ) -> PaymentLinkResult:
        """Mint (or re-issue) the checkout link for a pending appointment."""

        currency = (currency or "").strip().upper()
        if not isinstance(amount_minor, int) or amount_minor <= 0:
            raise ValidationError("amount_minor must be a positive integer")
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("currency must be a 3-letter ISO code")
        gateway_name = self.routing.select(doctor_region)
        adapter = self.gateways.get(gateway_name)
        if adapter is None:
            raise ValidationError(f"Payment gateway {gateway_name} is not available")
        if currency not in adapter.supported_currencies:
            raise ValidationError(f"{gateway_name} does not accept {currency}")

        now = self.clock()
        with self.session_factory() as db:
            appointment = db.get(Appointment, appointment_id)
            # Same answer for unknown and foreign appointments.
            if appointment is None or (actor_id is not None and appointment.doctor_id != actor_id):
                raise ValidationError("Appointment not found")
            if appointment.status != "pending":
                raise ValidationError("Appointment is not awaiting payment")

            paid = db.execute(
                select(PaymentOrder.id).where(
                    PaymentOrder.appointment_id == appointment_id, PaymentOrder.status == "paid"
                )
            ).first()
            if paid is not None:
                raise InvalidStateError("Appointment is already paid")

            open_orders = (
                db.execute(
                    select(PaymentOrder)
                    .where(PaymentOrder.appointment_id == appointment_id, PaymentOrder.status.in_(("created", "failed")))
                    .with_for_update()
                )
                .scalars()
                .all()
            )

            order = None
            for open_order in open_orders:
                if open_order.status == "failed":
                    # Its link may still accept a retry; a new link replaces it.
                    self._retire(db, open_order, notify=False)
                    continue
                same_terms = (open_order.gateway, open_order.amount_minor, open_order.currency) == (
                    gateway_name,
                    amount_minor,
                    currency,
                )
                linked = bool(open_order.gateway_order_ref and open_order.payment_url)
                lapsed = linked and open_order.expires_at is not None and as_utc(open_order.expires_at) <= now
                if linked and not lapsed:
                    if not same_terms:
                        raise ConflictError(
                            f"Appointment already has a live payment link for "
                            f"{open_order.amount_minor} {open_order.currency} on {open_order.gateway}"
                        )
                    logger.info("payment_link_reissued order_id=%s gateway=%s", open_order.id, gateway_name)
                    return PaymentLinkResult(
                        order_id=open_order.id,
                        url=open_order.payment_url,
                        gateway=gateway_name,
                        gateway_order_ref=open_order.gateway_order_ref,
                    )
                if same_terms and not linked:
                    order = open_order
                else:
                    self._retire(db, open_order, notify=lapsed)

            if order is None:
                order = PaymentOrder(
                    appointment_id=appointment_id,
                    gateway=gateway_name,
                    amount_minor=amount_minor,
                    currency=currency,
                    status="created",
                    state_version=0,
                )
                db.add(order)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ConflictError("Another payment link for this appointment is being created") from exc
            order_id = order.id
            doctor_id = appointment.doctor_id

        try:
            link = adapter.create_payment_link(
                order_id,
                amount_minor,
                currency,
                {"order_id": order_id, "appointment_id": appointment_id, "doctor_id": doctor_id},
            )
        except GatewayError:
            payment_link_failures_total.labels(gateway=gateway_name).inc()
            logger.warning("payment_link_failed order_id=%s gateway=%s", order_id, gateway_name)
            raise

        with self.session_factory() as db:
            result = db.execute(
                update(PaymentOrder)
                .where(PaymentOrder.id == order_id, PaymentOrder.status == "created")
                .values(
                    gateway_order_ref=link.gateway_order_ref,
                    payment_url=link.url,
                    expires_at=link.expires_at,
                    state_version=PaymentOrder.state_version + 1,
                    updated_at=self.clock(),
                )
            )
            if result.rowcount != 1:
                db.rollback()
                raise ConflictError(f"Payment order {order_id} changed while the link was being created")
            record_audit(
                db,
                action="payment.link_created",
                resource_type="payment_order",
                resource_id=order_id,
                correlation_id=correlation_id_ctx.get(),
                actor_id=actor_id,
                metadata={"appointment_id": appointment_id, "gateway": gateway_name},
                service_name=self.service_name,
            )
            db.commit()
        payment_links_created_total.labels(gateway=gateway_name).inc()
        logger.info("payment_link_created order_id=%s gateway=%s", order_id, gateway_name)
        return PaymentLinkResult(
            order_id=order_id, url=link.url, gateway=gateway_name, gateway_order_ref=link.gateway_order_ref
        )

    def get_payment(self, order_id: str, doctor_id: str) -> PaymentOrder:
        with self.session_factory() as db:
            row = db.execute(
                select(PaymentOrder, Appointment.doctor_id)
                .join(Appointment, Appointment.id == PaymentOrder.appointment_id)
                .where(PaymentOrder.id == order_id)
            ).one_or_none()
        if row is None or row[1] != doctor_id:
            raise NotFoundError("Payment not found")
        return row[0]

    # -- webhooks ------------------------------------------------------------

    def _result(self, outcome: str, provider: str, event_id: str | None = None, **kwargs) -> ApplyResult:
        webhook_events_total.labels(provider=provider, outcome=outcome).inc()
        return ApplyResult(outcome=outcome, provider=provider, event_id=event_id, **kwargs)

    def _record_signature_failure(self, provider: str, correlation_id: str) -> None:
        with self.session_factory() as db:
            record_audit(
                db,
                action="webhook_signature_failed",
                resource_type="webhook",
                resource_id=provider,
                correlation_id=correlation_id,
                status="failure",
                metadata={"provider": provider},
                service_name=self.service_name,
            )
            db.commit()

    def apply_payment_event(
        self, provider: str, raw_body: bytes, headers: Mapping[str, str], correlation_id: str
    ) -> ApplyResult:
        """Apply one payment webhook delivery. Raises only for deployment or unexpected faults."""

        adapter = self.gateways.get(provider)
        if adapter is None:
            raise NotFoundError(f"Unknown webhook provider {provider}")
        if not adapter.has_webhook_secret():
            logger.error("webhook_secret_missing provider=%s", provider)
            raise InternalError(f"Webhook verification is not configured for {provider}")

        provider_token = provider_ctx.set(provider)
        try:
            if not adapter.verify_webhook(raw_body, headers):
                self._record_signature_failure(provider, correlation_id)
                return self._result("unauthorized", provider, detail="invalid signature")

            parsed = adapter.parse_event(raw_body, headers)
            if isinstance(parsed, ParseFailure):
                logger.warning("webhook_unparseable provider=%s reason=%s", provider, parsed.reason)
                return self._result("bad_request", provider, detail=parsed.reason)
            if isinstance(parsed, IgnoredEvent):
                logger.info("webhook_ignored provider=%s event_type=%s", provider, parsed.event_type)
                return self._result("ignored", provider, detail=parsed.event_type)

            event_token = event_id_ctx.set(parsed.provider_event_id)
            try:
                return self._claim_and_apply(provider, parsed, raw_body, correlation_id)
            finally:
                event_id_ctx.reset(event_token)
        finally:
            provider_ctx.reset(provider_token)

    def _fail(self, db, provider: str, event_id: str, raw_body: bytes, error_message: str, correlation_id: str) -> None:
        self.ledger.mark_failed(db, provider, event_id, error_message)
        if self.dead_letters is not None:
            self.dead_letters.store(db, provider, event_id, raw_body, error_message, correlation_id)

    def _claim_and_apply(
        self, provider: str, event: CanonicalEvent, raw_body: bytes, correlation_id: str
    ) -> ApplyResult:
        event_id = event.provider_event_id
        with self.session_factory() as db:
            if not self.ledger.claim(db, provider, event_id, correlation_id):
                db.rollback()
                duplicate_events_skipped_total.labels(service=self.service_name, source=provider).inc()
                return self._result("duplicate", provider, event_id)

            order = db.execute(
                select(PaymentOrder)
                .where(PaymentOrder.gateway == provider, PaymentOrder.gateway_order_ref == event.gateway_order_ref)
                .with_for_update()
            ).scalar_one_or_none()
            if order is None:
                self._fail(db, provider, event_id, raw_body, "order_not_found", correlation_id)
                db.commit()
                return self._result("not_found", provider, event_id, detail="order not found")

            try:
                with db.begin_nested():
                    changed = self._apply(db, order, event)
            except AppError as exc:
                self._fail(db, provider, event_id, raw_body, f"{exc.code}: {exc.message}", correlation_id)
                db.commit()
                return self._result("rejected", provider, event_id, detail=exc.message)
            except Exception as exc:
                logger.exception("webhook_apply_crashed provider=%s event_id=%s", provider, event_id)
                self._fail(db, provider, event_id, raw_body, f"unexpected: {type(exc).__name__}", correlation_id)
                db.commit()
                raise InternalError("Webhook processing failed") from exc

            self.ledger.mark_processed(db, provider, event_id)
            db.commit()

        logger.info(
            "webhook_applied provider=%s event_id=%s order_id=%s outcome=%s changed=%s",
            provider,
            event_id,
            order.id,
            event.outcome,
            changed,
        )
        return self._result("applied", provider, event_id, changed=changed)

    def _transition(self, db, order: PaymentOrder, new_status: str, **values) -> None:
        validate_transition(order.status, new_status, PAYMENT_ORDER_TRANSITIONS)
        from_status = order.status
        current_version = order.state_version
        result = db.execute(
            update(PaymentOrder)
            .where(
                PaymentOrder.id == order.id,
                PaymentOrder.status == from_status,
                PaymentOrder.state_version == current_version,
            )
            .values(status=new_status, state_version=current_version + 1, updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(f"Payment order {order.id} was modified concurrently")
        order.status = new_status
        order.state_version = current_version + 1
        for key, value in values.items():
            setattr(order, key, value)

    def _emit_failed(self, db, order: PaymentOrder, status: str, reason: str | None) -> None:
        enqueue_event(
            db,
            "payments.failed",
            "payment_order",
            order.id,
            {
                "order_id": order.id,
                "appointment_id": order.appointment_id,
                "gateway": order.gateway,
                "status": status,
                "reason": reason,
            },
            correlation_id_ctx.get(),
        )

    def _retire(self, db, order: PaymentOrder, notify: bool) -> None:
        """Expire a `created` order that no longer has a payable link."""

        self._transition(db, order, "expired")
        if notify:
            self._emit_failed(db, order, "expired", "expired")
        record_audit(
            db,
            action="payment.expired" if notify else "payment.superseded",
            resource_type="payment_order",
            resource_id=order.id,
            correlation_id=correlation_id_ctx.get(),
            metadata={"gateway": order.gateway, "appointment_id": order.appointment_id},
            service_name=self.service_name,
        )

    def _apply(self, db, order: PaymentOrder, event: CanonicalEvent) -> bool:
        """Returns whether state changed. Raises AppError for events that must not be applied."""

        if event.outcome == "success":
            if order.status == "paid":
                return False
            appointment = db.get(Appointment, order.appointment_id)
            if appointment is not None and appointment.status in ("confirmed", "completed"):
                logger.warning(
                    "payment_for_confirmed_appointment order_id=%s appointment_id=%s event_id=%s",
                    order.id,
                    order.appointment_id,
                    event.provider_event_id,
                )
                return False
            if event.amount_minor != order.amount_minor or event.currency != order.currency:
                raise ValidationError(
                    f"Amount mismatch for order {order.id}: expected {order.amount_minor} {order.currency}"
                )
            self._transition(db, order, "paid", gateway_payment_ref=event.gateway_payment_ref)
            self.appointments.confirm_on_payment(db, order.appointment_id, event.provider_event_id, order.id)
            record_audit(
                db,
                action="payment.paid",
                resource_type="payment_order",
                resource_id=order.id,
                correlation_id=correlation_id_ctx.get(),
                metadata={"gateway": order.gateway, "event_id": event.provider_event_id},
                service_name=self.service_name,
            )
            return True

        target = "expired" if event.reason == "expired" else "failed"
        if order.status == "paid":
            logger.info("stale_failure_ignored order_id=%s event_id=%s", order.id, event.provider_event_id)
            return False
        if order.status in (target, "expired"):
            return False
        self._transition(db, order, target)
        self._emit_failed(db, order, target, event.reason)
        record_audit(
            db,
            action=f"payment.{target}",
            resource_type="payment_order",
            resource_id=order.id,
            correlation_id=correlation_id_ctx.get(),
            metadata={"gateway": order.gateway, "event_id": event.provider_event_id, "reason": event.reason},
            service_name=self.service_name,
        )
        return True

    # -- reconciliation ------------------------------------------------------

    def expire_stale_orders(self, now: datetime | None = None) -> int:
        """Move `created` orders whose link has lapsed to `expired`."""

        now = now or self.clock()
        expired = 0
        with self.session_factory() as db:
            orders = (
                db.execute(
                    select(PaymentOrder).where(
                        PaymentOrder.status == "created",
                        PaymentOrder.expires_at.is_not(None),
                        PaymentOrder.expires_at < now,
                    )
                )
                .scalars()
                .all()
            )
            for order in orders:
                try:
                    with db.begin_nested():
                        self._transition(db, order, "expired")
                        self._emit_failed(db, order, "expired", "expired")
                    expired += 1
                except ConflictError:
                    logger.info("order_expiry_skipped order_id=%s reason=concurrent_update", order.id)
            db.commit()
        logger.info("stale_orders_expired count=%s", expired)
        return expired

    def reconciliation_report(self, limit: int = 100) -> ReconciliationReport:
        with self.session_factory() as db:
            failed = self.ledger.list_failed(db, limit=limit)
            paid_unconfirmed = db.execute(
                select(PaymentOrder, Appointment.status)
                .join(Appointment, Appointment.id == PaymentOrder.appointment_id)
                .where(
                    PaymentOrder.status == "paid",
                    Appointment.status.not_in(("confirmed", "completed")),
                )
                .limit(limit)
            ).all()
        return ReconciliationReport(
            failed_events=[
                {
                    "provider": record.provider,
                    "event_id": record.event_id,
                    "error_message": record.error_message,
                    "correlation_id": record.correlation_id,
                }
                for record in failed
            ],
            paid_unconfirmed_orders=[
                {
                    "order_id": order.id,
                    "appointment_id": order.appointment_id,
                    "gateway": order.gateway,
                    "appointment_status": status,
                }
                for order, status in paid_unconfirmed
            ],
        )
