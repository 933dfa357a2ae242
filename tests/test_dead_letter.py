"""Dead-lettered webhook deliveries: encrypted at rest, readable by operators only."""

from datetime import datetime, timezone

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select

from clinicpay.common.audit import AuditLog
from clinicpay.common.errors import InternalError, NotFoundError
from clinicpay.services.deadletter.models import DeadLetterWebhook
from clinicpay.services.deadletter.service import DeadLetterQueue, build_cipher
from clinicpay.services.ledger.models import IdempotencyRecord

NOW = datetime(2026, 2, 20, 9, 0, tzinfo=timezone.utc)
INTERNAL = {"X-API-Key": "internal-test-key"}
DOCTOR_1 = {"Authorization": "Bearer doctor-doc-1"}


def _deliver(services, payloads, body, event_id):
    return services.dispatcher.dispatch("razorpay", body, payloads.razorpay_headers(body, event_id=event_id), "corr-dl")


def _audit_actions(session_factory):
    with session_factory() as db:
        return [row.action for row in db.execute(select(AuditLog).order_by(AuditLog.created_at)).scalars()]


def test_rejected_payment_is_parked_encrypted(services, book, payloads, session_factory):
    appointment = book()
    services.orchestrator.create_payment_link(appointment.id, 50000, "INR", "IN")
    body = payloads.razorpay_paid("plink_1", amount=100, payment_id="pay_secret")

    assert _deliver(services, payloads, body, "evt_short").outcome == "rejected"

    (entry,) = services.dead_letters.list_recent()
    assert (entry.provider, entry.event_id, entry.correlation_id) == ("razorpay", "evt_short", "corr-dl")
    assert entry.error_message.startswith("validation_error")
    with session_factory() as db:
        stored = db.get(DeadLetterWebhook, entry.id).payload_encrypted
    assert "pay_secret" not in stored
    assert "plink_1" not in stored

    detail = services.dead_letters.get(entry.id)
    assert detail.payload == body.decode()
    assert "dead_letter_stored" in _audit_actions(session_factory)
    assert "dead_letter_accessed" in _audit_actions(session_factory)


def test_unknown_order_is_parked(services, payloads):
    _deliver(services, payloads, payloads.razorpay_paid("plink_nowhere"), "evt_orphan")

    (entry,) = services.dead_letters.list_recent(provider="razorpay")
    assert entry.error_message == "order_not_found"
    assert services.dead_letters.list_recent(provider="paypal") == []


def test_only_failed_deliveries_are_parked(services, book, payloads):
    appointment = book()
    services.orchestrator.create_payment_link(appointment.id, 50000, "INR", "IN")
    body = payloads.razorpay_paid("plink_1")

    forged = payloads.razorpay_headers(body, event_id="evt_forged", secret="wrong")
    assert services.dispatcher.dispatch("razorpay", body, forged, "corr-dl").outcome == "unauthorized"
    assert _deliver(services, payloads, payloads.razorpay_event("refund.processed", "plink_1"), "e1").outcome == "ignored"
    assert _deliver(services, payloads, body, "evt_ok").outcome == "applied"
    assert _deliver(services, payloads, body, "evt_ok").outcome == "duplicate"

    assert services.dead_letters.list_recent() == []


def test_no_key_means_nothing_is_stored(session_factory):
    queue = DeadLetterQueue(session_factory, build_cipher(None))
    with session_factory() as db:
        assert queue.store(db, "razorpay", "evt_1", b"{}", "order_not_found", "corr") is None
        db.commit()
    assert queue.list_recent() == []


def test_entry_cannot_be_read_with_another_key(session_factory):
    writer = DeadLetterQueue(session_factory, Fernet(Fernet.generate_key()))
    with session_factory() as db:
        entry_id = writer.store(db, "razorpay", "evt_1", b'{"event":"x"}', "order_not_found", "corr")
        db.commit()

    reader = DeadLetterQueue(session_factory, Fernet(Fernet.generate_key()))
    with pytest.raises(InternalError):
        reader.get(entry_id)
    assert writer.get(entry_id).payload == '{"event":"x"}'


def test_reprocess_request_is_stamped_and_audited(services, payloads, session_factory):
    _deliver(services, payloads, payloads.razorpay_paid("plink_nowhere"), "evt_orphan")
    (entry,) = services.dead_letters.list_recent()

    flagged = services.dead_letters.request_reprocess(entry.id)
    assert flagged.reprocess_requested_at == NOW
    assert "dead_letter_reprocess_requested" in _audit_actions(session_factory)

    with pytest.raises(NotFoundError):
        services.dead_letters.get("missing")
    with pytest.raises(NotFoundError):
        services.dead_letters.request_reprocess("missing")


def test_instagram_delivery_that_cannot_be_queued_is_parked(services, payloads, session_factory, monkeypatch):
    def broken_enqueue(*args, **kwargs):
        raise RuntimeError("outbox unavailable")

    monkeypatch.setattr("clinicpay.services.webhooks.instagram.enqueue_event", broken_enqueue)
    body = payloads.instagram_dm(mid="m_broken", text="my appointment tomorrow")

    with pytest.raises(InternalError):
        services.instagram.handle(body, payloads.instagram_headers(body), "corr-ig")

    with session_factory() as db:
        record = db.get(IdempotencyRecord, ("instagram", "m_broken"))
    assert record.status == "failed"
    (entry,) = services.dead_letters.list_recent(provider="instagram")
    assert entry.event_id == "m_broken"
    assert services.dead_letters.get(entry.id).payload == body.decode()


def test_dead_letter_routes_are_internal_only(client, payloads):
    body = payloads.razorpay_paid("plink_nowhere")
    client.post("/webhooks/razorpay", content=body, headers=payloads.razorpay_headers(body, event_id="evt_http"))

    assert client.get("/internal/dead-letters", headers=DOCTOR_1).status_code == 401

    listing = client.get("/internal/dead-letters", params={"provider": "razorpay"}, headers=INTERNAL)
    assert listing.status_code == 200
    (item,) = listing.json()["items"]
    assert item["event_id"] == "evt_http"
    assert "payload" not in item

    detail = client.get(f"/internal/dead-letters/{item['id']}", headers=INTERNAL)
    assert detail.status_code == 200
    assert detail.json()["payload"] == body.decode()

    reprocess = client.post(f"/internal/dead-letters/{item['id']}/reprocess", headers=INTERNAL)
    assert reprocess.status_code == 202
    assert reprocess.json()["reprocess_requested_at"] is not None
    assert client.get("/internal/dead-letters/missing", headers=INTERNAL).status_code == 404
