"""Tests for the outbox queue and its retention policy."""

from datetime import timedelta

from contactsync.crud import crud
from contactsync.models.models import QueuedMessage
from contactsync.services.device_registry import DeviceRegistry
from contactsync.services.outbox import OutboxQueue
from contactsync.utils.time import utc_now_naive


def _age(db, message, **delta):
    message.created_at = utc_now_naive() - timedelta(**delta)
    db.commit()


def test_enqueue_and_pending_order(db_session):
    outbox = OutboxQueue(db_session)
    first = outbox.enqueue("dev-a", "contact-created", {"id": "1"})
    second = outbox.enqueue("dev-a", "contact-updated", {"id": "1"})

    assert [m.message_uuid for m in outbox.pending("dev-a")] == [first.message_uuid, second.message_uuid]
    assert outbox.count_pending("dev-a") == 2
    assert crud.get_sync_status(db_session, "dev-a").pending_messages == 2


def test_counter_never_goes_negative(db_session):
    outbox = OutboxQueue(db_session)
    message = outbox.enqueue("dev-a", "contact-created", {"id": "1"})

    status = crud.get_sync_status(db_session, "dev-a")
    status.pending_messages = 0
    db_session.commit()

    assert outbox.acknowledge("dev-a", [message.message_uuid]) == 1
    assert crud.get_sync_status(db_session, "dev-a").pending_messages == 0


def test_retention_removes_old_delivered_messages(db_session):
    outbox = OutboxQueue(db_session)
    old = outbox.enqueue("dev-a", "contact-created", {"id": "1"})
    fresh = outbox.enqueue("dev-a", "contact-created", {"id": "2"})
    outbox.acknowledge("dev-a", [old.message_uuid, fresh.message_uuid])

    old.delivered_at = utc_now_naive() - timedelta(hours=25)
    db_session.commit()

    summary = outbox.enforce_retention()

    assert summary["delivered"] == 1
    remaining = [m.message_uuid for m in db_session.query(QueuedMessage).all()]
    assert remaining == [fresh.message_uuid]


def test_retention_expires_undelivered_after_max_age(db_session):
    DeviceRegistry(db_session).touch("dev-a")
    outbox = OutboxQueue(db_session)
    stale = outbox.enqueue("dev-a", "contact-created", {"id": "1"})
    outbox.enqueue("dev-a", "contact-created", {"id": "2"})
    _age(db_session, stale, days=31)

    summary = outbox.enforce_retention()

    assert summary["expired"] == 1
    assert outbox.count_pending("dev-a") == 1
    db_session.expire_all()
    assert crud.get_sync_status(db_session, "dev-a").pending_messages == 1


def test_retention_caps_queue_per_device(db_session, monkeypatch):
    monkeypatch.setenv("QUEUE_MAX_PER_DEVICE", "3")
    outbox = OutboxQueue(db_session)
    messages = [outbox.enqueue("dev-a", "contact-created", {"id": str(i)}) for i in range(5)]
    for i, message in enumerate(messages):
        _age(db_session, message, minutes=10 - i)
    outbox.enqueue("dev-b", "contact-created", {"id": "x"})

    summary = outbox.enforce_retention()

    assert summary["trimmed"] == 2
    kept = [m.payload["id"] for m in outbox.pending("dev-a")]
    assert kept == ["2", "3", "4"]
    assert outbox.count_pending("dev-b") == 1
