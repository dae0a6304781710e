"""Tests for the entity store: versioning, tombstones and change events."""

import pytest

from contactsync.errors import ConflictError
from contactsync.errors import NotFoundError
from contactsync.events import EventType
from contactsync.models.enums import ChangeKind
from contactsync.utils.time import EPOCH


@pytest.fixture
def published(bus):
    """Collect every contact event published on the private bus."""
    events = []

    async def _collect(data):
        events.append(data)

    for event_type in (
        EventType.CONTACT_CREATED,
        EventType.CONTACT_UPDATED,
        EventType.CONTACT_DELETED,
        EventType.CONTACT_RESTORED,
    ):
        bus.subscribe(event_type, _collect)
    return events


@pytest.mark.asyncio
class TestEntityStore:
    async def test_create_assigns_identity_and_version(self, store, published):
        record, kind = await store.create({"client_name": "Ada", "phone1": "555-0100"}, "dev-a")

        assert kind is ChangeKind.CREATED
        assert record.id
        assert record.version == 1
        assert record.deleted is False
        assert record.owner_device_id == "dev-a"

        assert len(published) == 1
        assert published[0]["kind"] == "created"
        assert published[0]["origin_device_id"] == "dev-a"
        assert published[0]["record"]["client_name"] == "Ada"

    async def test_version_strictly_increases_and_timestamp_never_decreases(self, store):
        record, _ = await store.create({"client_name": "v1"})
        versions = [record.version]
        stamps = [record.last_modified]

        for i in range(5):
            record = await store.update(record.id, {"client_name": f"v{i + 2}"})
            versions.append(record.version)
            stamps.append(record.last_modified)
        record = await store.soft_delete(record.id)
        versions.append(record.version)
        stamps.append(record.last_modified)

        assert all(b > a for a, b in zip(versions, versions[1:]))
        assert all(b > a for a, b in zip(stamps, stamps[1:]))

    async def test_update_only_touches_supplied_fields(self, store):
        record, _ = await store.create({"client_name": "Ada", "state": "CA"})
        updated = await store.update(record.id, {"state": "NY"})

        assert updated.client_name == "Ada"
        assert updated.state == "NY"

    async def test_update_missing_or_tombstoned_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.update("nope", {"client_name": "x"})

        record, _ = await store.create({"client_name": "gone"})
        await store.soft_delete(record.id)
        with pytest.raises(NotFoundError):
            await store.update(record.id, {"client_name": "x"})

    async def test_soft_delete_keeps_row_as_tombstone(self, store, published):
        record, _ = await store.create({"client_name": "Ada"})
        deleted = await store.soft_delete(record.id)

        assert deleted.deleted is True
        assert store.get(record.id) is not None
        assert [c.id for c in store.list_live()] == []
        assert [c.id for c in store.list_deleted_since(EPOCH, 10)] == [record.id]
        assert published[-1]["kind"] == "deleted"

        with pytest.raises(NotFoundError):
            await store.soft_delete(record.id)

    async def test_duplicate_live_phone_is_rejected(self, store):
        await store.create({"client_name": "first", "phone1": "555-0101"})

        with pytest.raises(ConflictError):
            await store.create({"client_name": "second", "phone1": "555-0101"})

    async def test_update_to_taken_phone_is_rejected(self, store):
        await store.create({"client_name": "first", "phone1": "555-0102"})
        other, _ = await store.create({"client_name": "second", "phone1": "555-0103"})

        with pytest.raises(ConflictError):
            await store.update(other.id, {"phone1": "555-0102"})

    async def test_create_with_tombstoned_phone_restores_record(self, store, published):
        record, _ = await store.create({"client_name": "old", "phone1": "555-0104"})
        await store.soft_delete(record.id)

        restored, kind = await store.create({"client_name": "new", "phone1": "555-0104"}, "dev-b")

        assert kind is ChangeKind.RESTORED
        assert restored.id == record.id
        assert restored.deleted is False
        assert restored.client_name == "new"
        assert restored.version == 3
        assert published[-1]["kind"] == "restored"

    async def test_upsert_dispatches_on_live_id(self, store):
        record, _ = await store.create({"client_name": "Ada"})

        updated, kind = await store.upsert({"id": record.id, "client_name": "Grace"})
        assert kind is ChangeKind.UPDATED
        assert updated.id == record.id
        assert updated.version == 2

        created, kind = await store.upsert({"id": "client-chosen", "client_name": "Linus"})
        assert kind is ChangeKind.CREATED
        assert created.id == "client-chosen"

    async def test_failing_subscriber_does_not_undo_write(self, store, bus):
        async def _boom(_data):
            raise RuntimeError("subscriber failure")

        bus.subscribe(EventType.CONTACT_CREATED, _boom)
        record, _ = await store.create({"client_name": "Ada"})

        assert store.get(record.id) is not None

    async def test_count_changed_since_includes_tombstones(self, store):
        a, _ = await store.create({"client_name": "a"})
        await store.create({"client_name": "b"})
        await store.soft_delete(a.id)

        assert store.count_changed_since(EPOCH) == 2
