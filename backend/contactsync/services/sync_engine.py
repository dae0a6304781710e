"""Sync engine: fan-out of committed changes plus the device-facing sync calls.

The engine subscribes to the ``CONTACT_*`` events of the entity store.  For
every registered device other than the writer it either pushes the change
over the live connection or appends it to that device's outbox.  Devices
catch up through :meth:`SyncEngine.delta_pull`, push their own edits through
:meth:`SyncEngine.reconcile` and confirm queued deliveries through
:meth:`SyncEngine.acknowledge`.

Delivery is at-least-once and unordered across channels, so every consumer
applies changes as idempotent upserts/tombstones by id.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm import sessionmaker

from contactsync import metrics
from contactsync.config import get_settings
from contactsync.crud import crud
from contactsync.database import db_session
from contactsync.database import get_session_factory
from contactsync.errors import SyncBusyError
from contactsync.errors import ValidationError
from contactsync.errors import store_errors
from contactsync.events import EventType
from contactsync.events.event_bus import EventBus
from contactsync.events.event_bus import event_bus
from contactsync.models.enums import ChangeKind
from contactsync.models.models import CONTACT_FIELDS
from contactsync.models.models import Contact
from contactsync.schemas.schemas import ClientContact
from contactsync.schemas.schemas import Contact as ContactSchema
from contactsync.schemas.schemas import DeltaSyncResponse
from contactsync.schemas.schemas import QueuedMessageOut
from contactsync.schemas.schemas import ReconcileResponse
from contactsync.schemas.schemas import ReconnectResponse
from contactsync.schemas.schemas import SyncConflict
from contactsync.schemas.schemas import Tombstone
from contactsync.schemas.ws_messages import Envelope
from contactsync.schemas.ws_messages import MessageType
from contactsync.schemas.ws_messages import device_topic
from contactsync.services.device_registry import DeviceRegistry
from contactsync.services.entity_store import EntityStore
from contactsync.services.outbox import OutboxQueue
from contactsync.utils.time import EPOCH
from contactsync.utils.time import utc_now_naive
from contactsync.websocket.manager import PresenceTracker
from contactsync.websocket.manager import presence_tracker

logger = logging.getLogger(__name__)

_CONTACT_EVENTS = (
    EventType.CONTACT_CREATED,
    EventType.CONTACT_UPDATED,
    EventType.CONTACT_DELETED,
    EventType.CONTACT_RESTORED,
)


def change_payload(kind: ChangeKind, record: Dict[str, Any]) -> Dict[str, Any]:
    """Payload carried by live pushes and queued messages for one change.

    Deletions travel as a minimal marker; everything else carries the full
    record snapshot.
    """
    if kind is ChangeKind.DELETED:
        return {
            "id": record["id"],
            "event_type": kind.value,
            "timestamp": record.get("last_modified"),
        }
    return {**record, "event_type": kind.value}


def _differs(server: Contact, client: ClientContact) -> bool:
    if bool(server.deleted) != bool(client.deleted):
        return True
    return any(getattr(server, name) != getattr(client, name) for name in CONTACT_FIELDS)


def _conflict(server: Contact, client: ClientContact, device_id: str, reason: str) -> SyncConflict:
    metrics.sync_conflicts_total.inc()
    logger.info("Conflict on contact %s from device %s: %s", client.id, device_id, reason)
    return SyncConflict(
        id=client.id,
        server_version=ContactSchema.model_validate(server),
        client_version=client.model_dump(mode="json"),
        reason=reason,
    )


class SyncEngine:
    """Process-wide coordinator between store, registry, outbox and presence."""

    def __init__(
        self,
        presence: PresenceTracker,
        *,
        session_factory: Optional[sessionmaker] = None,
        bus: Optional[EventBus] = None,
        register_events: bool = True,
    ):
        self.presence = presence
        self._session_factory = session_factory
        self.bus = bus or event_bus
        self._subscribed = False
        if register_events:
            self._setup_subscriptions()

    def _setup_subscriptions(self) -> None:
        if self._subscribed:
            return
        for event_type in _CONTACT_EVENTS:
            self.bus.subscribe(event_type, self.handle_change)
        self._subscribed = True

    def close(self) -> None:
        """Unsubscribe from the event bus."""
        if not self._subscribed:
            return
        for event_type in _CONTACT_EVENTS:
            self.bus.unsubscribe(event_type, self.handle_change)
        self._subscribed = False

    def _factory(self) -> sessionmaker:
        return self._session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Broadcast / queue decision
    # ------------------------------------------------------------------

    async def handle_change(self, data: Dict[str, Any]) -> None:
        """Deliver one committed change to every device except its origin."""
        kind = ChangeKind(data["kind"])
        record = data["record"]
        origin = data.get("origin_device_id")
        payload = change_payload(kind, record)
        wire_event = kind.wire_event

        with db_session(self._factory()) as db:
            targets = [device_id for device_id in crud.get_device_ids(db) if device_id != origin]
            outbox = OutboxQueue(db)

            for device_id in targets:
                try:
                    await self._deliver(outbox, device_id, wire_event, payload)
                except Exception as exc:
                    # One unreachable device must not block the others.
                    db.rollback()
                    logger.warning("Failed to deliver %s for %s to device %s: %s", wire_event, record["id"], device_id, exc)

    async def _deliver(self, outbox: OutboxQueue, device_id: str, wire_event: str, payload: Dict[str, Any]) -> None:
        if self.presence.is_online(device_id):
            envelope = Envelope.create(wire_event, topic=device_topic(device_id), data=payload)
            if await self.presence.send(device_id, envelope.model_dump()):
                metrics.live_pushes_total.inc()
                return
            logger.info("Live push to %s failed, queueing instead", device_id)

        outbox.enqueue(device_id, wire_event, payload)

    # ------------------------------------------------------------------
    # Delta pull
    # ------------------------------------------------------------------

    def delta_pull(
        self,
        db: Session,
        device_id: str,
        since: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> DeltaSyncResponse:
        """Return everything *device_id* has not seen and advance its watermark.

        Raises:
            ValidationError: *batch_size* outside ``1..MAX_BATCH_SIZE``.
            SyncBusyError: another pull for the same device is in flight.
            TransientStoreError: the store failed.
        """
        settings = get_settings()
        if batch_size is None:
            batch_size = settings.default_batch_size
        if not 1 <= batch_size <= settings.max_batch_size:
            raise ValidationError(f"batch_size must be between 1 and {settings.max_batch_size}")

        with store_errors("perform delta sync"):
            registry = DeviceRegistry(db)
            registry.touch(device_id)

            if not registry.try_begin_sync(device_id):
                metrics.delta_pulls_total.labels(outcome="busy").inc()
                raise SyncBusyError(f"Sync already in progress for device {device_id}")

            try:
                response = self._pull_locked(db, registry, device_id, since, batch_size)
            except SQLAlchemyError:
                db.rollback()
                metrics.delta_pulls_total.labels(outcome="error").inc()
                raise
            finally:
                self._release(db, registry, device_id)

        metrics.delta_pulls_total.labels(outcome="ok").inc()
        logger.info(
            "Delta sync for %s: %d contact(s), %d tombstone(s), %d queued",
            device_id,
            len(response.contacts),
            len(response.deleted),
            len(response.queued_messages),
        )
        return response

    def _pull_locked(
        self,
        db: Session,
        registry: DeviceRegistry,
        device_id: str,
        since: Optional[datetime],
        batch_size: int,
    ) -> DeltaSyncResponse:
        store = EntityStore(db, bus=self.bus)
        outbox = OutboxQueue(db)

        # An explicit ``since`` restarts from that instant; otherwise resume
        # from the stored ``(watermark, cursor_id)`` position.
        after_id: Optional[str] = None
        if since is None:
            since, after_id = registry.get_cursor(device_id)
            if since is None:
                since, after_id = EPOCH, None
        # Read before scanning: a write landing mid-scan is delivered again
        # next time instead of being skipped.
        server_timestamp = utc_now_naive()

        contacts = store.list_since(since, batch_size, after_id)
        tombstones = store.list_deleted_since(since, batch_size, after_id)
        queued = outbox.pending(device_id, batch_size)

        full_pages = [page for page in (contacts, tombstones) if len(page) == batch_size]
        if full_pages:
            # Resume right after the earliest page end in (last_modified, id)
            # order.  Rows of the other page past that point come again.
            last = min((page[-1] for page in full_pages), key=lambda row: (row.last_modified, row.id))
            registry.set_watermark(device_id, last.last_modified, last.id)
        else:
            registry.set_watermark(device_id, server_timestamp)

        return DeltaSyncResponse(
            contacts=[ContactSchema.model_validate(c) for c in contacts],
            deleted=[Tombstone.model_validate(t) for t in tombstones],
            queued_messages=[QueuedMessageOut.from_model(m) for m in queued],
            server_timestamp=server_timestamp,
            since=since,
            has_more=bool(full_pages),
        )

    def _release(self, db: Session, registry: DeviceRegistry, device_id: str) -> None:
        try:
            registry.end_sync(device_id)
        except SQLAlchemyError as exc:
            # The flag expires after SYNC_LOCK_TIMEOUT_SECONDS.
            db.rollback()
            logger.error("Could not release sync flag for %s: %s", device_id, exc)

    # ------------------------------------------------------------------
    # Bulk reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, db: Session, device_id: str, records: Any) -> ReconcileResponse:
        """Merge a device's records with last-write-wins on ``last_modified``.

        Equal timestamps with different content are reported as conflicts and
        the server copy is kept.  So is a live device copy whose ``phone1``
        belongs to another live contact; nothing is written for it.

        The merge runs in a worker thread; the change events are published
        back on the loop and awaited before returning.
        """
        if not isinstance(records, list):
            raise ValidationError("contacts must be an array")
        try:
            client_records = [ClientContact.model_validate(item) for item in records]
        except ValueError as exc:
            raise ValidationError(f"Invalid contact in batch: {exc}") from exc

        synced, conflicts, changes = await asyncio.to_thread(self._merge_batch, db, device_id, client_records)

        store = EntityStore(db, bus=self.bus)
        for record, kind in changes:
            await store.publish_change(record, kind, device_id)

        logger.info(
            "Reconciled %d contact(s) from %s with %d conflict(s)", len(client_records), device_id, len(conflicts)
        )
        return ReconcileResponse(
            synced=[ContactSchema.model_validate(c) for c in synced],
            conflicts=conflicts,
            server_timestamp=utc_now_naive(),
        )

    def _merge_batch(
        self,
        db: Session,
        device_id: str,
        client_records: List[ClientContact],
    ) -> Tuple[List[Contact], List[SyncConflict], List[Tuple[Contact, ChangeKind]]]:
        synced: List[Contact] = []
        conflicts: List[SyncConflict] = []
        changes: List[Tuple[Contact, ChangeKind]] = []

        with store_errors("sync contacts"):
            DeviceRegistry(db).touch(device_id)
            store = EntityStore(db, bus=self.bus)

            for client in client_records:
                server = store.get(client.id)
                client_ts = client.last_modified or EPOCH

                if server is not None and client_ts <= server.last_modified:
                    if client_ts == server.last_modified and _differs(server, client):
                        conflicts.append(_conflict(server, client, device_id, "Concurrent modification"))
                    synced.append(server)
                    continue

                # phone1 is unique among live rows only.
                holder = None if client.deleted else store.live_phone_holder(client.phone1, client.id)
                if holder is not None:
                    conflicts.append(_conflict(holder, client, device_id, "Phone number already exists"))
                    if server is not None:
                        synced.append(server)
                    continue

                if server is None:
                    record, kind = store.insert_client_copy(client, device_id)
                else:
                    record, kind = store.overwrite_client_copy(server, client, device_id)
                changes.append((record, kind))
                synced.append(record)

        return synced, conflicts, changes

    # ------------------------------------------------------------------
    # Acknowledgement / reconnect probe
    # ------------------------------------------------------------------

    def acknowledge(self, db: Session, device_id: str, message_uuids: Any) -> int:
        if not isinstance(message_uuids, list):
            raise ValidationError("message_uuids must be an array")
        with store_errors("acknowledge messages"):
            return OutboxQueue(db).acknowledge(device_id, [str(u) for u in message_uuids])

    def reconnect(self, db: Session, device_id: str, last_seen: Optional[datetime] = None) -> ReconnectResponse:
        """Tell a returning device how far behind it is."""
        settings = get_settings()
        with store_errors("handle reconnection"):
            DeviceRegistry(db).touch(device_id)
            pending = OutboxQueue(db).count_pending(device_id)
            recent = EntityStore(db, bus=self.bus).count_changed_since(last_seen or EPOCH)

        requires_full_sync = (
            pending > settings.full_sync_pending_threshold or recent > settings.full_sync_changes_threshold
        )
        logger.info(
            "Device %s reconnected: %d pending, %d recent change(s), full sync=%s",
            device_id,
            pending,
            recent,
            requires_full_sync,
        )
        return ReconnectResponse(
            status="reconnected",
            pending_messages=pending,
            recent_changes=recent,
            requires_full_sync=requires_full_sync,
        )

    # ------------------------------------------------------------------
    # Live channel lifecycle
    # ------------------------------------------------------------------

    async def replay_queue(self, db: Session, device_id: str) -> int:
        """Send every pending queued message over the live channel.

        Messages stay undelivered until the device acknowledges them.
        """
        with store_errors("load queued messages"):
            pending = OutboxQueue(db).pending(device_id)

        topic = device_topic(device_id)
        sent = 0
        for message in pending:
            envelope = Envelope.create(
                MessageType.QUEUED_MESSAGE,
                topic=topic,
                data={
                    "id": message.id,
                    "type": message.event_type,
                    "data": message.payload,
                    "message_uuid": message.message_uuid,
                },
            )
            if not await self.presence.send(device_id, envelope.model_dump()):
                break
            sent += 1

        await self.presence.send(
            device_id,
            Envelope.create(MessageType.QUEUED_MESSAGES_COMPLETE, topic=topic, data={"total_sent": sent}).model_dump(),
        )
        logger.info("Replayed %d/%d queued message(s) to %s", sent, len(pending), device_id)
        return sent

    def mark_offline(self, db: Session, device_id: str) -> bool:
        with store_errors("mark device offline"):
            return DeviceRegistry(db).mark_offline(device_id)


# Global instance wired to the global presence tracker and event bus
sync_engine = SyncEngine(presence_tracker)

__all__ = ["SyncEngine", "sync_engine", "change_payload"]
