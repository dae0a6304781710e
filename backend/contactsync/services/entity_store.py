"""Entity store: versioned, soft-deleted contact records.

Every successful mutation commits first and then publishes a ``CONTACT_*``
event on the event bus.  The publish is awaited, so the sync engine has
decided live-push vs. queue for every device before the mutating call
returns; a failing subscriber is logged by the bus and never undoes the
write.  The bulk-reconcile writers are the exception: they leave the
publish to their caller.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

from sqlalchemy.orm import Session

from contactsync.crud import crud
from contactsync.errors import ConflictError
from contactsync.errors import NotFoundError
from contactsync.events import EventType
from contactsync.events.event_bus import EventBus
from contactsync.events.event_bus import event_bus
from contactsync.models.enums import ChangeKind
from contactsync.models.models import CONTACT_FIELDS
from contactsync.models.models import Contact
from contactsync.schemas.schemas import ClientContact
from contactsync.schemas.schemas import Contact as ContactSchema

logger = logging.getLogger(__name__)

_EVENT_FOR_KIND = {
    ChangeKind.CREATED: EventType.CONTACT_CREATED,
    ChangeKind.UPDATED: EventType.CONTACT_UPDATED,
    ChangeKind.DELETED: EventType.CONTACT_DELETED,
    ChangeKind.RESTORED: EventType.CONTACT_RESTORED,
}


def serialize_contact(record: Contact) -> Dict[str, Any]:
    """JSON-safe snapshot of a contact row."""
    return ContactSchema.model_validate(record).model_dump(mode="json")


def _business_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    return {name: patch[name] for name in CONTACT_FIELDS if name in patch}


class EntityStore:
    """Contact persistence bound to one database session."""

    def __init__(self, db: Session, *, bus: EventBus | None = None):
        self.db = db
        self.bus = bus or event_bus

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, contact_id: str) -> Optional[Contact]:
        return crud.get_contact(self.db, contact_id)

    def require_live(self, contact_id: str) -> Contact:
        record = crud.get_contact(self.db, contact_id)
        if record is None or record.deleted:
            raise NotFoundError("Contact not found")
        return record

    def find_by_phone(self, phone: str) -> Optional[Contact]:
        return crud.get_contact_by_phone(self.db, phone)

    def list_live(self, limit: int = 1000) -> List[Contact]:
        return crud.get_contacts(self.db, limit=limit)

    def live_phone_holder(self, phone: Optional[str], exclude_id: Optional[str] = None) -> Optional[Contact]:
        """The live contact other than *exclude_id* that uses *phone*, if any."""
        if not phone:
            return None
        holder = crud.get_contact_by_phone(self.db, phone, exclude_id=exclude_id)
        if holder is None or holder.deleted:
            return None
        return holder

    def list_since(self, since: datetime, limit: int, after_id: Optional[str] = None) -> List[Contact]:
        return crud.list_contacts_since(self.db, since, limit, after_id=after_id)

    def list_deleted_since(self, since: datetime, limit: int, after_id: Optional[str] = None) -> List[Contact]:
        return crud.list_deleted_since(self.db, since, limit, after_id=after_id)

    def count_changed_since(self, since: datetime) -> int:
        return crud.count_contacts_changed_since(self.db, since)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def upsert(self, patch: Dict[str, Any], device_id: Optional[str] = None) -> Tuple[Contact, ChangeKind]:
        """Create or update depending on whether *patch* names a live record."""
        contact_id = patch.get("id")
        if contact_id:
            existing = crud.get_contact(self.db, contact_id)
            if existing is not None and not existing.deleted:
                return await self.update(contact_id, patch, device_id), ChangeKind.UPDATED
        return await self.create(patch, device_id)

    async def create(self, patch: Dict[str, Any], device_id: Optional[str] = None) -> Tuple[Contact, ChangeKind]:
        """Insert a contact, restoring a tombstone that owns the same phone.

        Raises:
            ConflictError: a live contact already uses ``phone1``.
        """
        fields = {name: patch.get(name) for name in CONTACT_FIELDS}
        contact_id = patch.get("id")

        tombstone: Optional[Contact] = None
        if contact_id:
            existing = crud.get_contact(self.db, contact_id)
            if existing is not None and existing.deleted:
                tombstone = existing

        phone = fields.get("phone1")
        if phone:
            holder = crud.get_contact_by_phone(self.db, phone, exclude_id=contact_id)
            if holder is not None and not holder.deleted:
                raise ConflictError("Phone number already exists")
            if holder is not None and tombstone is None:
                tombstone = holder

        if tombstone is not None:
            # "Undelete" and update in place so the id stays stable.
            record = crud.update_contact(
                self.db,
                tombstone,
                fields=fields,
                owner_device_id=device_id,
                deleted=False,
            )
            kind = ChangeKind.RESTORED
        else:
            record = crud.create_contact(
                self.db,
                fields=fields,
                owner_device_id=device_id,
                contact_id=contact_id,
            )
            kind = ChangeKind.CREATED

        await self.publish_change(record, kind, device_id)
        return record, kind

    async def update(self, contact_id: str, patch: Dict[str, Any], device_id: Optional[str] = None) -> Contact:
        """Apply the business fields present in *patch* to a live contact.

        Raises:
            NotFoundError: missing or tombstoned id.
            ConflictError: the new ``phone1`` belongs to another live contact.
        """
        record = self.require_live(contact_id)
        fields = _business_patch(patch)

        phone = fields.get("phone1")
        if phone and phone != record.phone1 and self.live_phone_holder(phone, contact_id) is not None:
            raise ConflictError("Phone number already exists")

        record = crud.update_contact(self.db, record, fields=fields, owner_device_id=device_id)
        await self.publish_change(record, ChangeKind.UPDATED, device_id)
        return record

    async def soft_delete(self, contact_id: str, device_id: Optional[str] = None) -> Contact:
        """Tombstone a live contact.

        Raises:
            NotFoundError: missing or already tombstoned id.
        """
        record = self.require_live(contact_id)
        record = crud.soft_delete_contact(self.db, record, owner_device_id=device_id)
        await self.publish_change(record, ChangeKind.DELETED, device_id)
        return record

    # ------------------------------------------------------------------
    # Bulk-reconcile writes (client bookkeeping trusted)
    #
    # These run synchronously, off the event loop, and do not publish.
    # The caller hands each returned ``(record, kind)`` to
    # :meth:`publish_change` once it is back on the loop.
    # ------------------------------------------------------------------

    def insert_client_copy(self, client: ClientContact, device_id: str) -> Tuple[Contact, ChangeKind]:
        """Insert a record first seen from a device.

        ``last_modified`` is server-assigned so the row is visible to every
        other device's next delta pull.
        """
        record = crud.create_contact(
            self.db,
            fields=client.model_dump(include=set(CONTACT_FIELDS)),
            owner_device_id=device_id,
            contact_id=client.id,
            version=client.version or 1,
            deleted=bool(client.deleted),
        )
        kind = ChangeKind.DELETED if record.deleted else ChangeKind.CREATED
        return record, kind

    def overwrite_client_copy(
        self, record: Contact, client: ClientContact, device_id: str
    ) -> Tuple[Contact, ChangeKind]:
        """Replace *record* with a strictly newer device copy, verbatim."""
        was_deleted = bool(record.deleted)
        now_deleted = bool(client.deleted)

        record = crud.overwrite_contact(
            self.db,
            record,
            fields=client.model_dump(include=set(CONTACT_FIELDS)),
            owner_device_id=device_id,
            version=client.version if client.version is not None else (record.version or 0) + 1,
            deleted=now_deleted,
            last_modified=client.last_modified,
        )

        if now_deleted and not was_deleted:
            kind = ChangeKind.DELETED
        elif was_deleted and not now_deleted:
            kind = ChangeKind.RESTORED
        else:
            kind = ChangeKind.UPDATED
        return record, kind

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    async def publish_change(self, record: Contact, kind: ChangeKind, origin_device_id: Optional[str]) -> None:
        logger.info("Contact %s %s (version %s) by %s", record.id, kind.value, record.version, origin_device_id)
        await self.bus.publish(
            _EVENT_FOR_KIND[kind],
            {
                "event_type": kind.value,
                "kind": kind.value,
                "record": serialize_contact(record),
                "origin_device_id": origin_device_id,
            },
        )
