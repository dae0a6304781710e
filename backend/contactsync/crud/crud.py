"""Database access helpers for contacts, devices, sync status and the outbox queue."""

import uuid
from datetime import datetime
from datetime import timedelta
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple

from sqlalchemy import and_
from sqlalchemy import func
from sqlalchemy import or_
from sqlalchemy import update
from sqlalchemy.orm import Session

from contactsync.models.enums import DeviceStatus
from contactsync.models.models import CONTACT_FIELDS
from contactsync.models.models import Contact
from contactsync.models.models import Device
from contactsync.models.models import DeviceSyncStatus
from contactsync.models.models import QueuedMessage
from contactsync.utils.time import next_modified
from contactsync.utils.time import utc_now_naive

# ------------------------------------------------------------
# Contact CRUD operations
# ------------------------------------------------------------


def get_contact(db: Session, contact_id: str) -> Optional[Contact]:
    """Return a contact by id, tombstones included."""
    return db.query(Contact).filter(Contact.id == contact_id).first()


def get_contact_by_phone(
    db: Session,
    phone: str,
    *,
    exclude_id: Optional[str] = None,
) -> Optional[Contact]:
    """Return the contact using *phone* as its business key.

    Live rows are preferred over tombstones so a restore never shadows an
    existing live record.
    """
    query = db.query(Contact).filter(Contact.phone1 == phone)
    if exclude_id is not None:
        query = query.filter(Contact.id != exclude_id)
    return query.order_by(Contact.deleted.asc(), Contact.last_modified.desc()).first()


def get_contacts(db: Session, *, skip: int = 0, limit: int = 1000) -> List[Contact]:
    """Return live contacts, most recently modified first."""
    return (
        db.query(Contact)
        .filter(Contact.deleted.is_(False))
        .order_by(Contact.last_modified.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def _after_cursor(since: datetime, after_id: Optional[str]):
    """Rows strictly past ``(since, after_id)`` in ``(last_modified, id)`` order."""
    if after_id is None:
        return Contact.last_modified > since
    return or_(
        Contact.last_modified > since,
        and_(Contact.last_modified == since, Contact.id > after_id),
    )


def list_contacts_since(
    db: Session,
    since: datetime,
    limit: int,
    *,
    after_id: Optional[str] = None,
) -> List[Contact]:
    """Live contacts past the ``(since, after_id)`` cursor, ascending."""
    return (
        db.query(Contact)
        .filter(Contact.deleted.is_(False), _after_cursor(since, after_id))
        .order_by(Contact.last_modified.asc(), Contact.id.asc())
        .limit(limit)
        .all()
    )


def list_deleted_since(
    db: Session,
    since: datetime,
    limit: int,
    *,
    after_id: Optional[str] = None,
) -> List[Contact]:
    """Tombstones past the ``(since, after_id)`` cursor, ascending."""
    return (
        db.query(Contact)
        .filter(Contact.deleted.is_(True), _after_cursor(since, after_id))
        .order_by(Contact.last_modified.asc(), Contact.id.asc())
        .limit(limit)
        .all()
    )


def count_contacts_changed_since(db: Session, since: datetime) -> int:
    """Count live rows and tombstones modified after *since*."""
    return int(db.query(func.count(Contact.id)).filter(Contact.last_modified > since).scalar() or 0)


def create_contact(
    db: Session,
    *,
    fields: Dict[str, Any],
    owner_device_id: Optional[str] = None,
    contact_id: Optional[str] = None,
    version: int = 1,
    deleted: bool = False,
) -> Contact:
    """Insert a new contact row.

    ``last_modified`` is always assigned here; callers cannot supply it.
    """
    now = utc_now_naive()
    db_contact = Contact(
        id=contact_id or str(uuid.uuid4()),
        owner_device_id=owner_device_id,
        version=version,
        deleted=deleted,
        created_at=now,
        last_modified=now,
        **{name: fields.get(name) for name in CONTACT_FIELDS},
    )
    db.add(db_contact)
    db.commit()
    db.refresh(db_contact)
    return db_contact


def update_contact(
    db: Session,
    db_contact: Contact,
    *,
    fields: Dict[str, Any],
    owner_device_id: Optional[str] = None,
    deleted: Optional[bool] = None,
) -> Contact:
    """Apply *fields* to an existing row, bumping ``version``/``last_modified``."""
    for name in CONTACT_FIELDS:
        if name in fields:
            setattr(db_contact, name, fields[name])
    if deleted is not None:
        db_contact.deleted = deleted
    if owner_device_id is not None:
        db_contact.owner_device_id = owner_device_id

    db_contact.version = (db_contact.version or 0) + 1
    db_contact.last_modified = next_modified(db_contact.last_modified)
    db.commit()
    db.refresh(db_contact)
    return db_contact


def soft_delete_contact(db: Session, db_contact: Contact, *, owner_device_id: Optional[str] = None) -> Contact:
    """Tombstone a row in place."""
    return update_contact(db, db_contact, fields={}, owner_device_id=owner_device_id, deleted=True)


def overwrite_contact(
    db: Session,
    db_contact: Contact,
    *,
    fields: Dict[str, Any],
    owner_device_id: Optional[str],
    version: int,
    deleted: bool,
    last_modified: datetime,
) -> Contact:
    """Replace a row with a client copy, keeping its bookkeeping verbatim.

    Only the bulk-reconcile path may call this: it is the one place where a
    client-supplied ``version``/``last_modified`` is trusted.
    """
    for name in CONTACT_FIELDS:
        setattr(db_contact, name, fields.get(name))
    db_contact.owner_device_id = owner_device_id
    db_contact.version = version
    db_contact.deleted = deleted
    db_contact.last_modified = last_modified
    db.commit()
    db.refresh(db_contact)
    return db_contact


# ------------------------------------------------------------
# Device registry operations
# ------------------------------------------------------------


def get_device(db: Session, device_id: str) -> Optional[Device]:
    return db.query(Device).filter(Device.id == device_id).first()


def get_devices(db: Session) -> List[Device]:
    """Return all devices, most recently seen first."""
    return db.query(Device).order_by(Device.last_seen.desc()).all()


def get_device_ids(db: Session) -> List[str]:
    return [row[0] for row in db.query(Device.id).all()]


def _get_or_create_sync_status(db: Session, device_id: str) -> DeviceSyncStatus:
    status = db.query(DeviceSyncStatus).filter(DeviceSyncStatus.device_id == device_id).first()
    if status is None:
        status = DeviceSyncStatus(device_id=device_id, pending_messages=0, sync_in_progress=False)
        db.add(status)
        db.flush()
    return status


def touch_device(
    db: Session,
    device_id: str,
    *,
    display_name: Optional[str] = None,
    kind: Optional[str] = None,
) -> Device:
    """Upsert a device with ``last_seen = now`` and ``status = online``.

    Name and kind are written on insert, and afterwards only when provided.
    """
    now = utc_now_naive()
    db_device = get_device(db, device_id)
    if db_device is None:
        db_device = Device(
            id=device_id,
            display_name=display_name or "Unknown",
            kind=kind or "web",
            created_at=now,
        )
        db.add(db_device)
    else:
        if display_name:
            db_device.display_name = display_name
        if kind:
            db_device.kind = kind

    db_device.status = DeviceStatus.ONLINE.value
    db_device.last_seen = now
    db.flush()

    status = _get_or_create_sync_status(db, device_id)
    status.last_online = now

    db.commit()
    db.refresh(db_device)
    return db_device


def mark_device_offline(db: Session, device_id: str) -> bool:
    """Set ``status = offline``; returns False for unknown devices."""
    db_device = get_device(db, device_id)
    if db_device is None:
        return False
    db_device.status = DeviceStatus.OFFLINE.value
    db.commit()
    return True


def mark_all_devices_offline(db: Session) -> int:
    """Reset registry presence, e.g. after a restart dropped every socket."""
    result = db.execute(
        update(Device).where(Device.status == DeviceStatus.ONLINE.value).values(status=DeviceStatus.OFFLINE.value)
    )
    db.commit()
    return result.rowcount or 0


def mark_stale_devices_offline(db: Session, cutoff: datetime, exclude: Iterable[str] = ()) -> List[str]:
    """Mark registry-online devices not seen since *cutoff* offline."""
    query = db.query(Device).filter(
        Device.status == DeviceStatus.ONLINE.value,
        or_(Device.last_seen.is_(None), Device.last_seen < cutoff),
    )
    excluded = list(exclude)
    if excluded:
        query = query.filter(Device.id.notin_(excluded))

    stale = query.all()
    for db_device in stale:
        db_device.status = DeviceStatus.OFFLINE.value
    db.commit()
    return [d.id for d in stale]


def get_sync_watermark(db: Session, device_id: str) -> Optional[datetime]:
    row = db.query(Device.last_sync_watermark).filter(Device.id == device_id).first()
    return row[0] if row else None


def get_sync_cursor(db: Session, device_id: str) -> Tuple[Optional[datetime], Optional[str]]:
    """Return ``(watermark, cursor_id)`` for *device_id*; both None if unknown."""
    row = (
        db.query(Device.last_sync_watermark, Device.last_sync_cursor_id)
        .filter(Device.id == device_id)
        .first()
    )
    return (row[0], row[1]) if row else (None, None)


def set_sync_watermark(
    db: Session,
    device_id: str,
    watermark: datetime,
    cursor_id: Optional[str] = None,
) -> None:
    db.execute(
        update(Device)
        .where(Device.id == device_id)
        .values(last_sync_watermark=watermark, last_sync_cursor_id=cursor_id)
    )
    db.commit()


def get_sync_status(db: Session, device_id: str) -> Optional[DeviceSyncStatus]:
    return db.query(DeviceSyncStatus).filter(DeviceSyncStatus.device_id == device_id).first()


def try_begin_sync(db: Session, device_id: str, *, stale_after: timedelta) -> bool:
    """Atomically set ``sync_in_progress``; False if another pull holds it.

    A flag older than *stale_after* belongs to a pull that died without
    releasing it and is taken over.
    """
    _get_or_create_sync_status(db, device_id)
    db.commit()

    now = utc_now_naive()
    result = db.execute(
        update(DeviceSyncStatus)
        .where(
            DeviceSyncStatus.device_id == device_id,
            or_(
                DeviceSyncStatus.sync_in_progress.is_(False),
                DeviceSyncStatus.sync_started_at.is_(None),
                DeviceSyncStatus.sync_started_at < now - stale_after,
            ),
        )
        .values(sync_in_progress=True, sync_started_at=now)
    )
    db.commit()
    return result.rowcount == 1


def end_sync(db: Session, device_id: str) -> None:
    db.execute(
        update(DeviceSyncStatus)
        .where(DeviceSyncStatus.device_id == device_id)
        .values(sync_in_progress=False, sync_started_at=None)
    )
    db.commit()


# ------------------------------------------------------------
# Outbox queue operations
# ------------------------------------------------------------


def enqueue_message(
    db: Session,
    *,
    device_id: str,
    event_type: str,
    payload: Dict[str, Any],
) -> QueuedMessage:
    """Append a message to *device_id*'s queue and bump its pending counter."""
    message = QueuedMessage(
        message_uuid=str(uuid.uuid4()),
        device_id=device_id,
        event_type=event_type,
        payload=payload,
        created_at=utc_now_naive(),
        delivered=False,
    )
    db.add(message)

    status = _get_or_create_sync_status(db, device_id)
    status.pending_messages = (status.pending_messages or 0) + 1

    db.commit()
    db.refresh(message)
    return message


def get_pending_messages(db: Session, device_id: str, limit: Optional[int] = None) -> List[QueuedMessage]:
    """Undelivered messages for *device_id*, oldest first."""
    query = (
        db.query(QueuedMessage)
        .filter(QueuedMessage.device_id == device_id, QueuedMessage.delivered.is_(False))
        .order_by(QueuedMessage.created_at.asc(), QueuedMessage.id.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def count_pending_messages(db: Session, device_id: str) -> int:
    return int(
        db.query(func.count(QueuedMessage.id))
        .filter(QueuedMessage.device_id == device_id, QueuedMessage.delivered.is_(False))
        .scalar()
        or 0
    )


def mark_messages_delivered(db: Session, device_id: str, message_uuids: List[str]) -> int:
    """Flag matching undelivered messages delivered; returns how many changed."""
    if not message_uuids:
        return 0

    result = db.execute(
        update(QueuedMessage)
        .where(
            QueuedMessage.device_id == device_id,
            QueuedMessage.message_uuid.in_(message_uuids),
            QueuedMessage.delivered.is_(False),
        )
        .values(delivered=True, delivered_at=utc_now_naive())
    )
    acknowledged = result.rowcount or 0

    status = get_sync_status(db, device_id)
    if status is not None:
        status.pending_messages = max(0, (status.pending_messages or 0) - acknowledged)

    db.commit()
    return acknowledged


def delete_delivered_before(db: Session, cutoff: datetime) -> int:
    deleted = (
        db.query(QueuedMessage)
        .filter(QueuedMessage.delivered.is_(True), QueuedMessage.delivered_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted or 0


def delete_undelivered_before(db: Session, cutoff: datetime) -> Dict[str, int]:
    """Drop undelivered messages created before *cutoff*; returns counts per device."""
    rows = (
        db.query(QueuedMessage.device_id, func.count(QueuedMessage.id))
        .filter(QueuedMessage.delivered.is_(False), QueuedMessage.created_at < cutoff)
        .group_by(QueuedMessage.device_id)
        .all()
    )
    if not rows:
        return {}

    db.query(QueuedMessage).filter(
        QueuedMessage.delivered.is_(False),
        QueuedMessage.created_at < cutoff,
    ).delete(synchronize_session=False)
    db.commit()
    return {device_id: int(count) for device_id, count in rows}


def trim_device_queues(db: Session, max_per_device: int) -> Dict[str, int]:
    """Keep at most *max_per_device* undelivered messages per device, newest win."""
    over = (
        db.query(QueuedMessage.device_id, func.count(QueuedMessage.id))
        .filter(QueuedMessage.delivered.is_(False))
        .group_by(QueuedMessage.device_id)
        .having(func.count(QueuedMessage.id) > max_per_device)
        .all()
    )

    trimmed: Dict[str, int] = {}
    for device_id, count in over:
        excess = int(count) - max_per_device
        oldest_ids = [
            row[0]
            for row in db.query(QueuedMessage.id)
            .filter(QueuedMessage.device_id == device_id, QueuedMessage.delivered.is_(False))
            .order_by(QueuedMessage.created_at.asc(), QueuedMessage.id.asc())
            .limit(excess)
            .all()
        ]
        db.query(QueuedMessage).filter(QueuedMessage.id.in_(oldest_ids)).delete(synchronize_session=False)
        trimmed[device_id] = len(oldest_ids)

    db.commit()
    return trimmed


def refresh_pending_counter(db: Session, device_id: str) -> int:
    """Re-derive the denormalised pending counter from the queue table."""
    pending = count_pending_messages(db, device_id)
    status = _get_or_create_sync_status(db, device_id)
    status.pending_messages = pending
    db.commit()
    return pending
