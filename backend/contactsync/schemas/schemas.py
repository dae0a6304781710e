from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import field_validator

from contactsync.utils.time import to_naive_utc


# Contact schemas
class ContactBase(BaseModel):
    client_name: Optional[str] = None
    agent_name: Optional[str] = None
    phone1: Optional[str] = None
    phone2: Optional[str] = None
    phone3: Optional[str] = None
    state: Optional[str] = None
    date: Optional[str] = None


class ContactCreate(ContactBase):
    # Optional client-chosen id; when it names an existing live contact the
    # write is treated as an update.
    id: Optional[str] = None
    device_id: Optional[str] = None


class ContactUpdate(ContactBase):
    device_id: Optional[str] = None


class ContactDelete(BaseModel):
    device_id: Optional[str] = None


class Contact(ContactBase):
    id: str
    version: int
    deleted: bool
    owner_device_id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_modified: datetime

    model_config = ConfigDict(from_attributes=True)


class Tombstone(BaseModel):
    """Minimal deletion marker returned by delta pulls."""

    id: str
    deleted: bool = True
    last_modified: datetime

    model_config = ConfigDict(from_attributes=True)


class ContactList(BaseModel):
    contacts: List[Contact]
    deleted: Optional[List[Tombstone]] = None
    server_timestamp: datetime


class DuplicateCheck(BaseModel):
    exists: bool
    contact: Optional[Contact] = None


class DeleteResult(BaseModel):
    success: bool
    deleted: Contact


# ------------------------------------------------------------
# Device schemas
# ------------------------------------------------------------


class DeviceOut(BaseModel):
    id: str
    display_name: Optional[str] = None
    kind: Optional[str] = None
    status: str
    last_seen: Optional[datetime] = None
    last_sync_watermark: Optional[datetime] = None
    pending_messages: int = 0
    last_online: Optional[datetime] = None
    sync_in_progress: bool = False
    # Live presence as seen by this process (registry status may lag).
    online: bool = False


# ------------------------------------------------------------
# Sync protocol schemas
# ------------------------------------------------------------


class QueuedMessageOut(BaseModel):
    id: int
    message_uuid: str
    event_type: str
    event_data: Dict[str, Any]
    created_at: datetime

    @classmethod
    def from_model(cls, message: Any) -> "QueuedMessageOut":
        return cls(
            id=message.id,
            message_uuid=message.message_uuid,
            event_type=message.event_type,
            event_data=message.payload,
            created_at=message.created_at,
        )


class DeltaSyncResponse(BaseModel):
    contacts: List[Contact]
    deleted: List[Tombstone]
    queued_messages: List[QueuedMessageOut]
    server_timestamp: datetime
    since: datetime
    has_more: bool


class ClientContact(ContactBase):
    """A record as held by a device, submitted for bulk reconciliation."""

    id: str
    version: Optional[int] = None
    deleted: Optional[bool] = False
    last_modified: Optional[datetime] = None

    @field_validator("last_modified")
    @classmethod
    def _normalise_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)


class ReconcileRequest(BaseModel):
    device_id: str
    # Validated by the router so a non-list yields 400 rather than 422.
    contacts: Any = None
    last_sync: Optional[datetime] = None


class SyncConflict(BaseModel):
    id: str
    server_version: Contact
    client_version: Dict[str, Any]
    reason: Optional[str] = None


class ReconcileResponse(BaseModel):
    synced: List[Contact]
    conflicts: List[SyncConflict]
    server_timestamp: datetime


class AckRequest(BaseModel):
    device_id: str
    # Validated by the router so a non-list yields 400 rather than 422.
    message_uuids: Any = None


class AckResponse(BaseModel):
    acknowledged: int


class ReconnectRequest(BaseModel):
    device_id: str
    last_seen_timestamp: Optional[datetime] = None

    @field_validator("last_seen_timestamp")
    @classmethod
    def _normalise_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)


class ReconnectResponse(BaseModel):
    status: str
    pending_messages: int
    recent_changes: int
    requires_full_sync: bool
