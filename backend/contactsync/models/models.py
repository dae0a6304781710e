from sqlalchemy import JSON
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy.orm import relationship

# Local helpers / enums
from contactsync.database import Base
from contactsync.models.enums import DeviceStatus
from contactsync.utils.time import utc_now_naive

# Business fields a device may edit.  Everything else on a contact row is
# bookkeeping owned by the store.
CONTACT_FIELDS = (
    "client_name",
    "agent_name",
    "phone1",
    "phone2",
    "phone3",
    "state",
    "date",
)


# ---------------------------------------------------------------------------
# Contact – the synchronised record
# ---------------------------------------------------------------------------


class Contact(Base):
    """A versioned, soft-deletable contact entry.

    Rows are never physically removed: a delete flips ``deleted`` and bumps
    ``last_modified`` so delta pulls "since T" observe the tombstone.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        # Delta pulls scan by (deleted, last_modified) in both directions.
        Index("ix_contacts_deleted_last_modified", "deleted", "last_modified"),
    )

    id = Column(String, primary_key=True)

    # Business fields --------------------------------------------------------
    client_name = Column(String, nullable=True)
    agent_name = Column(String, nullable=True)
    # ``phone1`` acts as the business key; uniqueness among *live* rows is
    # enforced by the entity store (tombstones may share it until restored).
    phone1 = Column(String, nullable=True, index=True)
    phone2 = Column(String, nullable=True)
    phone3 = Column(String, nullable=True)
    state = Column(String, nullable=True)
    date = Column(String, nullable=True)

    # Versioning -------------------------------------------------------------
    version = Column(Integer, nullable=False, default=1)
    deleted = Column(Boolean, nullable=False, default=False)
    owner_device_id = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    last_modified = Column(DateTime, nullable=False, default=utc_now_naive)


# ---------------------------------------------------------------------------
# Device registry
# ---------------------------------------------------------------------------


class Device(Base):
    """A sync participant, keyed by a client-chosen identifier."""

    __tablename__ = "devices"

    id = Column(String, primary_key=True)
    display_name = Column(String, nullable=True, default="Unknown")
    kind = Column(String, nullable=True, default="web")
    status = Column(
        SAEnum(DeviceStatus, native_enum=False, name="device_status_enum"),
        nullable=False,
        default=DeviceStatus.ONLINE.value,
    )
    last_seen = Column(DateTime, nullable=True)
    # Server time of the most recent successful delta pull.  NULL = never
    # synced, which resolves to a full sync from the epoch.
    last_sync_watermark = Column(DateTime, nullable=True)
    # Id of the last record delivered at ``last_sync_watermark`` when the
    # previous pull stopped on a full page; NULL once the device caught up.
    last_sync_cursor_id = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)

    sync_status = relationship(
        "DeviceSyncStatus",
        back_populates="device",
        uselist=False,
        cascade="all, delete-orphan",
    )


class DeviceSyncStatus(Base):
    """Per-device sync bookkeeping.

    ``pending_messages`` is a denormalised counter for dashboards only; the
    message queue table is always the source of truth.
    """

    __tablename__ = "device_sync_status"

    device_id = Column(String, ForeignKey("devices.id"), primary_key=True)
    pending_messages = Column(Integer, nullable=False, default=0)
    last_online = Column(DateTime, nullable=True)
    sync_in_progress = Column(Boolean, nullable=False, default=False)
    sync_started_at = Column(DateTime, nullable=True)

    device = relationship("Device", back_populates="sync_status")


# ---------------------------------------------------------------------------
# Outbox queue
# ---------------------------------------------------------------------------


class QueuedMessage(Base):
    """A change notification waiting for an unreachable device."""

    __tablename__ = "message_queue"
    __table_args__ = (Index("ix_message_queue_device_pending", "device_id", "delivered", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_uuid = Column(String, unique=True, nullable=False, index=True)
    device_id = Column(String, nullable=False)
    # Wire event name (``contact-created`` …); the change kind lives in
    # ``payload["event_type"]``.
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    delivered = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(DateTime, nullable=True)
