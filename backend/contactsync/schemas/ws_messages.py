"""Typed WebSocket message definitions for the live device channel.

Every frame in either direction is an :class:`Envelope`; the payload models
below describe ``Envelope.data`` for each message type.
"""

import time
from enum import Enum
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import AliasChoices
from pydantic import BaseModel
from pydantic import Field


class MessageType(str, Enum):
    """Message types understood on the live channel."""

    # Device -> server
    REGISTER_DEVICE = "register-device"
    HEARTBEAT = "heartbeat"
    MESSAGE_ACK = "message-ack"
    PING = "ping"

    # Server -> device
    REGISTRATION_CONFIRMED = "registration-confirmed"
    HEARTBEAT_ACK = "heartbeat-ack"
    CONTACT_CREATED = "contact-created"
    CONTACT_UPDATED = "contact-updated"
    CONTACT_DELETED = "contact-deleted"
    QUEUED_MESSAGE = "queued-message"
    QUEUED_MESSAGES_COMPLETE = "queued-messages-complete"
    MESSAGE_ACK_RESULT = "message-ack-result"
    PONG = "pong"
    ERROR = "error"


class Envelope(BaseModel):
    """Unified envelope for all WebSocket messages."""

    v: int = Field(default=1, description="Protocol version")
    type: str = Field(description="Message type identifier")
    topic: str = Field(default="system", description="Topic routing string")
    req_id: Optional[str] = Field(default=None, description="Request correlation ID")
    ts: int = Field(default_factory=lambda: int(time.time() * 1000), description="Milliseconds since epoch")
    data: Dict[str, Any] = Field(default_factory=dict, description="Message payload")

    @classmethod
    def create(
        cls,
        message_type: str,
        topic: str,
        data: Dict[str, Any],
        req_id: Optional[str] = None,
    ) -> "Envelope":
        """Create a new envelope stamped with the current time."""
        return cls(
            type=str(getattr(message_type, "value", message_type)).lower(),
            topic=topic,
            data=data,
            req_id=req_id,
            ts=int(time.time() * 1000),
        )


def device_topic(device_id: str) -> str:
    return f"device:{device_id}"


# Message payload schemas


class RegisterDeviceData(BaseModel):
    """Payload for ``register-device``.

    ``device_name``/``device_type`` are accepted for older clients.
    """

    device_id: str = Field(min_length=1)
    name: Optional[str] = Field(default=None, validation_alias=AliasChoices("name", "device_name"))
    kind: Optional[str] = Field(default=None, validation_alias=AliasChoices("kind", "device_type"))


class HeartbeatData(BaseModel):
    device_id: Optional[str] = None
    ts: Optional[Any] = None


class MessageAckData(BaseModel):
    message_uuids: List[str]


class QueuedMessageData(BaseModel):
    id: int
    type: str
    data: Dict[str, Any]
    message_uuid: str


class ErrorData(BaseModel):
    error: str
    details: Optional[Dict[str, Any]] = None


__all__ = [
    "MessageType",
    "Envelope",
    "device_topic",
    "RegisterDeviceData",
    "HeartbeatData",
    "MessageAckData",
    "QueuedMessageData",
    "ErrorData",
]
