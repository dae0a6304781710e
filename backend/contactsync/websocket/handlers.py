"""WebSocket message handlers for the live device channel.

A connection starts anonymous.  ``register-device`` binds it to a device id,
attaches it to the presence tracker and replays the device's outbox; from
then on heartbeats and acknowledgements are accepted.
"""

import logging
from typing import Any
from typing import Dict
from typing import Optional

from fastapi import WebSocket
from pydantic import BaseModel
from pydantic import ValidationError
from sqlalchemy.orm import Session

from contactsync.errors import SyncError
from contactsync.schemas.ws_messages import Envelope
from contactsync.schemas.ws_messages import ErrorData
from contactsync.schemas.ws_messages import HeartbeatData
from contactsync.schemas.ws_messages import MessageAckData
from contactsync.schemas.ws_messages import MessageType
from contactsync.schemas.ws_messages import RegisterDeviceData
from contactsync.schemas.ws_messages import device_topic
from contactsync.services.device_registry import DeviceRegistry
from contactsync.services.sync_engine import SyncEngine
from contactsync.services.sync_engine import sync_engine
from contactsync.utils.time import utc_now

logger = logging.getLogger(__name__)


class DeviceConnection:
    """One accepted socket and the device it registered as (if any)."""

    def __init__(self, websocket: WebSocket, engine: Optional[SyncEngine] = None):
        self.websocket = websocket
        self.engine = engine or sync_engine
        self.device_id: Optional[str] = None

    @property
    def topic(self) -> str:
        return device_topic(self.device_id) if self.device_id else "system"

    async def send(self, envelope: Envelope) -> bool:
        """Send through the presence writer once attached, directly before."""
        payload = envelope.model_dump()
        if self.device_id and self.engine.presence.is_online(self.device_id):
            return await self.engine.presence.send(self.device_id, payload)
        try:
            await self.websocket.send_json(payload)
            return True
        except Exception as e:  # noqa: BLE001 – log & swallow
            logger.error("Error sending to unregistered socket: %s", e)
            return False


async def send_error(conn: DeviceConnection, error_msg: str, req_id: Optional[str] = None) -> None:
    """Send an error frame to the connection."""
    error_data = ErrorData(error=error_msg, details={"req_id": req_id} if req_id else None)
    await conn.send(
        Envelope.create(
            message_type=MessageType.ERROR,
            topic=conn.topic,
            data=error_data.model_dump(),
            req_id=req_id,
        )
    )


async def handle_register_device(conn: DeviceConnection, envelope: Envelope, db: Session) -> None:
    """Bind the socket to a device, confirm, then replay its queued messages."""
    data = RegisterDeviceData.model_validate(envelope.data)

    if conn.device_id and conn.device_id != data.device_id:
        # Switching identity on a live socket: release the old one first.
        await conn.engine.presence.detach(conn.device_id, conn.websocket)
        conn.engine.mark_offline(db, conn.device_id)

    DeviceRegistry(db).touch(data.device_id, display_name=data.name, kind=data.kind)
    await conn.engine.presence.attach(data.device_id, conn.websocket)
    conn.device_id = data.device_id
    logger.info("Device registered: %s (%s)", data.device_id, data.name)

    await conn.send(
        Envelope.create(
            message_type=MessageType.REGISTRATION_CONFIRMED,
            topic=conn.topic,
            data={"device_id": data.device_id, "server_timestamp": utc_now().isoformat()},
            req_id=envelope.req_id,
        )
    )
    await conn.engine.replay_queue(db, data.device_id)


async def handle_heartbeat(conn: DeviceConnection, envelope: Envelope, db: Session) -> None:
    """Refresh registry ``last_seen`` and the in-memory ping time."""
    HeartbeatData.model_validate(envelope.data)
    if conn.device_id is None:
        await send_error(conn, "Device not registered", envelope.req_id)
        return

    DeviceRegistry(db).touch(conn.device_id)
    conn.engine.presence.record_heartbeat(conn.device_id)
    await conn.send(
        Envelope.create(
            message_type=MessageType.HEARTBEAT_ACK,
            topic=conn.topic,
            data={"timestamp": utc_now().isoformat()},
            req_id=envelope.req_id,
        )
    )


async def handle_message_ack(conn: DeviceConnection, envelope: Envelope, db: Session) -> None:
    data = MessageAckData.model_validate(envelope.data)
    if conn.device_id is None:
        await send_error(conn, "Device not registered", envelope.req_id)
        return

    acknowledged = conn.engine.acknowledge(db, conn.device_id, data.message_uuids)
    await conn.send(
        Envelope.create(
            message_type=MessageType.MESSAGE_ACK_RESULT,
            topic=conn.topic,
            data={"acknowledged": acknowledged},
            req_id=envelope.req_id,
        )
    )


async def handle_ping(conn: DeviceConnection, envelope: Envelope, _: Session) -> None:
    if conn.device_id is not None:
        conn.engine.presence.record_heartbeat(conn.device_id)
    await conn.send(
        Envelope.create(
            message_type=MessageType.PONG,
            topic=conn.topic,
            data={"timestamp": envelope.data.get("timestamp")},
            req_id=envelope.req_id,
        )
    )


# Message handler dispatcher
MESSAGE_HANDLERS = {
    MessageType.REGISTER_DEVICE.value: handle_register_device,
    MessageType.HEARTBEAT.value: handle_heartbeat,
    MessageType.MESSAGE_ACK.value: handle_message_ack,
    MessageType.PING.value: handle_ping,
}

# Mapping of *device → server* message types to their strict Pydantic models,
# validated centrally before a handler runs.
_INBOUND_SCHEMA_MAP: Dict[str, type[BaseModel]] = {
    MessageType.REGISTER_DEVICE.value: RegisterDeviceData,
    MessageType.HEARTBEAT.value: HeartbeatData,
    MessageType.MESSAGE_ACK.value: MessageAckData,
}


def _to_envelope(message: Dict[str, Any]) -> Envelope:
    """Accept full envelopes as well as bare ``{type, data}`` / flat frames."""
    if "type" in message and "data" in message and "topic" in message:
        return Envelope.model_validate(message)

    data = message.get("data")
    if not isinstance(data, dict):
        data = {k: v for k, v in message.items() if k not in ("type", "req_id", "message_id")}
    return Envelope.create(
        message_type=message.get("type", ""),
        topic="system",
        data=data,
        req_id=message.get("req_id") or message.get("message_id"),
    )


async def dispatch_message(conn: DeviceConnection, message: Dict[str, Any], db: Session) -> None:
    """Dispatch a decoded frame to the handler for its ``type``."""
    try:
        envelope = _to_envelope(message)
        message_type = envelope.type

        if message_type not in MESSAGE_HANDLERS:
            await send_error(conn, f"Unknown message type: {message_type}", envelope.req_id)
            return

        model_cls = _INBOUND_SCHEMA_MAP.get(message_type)
        if model_cls is not None:
            try:
                model_cls.model_validate(envelope.data)
            except ValidationError as exc:
                logger.debug("Schema validation failed for %s: %s", message_type, exc)
                await send_error(conn, "INVALID_PAYLOAD", envelope.req_id)
                return

        await MESSAGE_HANDLERS[message_type](conn, envelope, db)

    except SyncError as e:
        logger.warning("Sync error handling %s: %s", message.get("type"), e.message)
        await send_error(conn, e.message)
    except Exception as e:
        logger.error("Error dispatching message: %s", e)
        await send_error(conn, "Failed to process message")


__all__ = ["DeviceConnection", "dispatch_message", "send_error"]
