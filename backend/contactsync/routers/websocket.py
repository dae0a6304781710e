"""WebSocket routing module for the live device channel."""

from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter
from fastapi import WebSocket
from fastapi import WebSocketDisconnect
from sqlalchemy.orm import Session
from sqlalchemy.orm import sessionmaker

from contactsync.constants import WS_ENDPOINT
from contactsync.database import get_session_factory
from contactsync.schemas.ws_messages import Envelope
from contactsync.schemas.ws_messages import ErrorData
from contactsync.schemas.ws_messages import MessageType
from contactsync.services.sync_engine import sync_engine
from contactsync.websocket.handlers import DeviceConnection
from contactsync.websocket.handlers import dispatch_message

router = APIRouter()
logger = logging.getLogger(__name__)


def get_websocket_session(session_factory: Optional[sessionmaker] = None) -> Session:
    """Create a new database session for WebSocket handlers.

    The caller must close it.
    """
    factory = session_factory or get_session_factory()
    return factory()


@router.websocket(WS_ENDPOINT)
async def websocket_endpoint(websocket: WebSocket):
    """Live channel: register, heartbeat, acknowledge, receive pushes."""
    await websocket.accept()
    conn = DeviceConnection(websocket, sync_engine)
    logger.info("New WebSocket connection")

    try:
        while True:
            raw_data = await websocket.receive_text()
            # Get a fresh DB session for each message
            db = get_websocket_session()
            try:
                data = json.loads(raw_data)
                if not isinstance(data, dict):
                    raise json.JSONDecodeError("Expected a JSON object", raw_data, 0)
                await dispatch_message(conn, data, db)
            except json.JSONDecodeError as e:
                logger.warning("Invalid JSON from %s: %s", conn.device_id or "unregistered socket", e)
                await conn.send(
                    Envelope.create(
                        MessageType.ERROR,
                        topic=conn.topic,
                        data=ErrorData(error="Invalid JSON payload").model_dump(),
                    )
                )
            finally:
                db.close()

    except WebSocketDisconnect:
        logger.info("WebSocket connection closed for %s", conn.device_id or "unregistered socket")
    except Exception as e:
        logger.error("WebSocket error for %s: %s", conn.device_id, e)
    finally:
        if conn.device_id is not None:
            # Only the socket that still owns the device may mark it offline;
            # a replaced connection closing late must not evict the new one.
            if await sync_engine.presence.detach(conn.device_id, websocket):
                db = get_websocket_session()
                try:
                    sync_engine.mark_offline(db, conn.device_id)
                except Exception as e:
                    logger.error("Could not mark %s offline: %s", conn.device_id, e)
                finally:
                    db.close()
                logger.info("Device marked offline: %s", conn.device_id)
