"""
Router for the device sync protocol.

Mounted twice by ``contactsync.main``: at the root (``/sync/...``,
``/ack``) and below ``/contacts`` (``/contacts/sync/...``,
``/contacts/ack``) where older clients expect it.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from sqlalchemy.orm import Session

from contactsync.constants import SYNC_PREFIX
from contactsync.constants import get_full_path
from contactsync.database import get_db
from contactsync.schemas.schemas import AckRequest
from contactsync.schemas.schemas import AckResponse
from contactsync.schemas.schemas import DeltaSyncResponse
from contactsync.schemas.schemas import ReconcileRequest
from contactsync.schemas.schemas import ReconcileResponse
from contactsync.schemas.schemas import ReconnectRequest
from contactsync.schemas.schemas import ReconnectResponse
from contactsync.services.sync_engine import sync_engine
from contactsync.utils.time import to_naive_utc

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["sync"],
)


@router.get(get_full_path(SYNC_PREFIX, "/delta/{device_id}"), response_model=DeltaSyncResponse)
def delta_sync(
    device_id: str,
    since: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    db: Session = Depends(get_db),
):
    """Changes since *since* (or the device's watermark) plus its queued messages"""
    return sync_engine.delta_pull(db, device_id, since=to_naive_utc(since), batch_size=batch_size)


@router.post(SYNC_PREFIX, response_model=ReconcileResponse)
async def reconcile(request: ReconcileRequest, db: Session = Depends(get_db)):
    """Merge a batch of device records using last-write-wins"""
    return await sync_engine.reconcile(db, request.device_id, request.contacts)


@router.post(get_full_path(SYNC_PREFIX, "/reconnect"), response_model=ReconnectResponse)
def reconnect(request: ReconnectRequest, db: Session = Depends(get_db)):
    """Report how far behind a returning device is"""
    return sync_engine.reconnect(db, request.device_id, request.last_seen_timestamp)


@router.post("/ack", response_model=AckResponse)
@router.post(get_full_path(SYNC_PREFIX, "/ack"), response_model=AckResponse)
def acknowledge(request: AckRequest, db: Session = Depends(get_db)):
    """Mark queued messages delivered"""
    return AckResponse(acknowledged=sync_engine.acknowledge(db, request.device_id, request.message_uuids))
