"""
Router for contact-related endpoints.

This module provides the CRUD surface used by browser clients and the
duplicate-phone check.  Every write goes through the entity store, so it is
fanned out to the other devices before the response is sent.
"""

import logging
from datetime import datetime
from typing import List
from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query
from fastapi import status
from sqlalchemy.orm import Session

from contactsync.database import get_db
from contactsync.errors import store_errors
from contactsync.schemas.schemas import Contact
from contactsync.schemas.schemas import ContactCreate
from contactsync.schemas.schemas import ContactDelete
from contactsync.schemas.schemas import ContactList
from contactsync.schemas.schemas import ContactUpdate
from contactsync.schemas.schemas import DeleteResult
from contactsync.schemas.schemas import DeviceOut
from contactsync.schemas.schemas import DuplicateCheck
from contactsync.schemas.schemas import Tombstone
from contactsync.services.device_registry import DeviceRegistry
from contactsync.services.entity_store import EntityStore
from contactsync.utils.time import to_naive_utc
from contactsync.utils.time import utc_now_naive
from contactsync.websocket.manager import presence_tracker

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["contacts"],
)


@router.get("/", response_model=ContactList)
@router.get("", response_model=ContactList)
def read_contacts(
    device_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = Query(1000, ge=1),
    db: Session = Depends(get_db),
):
    """Full list (newest first), or a delta with tombstones when *since* is given."""
    with store_errors("fetch contacts"):
        if device_id:
            DeviceRegistry(db).touch(device_id)

        store = EntityStore(db)
        server_timestamp = utc_now_naive()
        if since is None:
            return ContactList(contacts=store.list_live(limit), server_timestamp=server_timestamp)

        since = to_naive_utc(since)
        return ContactList(
            contacts=store.list_since(since, limit),
            deleted=[Tombstone.model_validate(t) for t in store.list_deleted_since(since, limit)],
            server_timestamp=server_timestamp,
        )


@router.get("/phone/{number}", response_model=DuplicateCheck)
def check_duplicate(number: str, db: Session = Depends(get_db)):
    """Tell whether a contact already uses *number* as its primary phone"""
    with store_errors("check duplicate"):
        contact = EntityStore(db).find_by_phone(number)
    if contact is None:
        return DuplicateCheck(exists=False)
    return DuplicateCheck(exists=True, contact=contact)


@router.get("/devices", response_model=List[DeviceOut])
def read_devices(db: Session = Depends(get_db)):
    """Known devices with their sync status and live presence"""
    with store_errors("fetch devices"):
        return DeviceRegistry(db).list_devices(presence_tracker.for_each_online())


@router.get("/{contact_id}", response_model=Contact)
def read_contact(contact_id: str, db: Session = Depends(get_db)):
    """Get a specific live contact by ID"""
    with store_errors("fetch contact"):
        return EntityStore(db).require_live(contact_id)


@router.post("/", response_model=Contact, status_code=status.HTTP_201_CREATED)
@router.post("", response_model=Contact, status_code=status.HTTP_201_CREATED)
async def create_contact(contact: ContactCreate, db: Session = Depends(get_db)):
    """Create a contact, or restore the deleted one that owned the same phone"""
    with store_errors("create contact"):
        if contact.device_id:
            DeviceRegistry(db).touch(contact.device_id)
        record, kind = await EntityStore(db).create(contact.model_dump(exclude={"device_id"}), contact.device_id)
    logger.info("Contact %s %s via HTTP", record.id, kind.value)
    return record


@router.put("/{contact_id}", response_model=Contact)
async def update_contact(contact_id: str, contact: ContactUpdate, db: Session = Depends(get_db)):
    """Update the supplied fields of a live contact"""
    with store_errors("update contact"):
        if contact.device_id:
            DeviceRegistry(db).touch(contact.device_id)
        return await EntityStore(db).update(
            contact_id,
            contact.model_dump(exclude_unset=True, exclude={"device_id"}),
            contact.device_id,
        )


@router.delete("/{contact_id}", response_model=DeleteResult)
async def delete_contact(
    contact_id: str,
    body: Optional[ContactDelete] = None,
    device_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Soft-delete a contact; the tombstone propagates through delta sync"""
    device_id = (body.device_id if body else None) or device_id
    with store_errors("delete contact"):
        if device_id:
            DeviceRegistry(db).touch(device_id)
        record = await EntityStore(db).soft_delete(contact_id, device_id)
    return DeleteResult(success=True, deleted=record)
