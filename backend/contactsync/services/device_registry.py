"""Durable per-device bookkeeping: presence flag, watermark, pull lock."""

from __future__ import annotations

import logging
from datetime import datetime
from datetime import timedelta
from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple

from sqlalchemy.orm import Session

from contactsync.config import get_settings
from contactsync.crud import crud
from contactsync.models.enums import DeviceStatus
from contactsync.models.models import Device
from contactsync.schemas.schemas import DeviceOut

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Device registry bound to one database session."""

    def __init__(self, db: Session, *, sync_lock_timeout: Optional[float] = None):
        self.db = db
        if sync_lock_timeout is None:
            sync_lock_timeout = get_settings().sync_lock_timeout_seconds
        self.sync_lock_timeout = timedelta(seconds=sync_lock_timeout)

    def get(self, device_id: str) -> Optional[Device]:
        return crud.get_device(self.db, device_id)

    def touch(self, device_id: str, display_name: Optional[str] = None, kind: Optional[str] = None) -> Device:
        """Create or refresh *device_id*; always leaves it online."""
        return crud.touch_device(self.db, device_id, display_name=display_name, kind=kind)

    def mark_offline(self, device_id: str) -> bool:
        changed = crud.mark_device_offline(self.db, device_id)
        if changed:
            logger.info("Device %s marked offline", device_id)
        return changed

    def reset_presence(self) -> int:
        """Mark every device offline; run once at startup."""
        count = crud.mark_all_devices_offline(self.db)
        if count:
            logger.info("Reset %d device(s) to offline after restart", count)
        return count

    def mark_stale_offline(self, cutoff: datetime, exclude: Iterable[str] = ()) -> List[str]:
        """Offline every device last seen before *cutoff* (except *exclude*)."""
        return crud.mark_stale_devices_offline(self.db, cutoff, exclude)

    # ------------------------------------------------------------------
    # Delta-pull bookkeeping
    # ------------------------------------------------------------------

    def get_watermark(self, device_id: str) -> Optional[datetime]:
        return crud.get_sync_watermark(self.db, device_id)

    def get_cursor(self, device_id: str) -> Tuple[Optional[datetime], Optional[str]]:
        return crud.get_sync_cursor(self.db, device_id)

    def set_watermark(self, device_id: str, watermark: datetime, cursor_id: Optional[str] = None) -> None:
        crud.set_sync_watermark(self.db, device_id, watermark, cursor_id)

    def try_begin_sync(self, device_id: str) -> bool:
        return crud.try_begin_sync(self.db, device_id, stale_after=self.sync_lock_timeout)

    def end_sync(self, device_id: str) -> None:
        crud.end_sync(self.db, device_id)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_devices(self, online_ids: Iterable[str] = ()) -> List[DeviceOut]:
        """All devices with their sync status; ``online`` reflects live presence."""
        live = set(online_ids)
        result = []
        for device in crud.get_devices(self.db):
            status = device.sync_status
            result.append(
                DeviceOut(
                    id=device.id,
                    display_name=device.display_name,
                    kind=device.kind,
                    status=DeviceStatus(device.status).value,
                    last_seen=device.last_seen,
                    last_sync_watermark=device.last_sync_watermark,
                    pending_messages=status.pending_messages if status else 0,
                    last_online=status.last_online if status else None,
                    sync_in_progress=bool(status.sync_in_progress) if status else False,
                    online=device.id in live,
                )
            )
        return result
