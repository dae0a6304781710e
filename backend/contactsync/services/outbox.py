"""Per-device outbox of change notifications awaiting acknowledgement."""

from __future__ import annotations

import logging
from datetime import datetime
from datetime import timedelta
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from sqlalchemy.orm import Session

from contactsync.config import get_settings
from contactsync.crud import crud
from contactsync.metrics import acknowledged_messages_total
from contactsync.metrics import expired_messages_total
from contactsync.metrics import queued_messages_total
from contactsync.models.models import QueuedMessage
from contactsync.utils.time import utc_now_naive

logger = logging.getLogger(__name__)


class OutboxQueue:
    """Durable FIFO of undelivered messages, one lane per device."""

    def __init__(self, db: Session):
        self.db = db

    def enqueue(self, device_id: str, event_type: str, payload: Dict[str, Any]) -> QueuedMessage:
        message = crud.enqueue_message(self.db, device_id=device_id, event_type=event_type, payload=payload)
        queued_messages_total.inc()
        logger.debug("Queued %s (%s) for device %s", message.message_uuid, event_type, device_id)
        return message

    def pending(self, device_id: str, limit: Optional[int] = None) -> List[QueuedMessage]:
        """Undelivered messages, oldest first."""
        return crud.get_pending_messages(self.db, device_id, limit)

    def count_pending(self, device_id: str) -> int:
        return crud.count_pending_messages(self.db, device_id)

    def acknowledge(self, device_id: str, message_uuids: List[str]) -> int:
        """Mark messages delivered.

        Only undelivered messages that belong to *device_id* count; unknown,
        foreign and already-acknowledged uuids are ignored, so repeating an
        acknowledgement is harmless.
        """
        acknowledged = crud.mark_messages_delivered(self.db, device_id, message_uuids)
        if acknowledged:
            acknowledged_messages_total.inc(acknowledged)
        logger.info("Device %s acknowledged %d/%d message(s)", device_id, acknowledged, len(message_uuids))
        return acknowledged

    def enforce_retention(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Apply the retention policy and return how many rows each rule removed.

        * delivered messages are kept for ``QUEUE_DELIVERED_RETENTION_HOURS``
        * undelivered messages expire after ``QUEUE_MAX_AGE_DAYS``
        * each device keeps at most ``QUEUE_MAX_PER_DEVICE`` undelivered
          messages, the oldest are dropped first

        A device that lost undelivered messages must run a full resync; the
        reconnect probe reports this through its change count.
        """
        settings = get_settings()
        now = now or utc_now_naive()

        delivered = crud.delete_delivered_before(
            self.db, now - timedelta(hours=settings.queue_delivered_retention_hours)
        )
        expired = crud.delete_undelivered_before(self.db, now - timedelta(days=settings.queue_max_age_days))
        trimmed = crud.trim_device_queues(self.db, settings.queue_max_per_device)

        for device_id in set(expired) | set(trimmed):
            crud.refresh_pending_counter(self.db, device_id)
            logger.warning(
                "Dropped %d undelivered message(s) for device %s",
                expired.get(device_id, 0) + trimmed.get(device_id, 0),
                device_id,
            )

        summary = {
            "delivered": delivered,
            "expired": sum(expired.values()),
            "trimmed": sum(trimmed.values()),
        }
        for reason, count in summary.items():
            if count:
                expired_messages_total.labels(reason=reason).inc(count)
        return summary
