"""Background coroutine that keeps presence honest and the outbox bounded.

Transports do not always report a clean disconnect after a network
partition, so every ``PRESENCE_SWEEP_INTERVAL_SECONDS`` the service:

1. force-detaches devices whose last heartbeat is older than
   ``HEARTBEAT_TIMEOUT_SECONDS`` and marks them offline in the registry,
2. marks registry-online devices without a live connection (HTTP-only
   clients) offline once their ``last_seen`` is equally stale,
3. applies the outbox retention policy.

The service follows a start/stop interface so ``contactsync.main`` can
manage it from the application lifespan.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from datetime import timedelta
from typing import Any
from typing import Dict
from typing import Optional

from sqlalchemy.orm import sessionmaker

from contactsync.config import get_settings
from contactsync.database import db_session
from contactsync.database import get_session_factory
from contactsync.metrics import stale_devices_total
from contactsync.services.device_registry import DeviceRegistry
from contactsync.services.outbox import OutboxQueue
from contactsync.utils.log import get_logger
from contactsync.utils.time import utc_now_naive
from contactsync.websocket.manager import PresenceTracker
from contactsync.websocket.manager import presence_tracker

log = get_logger(service="liveness")


class LivenessService:
    """Periodic presence sweep plus queue retention."""

    def __init__(
        self,
        presence: PresenceTracker,
        *,
        session_factory: Optional[sessionmaker] = None,
        interval: Optional[float] = None,
    ):
        self.presence = presence
        self._session_factory = session_factory
        self._interval = interval

        self._task: Optional[asyncio.Task[None]] = None
        self._shutdown_event = asyncio.Event()

    @property
    def interval(self) -> float:
        if self._interval is not None:
            return float(self._interval)
        return float(get_settings().presence_sweep_interval_seconds)

    async def start(self) -> None:
        if self._task is not None:
            log.debug("liveness", action="already-running")
            return

        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        log.info("liveness", action="started", interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return

        self._shutdown_event.set()
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        log.info("liveness", action="stopped")

    async def _run_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover – keep the loop alive
                log.exception("liveness", action="loop-error", error=str(exc))

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Run one sweep; *now* (epoch seconds) is injectable for tests."""
        now = time.time() if now is None else now
        timeout = self.presence.heartbeat_timeout

        detached = await self.presence.sweep(now)
        if detached:
            stale_devices_total.inc(len(detached))

        factory = self._session_factory or get_session_factory()
        with db_session(factory) as db:
            registry = DeviceRegistry(db)
            for device_id in detached:
                registry.mark_offline(device_id)

            # Registry timestamps are naive UTC; shift "now" by the same
            # offset the caller may have injected.
            cutoff = utc_now_naive() - timedelta(seconds=time.time() - now) - timedelta(seconds=timeout)
            idle = registry.mark_stale_offline(cutoff, exclude=self.presence.for_each_online())

            retention = OutboxQueue(db).enforce_retention()

        if detached or idle:
            log.warning("liveness", action="devices-offline", detached=detached, idle=idle)
        if any(retention.values()):
            log.info("liveness", action="retention", **retention)

        return {"detached": detached, "idle": idle, "retention": retention}


# Global instance driven by the application lifespan
liveness_service = LivenessService(presence_tracker)

__all__ = ["LivenessService", "liveness_service"]
