"""Device presence tracker.

Maps device ids to their live WebSocket connection and last heartbeat time.
The map is a *cache*: it starts empty on every process start and the device
registry (``devices.status``) is reset to match, so nothing durable is lost
when a handle disappears.
"""

from __future__ import annotations

import asyncio
import logging
import time
import zlib
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from fastapi import WebSocket

from contactsync.config import get_settings
from contactsync.constants import WS_CLOSE_HEARTBEAT_TIMEOUT
from contactsync.metrics import devices_online

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Tracks which devices hold a live connection to this process."""

    # Number of lock stripes; attach/detach/sweep for one device id always
    # take the same stripe, unrelated devices rarely contend.
    LOCK_STRIPES = 64

    def __init__(
        self,
        *,
        heartbeat_timeout: Optional[float] = None,
        send_timeout: Optional[float] = None,
        queue_size: Optional[int] = None,
        flush_on_send: Optional[bool] = None,
    ):
        settings = get_settings()
        self.heartbeat_timeout = float(heartbeat_timeout or settings.heartbeat_timeout_seconds)
        self.send_timeout = float(send_timeout or settings.ws_send_timeout_seconds)
        # Unbounded queues under TESTING: the TestClient producer can outrun
        # the writer task and hit QueueFull for reasons unrelated to
        # production back-pressure.
        self.queue_size = queue_size if queue_size is not None else (0 if settings.testing else settings.ws_queue_size)
        self.flush_on_send = settings.testing if flush_on_send is None else flush_on_send

        # Map of device_id to WebSocket connection (guarded by the stripe lock)
        self.active_connections: Dict[str, WebSocket] = {}
        # Map of device_id to outbound message queue
        self.client_queues: Dict[str, asyncio.Queue] = {}
        # Map of device_id to writer task
        self.writer_tasks: Dict[str, asyncio.Task] = {}
        # Wall-clock time of the last heartbeat per device
        self._last_heartbeat: Dict[str, float] = {}

        # Lazily created per event loop to avoid loop binding issues in tests
        self._locks: List[asyncio.Lock] | None = None
        self._locks_loop_id: int | None = None

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        """Return the stripe lock guarding *device_id* for the running loop."""
        loop_id = id(asyncio.get_running_loop())
        if self._locks is None or self._locks_loop_id != loop_id:
            self._locks = [asyncio.Lock() for _ in range(self.LOCK_STRIPES)]
            self._locks_loop_id = loop_id
        return self._locks[zlib.crc32(device_id.encode("utf-8")) % self.LOCK_STRIPES]

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    async def attach(self, device_id: str, websocket: WebSocket) -> None:
        """Register *websocket* as the live connection of *device_id*.

        A previous connection for the same device is replaced and closed.
        """
        replaced: WebSocket | None = None

        async with self._lock_for(device_id):
            current = self.active_connections.get(device_id)
            if current is not None and current is not websocket:
                replaced = current
                self._teardown_locked(device_id)
            elif current is websocket:
                self._last_heartbeat[device_id] = time.time()
                return

            queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
            self.active_connections[device_id] = websocket
            self.client_queues[device_id] = queue
            # The heartbeat countdown starts now: a device gets one full
            # timeout window before its first heartbeat is due.
            self._last_heartbeat[device_id] = time.time()
            self.writer_tasks[device_id] = asyncio.create_task(self._writer(device_id, websocket, queue))

        devices_online.set(len(self.active_connections))
        logger.info("Device %s attached", device_id)

        if replaced is not None:
            logger.info("Device %s re-registered, closing previous connection", device_id)
            try:
                await replaced.close(code=1000, reason="Replaced by newer connection")
            except Exception as exc:  # noqa: BLE001 – socket may already be gone
                logger.debug("Closing replaced socket for %s failed: %s", device_id, exc)

    async def detach(self, device_id: str, websocket: WebSocket | None = None) -> bool:
        """Drop the live connection of *device_id*.

        When *websocket* is given the device is only detached if that socket
        is still its current connection, so a late disconnect of a replaced
        socket cannot evict the newer one.

        Returns:
            True when a connection was removed.
        """
        async with self._lock_for(device_id):
            current = self.active_connections.get(device_id)
            if current is None:
                self._last_heartbeat.pop(device_id, None)
                return False
            if websocket is not None and current is not websocket:
                return False
            self._teardown_locked(device_id)

        devices_online.set(len(self.active_connections))
        logger.info("Device %s detached", device_id)
        return True

    def _teardown_locked(self, device_id: str) -> None:
        """Remove every trace of *device_id*; caller holds its stripe lock."""
        self.active_connections.pop(device_id, None)
        self.client_queues.pop(device_id, None)
        self._last_heartbeat.pop(device_id, None)

        writer_task = self.writer_tasks.pop(device_id, None)
        if writer_task is not None and not writer_task.done() and writer_task is not asyncio.current_task():
            writer_task.cancel()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_online(self, device_id: str) -> bool:
        return device_id in self.active_connections

    def for_each_online(self) -> List[str]:
        """Snapshot of the device ids currently holding a connection."""
        return sorted(self.active_connections)

    def last_heartbeat(self, device_id: str) -> Optional[float]:
        return self._last_heartbeat.get(device_id)

    def record_heartbeat(self, device_id: str) -> bool:
        """Refresh the in-memory last-ping time; False if not attached."""
        if device_id not in self.active_connections:
            return False
        self._last_heartbeat[device_id] = time.time()
        return True

    def stats(self) -> Dict[str, Any]:
        return {
            "online_devices": len(self.active_connections),
            "heartbeat_timeout_seconds": self.heartbeat_timeout,
        }

    # ------------------------------------------------------------------
    # Outbound delivery
    # ------------------------------------------------------------------

    async def send(self, device_id: str, message: Dict[str, Any]) -> bool:
        """Hand *message* to the device's writer queue (fire-and-forget).

        Returns:
            False when the device has no live connection or its queue is full
            (the device is then detached to protect server memory).
        """
        queue = self.client_queues.get(device_id)
        if queue is None:
            return False

        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Queue full for device %s, detaching due to back-pressure", device_id)
            asyncio.create_task(self.detach(device_id))
            return False

        if self.flush_on_send:
            # Test helper: block until the writer flushed so assertions on
            # ``send_json`` right after ``send`` are deterministic.
            try:
                await asyncio.wait_for(queue.join(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.debug("Flush wait timed out for device %s", device_id)
        return True

    async def _writer(self, device_id: str, websocket: WebSocket, queue: asyncio.Queue) -> None:
        """Drain *queue* into *websocket* with a per-send timeout."""
        try:
            while True:
                payload = await queue.get()

                try:
                    await asyncio.wait_for(websocket.send_json(payload), timeout=self.send_timeout)
                except asyncio.TimeoutError:
                    logger.warning("Send timeout for device %s, detaching", device_id)
                    await self.detach(device_id, websocket)
                    return
                except Exception as e:
                    logger.warning("Send error for device %s: %s, detaching", device_id, e)
                    await self.detach(device_id, websocket)
                    return
                finally:
                    queue.task_done()

        except asyncio.CancelledError:
            logger.debug("Writer task for device %s cancelled", device_id)

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """Force-detach devices whose last heartbeat predates the timeout.

        Returns:
            The device ids that were detached.  Updating the registry is the
            caller's job (see ``contactsync.services.liveness``).
        """
        now = time.time() if now is None else now
        stale = [
            (device_id, self.active_connections.get(device_id))
            for device_id, ts in list(self._last_heartbeat.items())
            if now - ts > self.heartbeat_timeout
        ]

        detached: List[str] = []
        for device_id, websocket in stale:
            if websocket is None:
                self._last_heartbeat.pop(device_id, None)
                continue

            logger.warning("Device %s timed out (no heartbeat), closing", device_id)
            try:
                await websocket.close(code=WS_CLOSE_HEARTBEAT_TIMEOUT, reason="Heartbeat timeout")
            except Exception as exc:  # noqa: BLE001 – partitioned sockets often fail to close
                logger.debug("Closing stale socket for %s failed: %s", device_id, exc)

            if await self.detach(device_id, websocket):
                detached.append(device_id)

        return detached

    # ------------------------------------------------------------------
    # Graceful shutdown helper – called from FastAPI lifespan
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Cancel writer tasks and close every socket."""
        for device_id in list(self.active_connections):
            websocket = self.active_connections.get(device_id)
            await self.detach(device_id)
            if websocket is None:
                continue
            try:
                await websocket.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Closing socket for %s during shutdown failed: %s", device_id, exc)


# Create a global instance of the presence tracker
presence_tracker = PresenceTracker()

__all__ = ["PresenceTracker", "presence_tracker"]
