"""Unit tests for the PresenceTracker and the liveness sweep."""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from contactsync.constants import WS_CLOSE_HEARTBEAT_TIMEOUT
from contactsync.models.enums import DeviceStatus
from contactsync.services.device_registry import DeviceRegistry
from contactsync.services.liveness import LivenessService
from contactsync.websocket.manager import PresenceTracker


@pytest.mark.asyncio
class TestPresenceTracker:
    async def test_attach_detach(self, presence, mock_websocket):
        await presence.attach("dev-a", mock_websocket)
        assert presence.is_online("dev-a")
        assert presence.for_each_online() == ["dev-a"]

        assert await presence.detach("dev-a") is True
        assert not presence.is_online("dev-a")
        assert presence.for_each_online() == []
        assert await presence.detach("dev-a") is False

    async def test_reattach_replaces_and_closes_old_socket(self, presence, make_websocket):
        old_ws = make_websocket()
        new_ws = make_websocket()

        await presence.attach("dev-a", old_ws)
        await presence.attach("dev-a", new_ws)

        assert presence.active_connections["dev-a"] is new_ws
        old_ws.close.assert_awaited()

        # A late disconnect of the replaced socket must not evict the new one.
        assert await presence.detach("dev-a", old_ws) is False
        assert presence.is_online("dev-a")

        await presence.shutdown()

    async def test_send_reaches_socket(self, presence, mock_websocket):
        await presence.attach("dev-a", mock_websocket)

        assert await presence.send("dev-a", {"type": "pong"}) is True
        mock_websocket.send_json.assert_awaited_with({"type": "pong"})

        await presence.shutdown()

    async def test_send_to_offline_device_returns_false(self, presence):
        assert await presence.send("nobody", {"type": "pong"}) is False

    async def test_failed_send_detaches(self, presence, make_websocket):
        ws = make_websocket()
        ws.send_json.side_effect = RuntimeError("broken pipe")
        await presence.attach("dev-a", ws)

        await presence.send("dev-a", {"type": "pong"})
        for _ in range(10):
            if not presence.is_online("dev-a"):
                break
            await asyncio.sleep(0.01)

        assert not presence.is_online("dev-a")

    async def test_queue_full_detaches_device(self, make_websocket):
        tracker = PresenceTracker(queue_size=1, flush_on_send=False)
        ws = make_websocket()

        async def _stall(_payload):
            await asyncio.sleep(10)

        ws.send_json.side_effect = _stall
        await tracker.attach("dev-a", ws)

        results = [await tracker.send("dev-a", {"n": i}) for i in range(3)]
        assert results[-1] is False

        await asyncio.sleep(0.05)
        assert not tracker.is_online("dev-a")
        await tracker.shutdown()

    async def test_heartbeat_only_for_attached_devices(self, presence, mock_websocket):
        assert presence.record_heartbeat("dev-a") is False

        await presence.attach("dev-a", mock_websocket)
        before = presence.last_heartbeat("dev-a")
        assert presence.record_heartbeat("dev-a") is True
        assert presence.last_heartbeat("dev-a") >= before

        await presence.shutdown()

    async def test_sweep_drops_silent_device_only(self, presence, make_websocket):
        silent = make_websocket()
        chatty = make_websocket()
        await presence.attach("silent", silent)
        await presence.attach("chatty", chatty)

        now = time.time()
        presence._last_heartbeat["silent"] = now - 130
        presence._last_heartbeat["chatty"] = now - 10

        detached = await presence.sweep(now)

        assert detached == ["silent"]
        assert presence.for_each_online() == ["chatty"]
        silent.close.assert_awaited_with(code=WS_CLOSE_HEARTBEAT_TIMEOUT, reason="Heartbeat timeout")

        await presence.shutdown()

    async def test_sweep_survives_close_failure(self, presence, make_websocket):
        ws = make_websocket()
        ws.close = AsyncMock(side_effect=RuntimeError("already gone"))
        await presence.attach("dev-a", ws)

        detached = await presence.sweep(time.time() + 500)

        assert detached == ["dev-a"]
        assert not presence.is_online("dev-a")


@pytest.mark.asyncio
class TestLivenessService:
    async def test_silent_device_is_marked_offline(self, presence, db_session, session_factory, make_websocket):
        registry = DeviceRegistry(db_session)
        registry.touch("dev-a")
        registry.touch("dev-b")
        await presence.attach("dev-a", make_websocket())
        await presence.attach("dev-b", make_websocket())

        now = time.time()
        presence._last_heartbeat["dev-a"] = now - 130
        presence._last_heartbeat["dev-b"] = now

        service = LivenessService(presence, session_factory=session_factory)
        result = await service.run_once(now)

        assert result["detached"] == ["dev-a"]
        assert "dev-a" not in presence.for_each_online()

        db_session.expire_all()
        assert registry.get("dev-a").status == DeviceStatus.OFFLINE
        assert registry.get("dev-b").status == DeviceStatus.ONLINE

        await presence.shutdown()

    async def test_http_only_device_goes_offline_when_idle(self, presence, db_session, session_factory):
        registry = DeviceRegistry(db_session)
        registry.touch("http-only")

        service = LivenessService(presence, session_factory=session_factory)
        result = await service.run_once(time.time() + 130)

        assert result["idle"] == ["http-only"]
        db_session.expire_all()
        assert registry.get("http-only").status == DeviceStatus.OFFLINE

    async def test_start_stop(self, presence, db_session, session_factory):
        service = LivenessService(presence, session_factory=session_factory, interval=3600)
        await service.start()
        await service.start()
        assert service._task is not None

        await service.stop()
        assert service._task is None
