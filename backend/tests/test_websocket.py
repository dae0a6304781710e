"""Integration tests for the live device channel at ``/ws``."""

import time

import pytest

from contactsync.crud import crud
from contactsync.models.enums import DeviceStatus
from contactsync.schemas.ws_messages import MessageType
from contactsync.services.outbox import OutboxQueue
from contactsync.websocket.manager import presence_tracker


def _register(ws, device_id, name="Test device"):
    ws.send_json({"type": "register-device", "data": {"device_id": device_id, "name": name}})
    return ws.receive_json()


def _wait_for(predicate, timeout=1.0):
    """Server-side cleanup runs after the client closes; give it a moment."""
    deadline = time.time() + timeout
    while not predicate() and time.time() < deadline:
        time.sleep(0.01)
    return predicate()


def _registry_status(db, device_id):
    db.expire_all()
    return crud.get_device(db, device_id).status


@pytest.fixture
def ws_client(client):
    with client.websocket_connect("/ws") as websocket:
        yield websocket


class TestRegistration:
    def test_register_confirms_and_replays_nothing(self, ws_client, db_session):
        confirmed = _register(ws_client, "dev-a")

        assert confirmed["type"] == MessageType.REGISTRATION_CONFIRMED.value
        assert confirmed["data"]["device_id"] == "dev-a"
        assert confirmed["topic"] == "device:dev-a"
        assert "server_timestamp" in confirmed["data"]

        complete = ws_client.receive_json()
        assert complete["type"] == MessageType.QUEUED_MESSAGES_COMPLETE.value
        assert complete["data"] == {"total_sent": 0}

        db_session.expire_all()
        device = crud.get_device(db_session, "dev-a")
        assert device.display_name == "Test device"
        assert device.status == DeviceStatus.ONLINE

    def test_register_accepts_legacy_flat_frame(self, ws_client):
        ws_client.send_json({"type": "register-device", "device_id": "dev-flat", "device_name": "Old client"})

        confirmed = ws_client.receive_json()
        assert confirmed["type"] == "registration-confirmed"
        assert confirmed["data"]["device_id"] == "dev-flat"

    def test_register_replays_queue_in_order(self, client, db_session):
        outbox = OutboxQueue(db_session)
        first = outbox.enqueue("dev-q", "contact-created", {"id": "c1", "event_type": "created"})
        second = outbox.enqueue("dev-q", "contact-deleted", {"id": "c1", "event_type": "deleted"})

        with client.websocket_connect("/ws") as ws:
            _register(ws, "dev-q")
            replayed = [ws.receive_json(), ws.receive_json()]
            complete = ws.receive_json()

        assert [m["type"] for m in replayed] == ["queued-message", "queued-message"]
        assert [m["data"]["message_uuid"] for m in replayed] == [first.message_uuid, second.message_uuid]
        assert replayed[0]["data"]["type"] == "contact-created"
        assert replayed[0]["data"]["data"]["id"] == "c1"
        assert complete["data"] == {"total_sent": 2}

        # Replay alone does not mark anything delivered.
        assert OutboxQueue(db_session).count_pending("dev-q") == 2

    def test_register_rejects_missing_device_id(self, ws_client):
        ws_client.send_json({"type": "register-device", "data": {"name": "no id"}})

        error = ws_client.receive_json()
        assert error["type"] == "error"
        assert error["data"]["error"] == "INVALID_PAYLOAD"

    def test_disconnect_marks_device_offline(self, client, db_session):
        with client.websocket_connect("/ws") as ws:
            _register(ws, "dev-gone")
            ws.receive_json()

        assert _wait_for(lambda: _registry_status(db_session, "dev-gone") == DeviceStatus.OFFLINE)
        assert not presence_tracker.is_online("dev-gone")


class TestHeartbeatAndAck:
    def test_heartbeat_requires_registration(self, ws_client):
        ws_client.send_json({"type": "heartbeat", "data": {}})

        error = ws_client.receive_json()
        assert error["type"] == "error"
        assert error["data"]["error"] == "Device not registered"

    def test_heartbeat_is_acknowledged(self, ws_client):
        _register(ws_client, "dev-hb")
        ws_client.receive_json()

        ws_client.send_json({"type": "heartbeat", "data": {"device_id": "dev-hb"}, "req_id": "hb-1"})
        ack = ws_client.receive_json()

        assert ack["type"] == MessageType.HEARTBEAT_ACK.value
        assert ack["req_id"] == "hb-1"
        assert "timestamp" in ack["data"]

    def test_message_ack_drains_queue(self, client, db_session):
        message = OutboxQueue(db_session).enqueue("dev-ack", "contact-created", {"id": "c1"})

        with client.websocket_connect("/ws") as ws:
            _register(ws, "dev-ack")
            ws.receive_json()
            ws.receive_json()

            ws.send_json({"type": "message-ack", "data": {"message_uuids": [message.message_uuid, "unknown"]}})
            result = ws.receive_json()

        assert result["type"] == MessageType.MESSAGE_ACK_RESULT.value
        assert result["data"] == {"acknowledged": 1}
        assert OutboxQueue(db_session).count_pending("dev-ack") == 0

    def test_ping_pong(self, ws_client):
        ws_client.send_json({"type": "ping", "data": {"timestamp": 123456789}})

        pong = ws_client.receive_json()
        assert pong["type"] == "pong"
        assert pong["data"]["timestamp"] == 123456789


class TestMalformedFrames:
    def test_invalid_json(self, ws_client):
        ws_client.send_text("{not json")

        error = ws_client.receive_json()
        assert error["type"] == "error"
        assert error["data"]["error"] == "Invalid JSON payload"

    def test_unknown_type(self, ws_client):
        ws_client.send_json({"type": "teleport", "data": {}})

        error = ws_client.receive_json()
        assert error["type"] == "error"
        assert "Unknown message type" in error["data"]["error"]

    def test_socket_survives_bad_frames(self, ws_client):
        ws_client.send_text("[]")
        assert ws_client.receive_json()["type"] == "error"

        ws_client.send_json({"type": "ping", "data": {}})
        assert ws_client.receive_json()["type"] == "pong"


class TestLivePush:
    def test_http_write_reaches_other_device_live(self, client, db_session):
        with client.websocket_connect("/ws") as ws:
            _register(ws, "dev-live")
            ws.receive_json()

            response = client.post("/contacts", json={"client_name": "Ada", "phone1": "555-0200", "device_id": "dev-web"})
            assert response.status_code == 201
            contact_id = response.json()["id"]

            pushed = ws.receive_json()
            assert pushed["type"] == "contact-created"
            assert pushed["data"]["id"] == contact_id
            assert pushed["data"]["event_type"] == "created"

            client.delete(f"/contacts/{contact_id}", params={"device_id": "dev-web"})
            deleted = ws.receive_json()
            assert deleted["type"] == "contact-deleted"
            assert set(deleted["data"]) == {"id", "event_type", "timestamp"}

        # Pushed live, so nothing was queued for the connected device ...
        assert OutboxQueue(db_session).count_pending("dev-live") == 0
        # ... and the originating device never receives its own change.
        assert OutboxQueue(db_session).count_pending("dev-web") == 0

    def test_offline_device_gets_queued_copy(self, client, db_session):
        with client.websocket_connect("/ws") as ws:
            _register(ws, "dev-later")
            ws.receive_json()
        assert _wait_for(lambda: not presence_tracker.is_online("dev-later"))

        client.post("/contacts", json={"client_name": "Grace", "device_id": "dev-web"})

        pending = OutboxQueue(db_session).pending("dev-later")
        assert [m.event_type for m in pending] == ["contact-created"]
