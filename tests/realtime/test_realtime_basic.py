import json

import pytest
from fastapi.testclient import TestClient

from assistance_service.main import app
from assistance_service.database import Base, engine

client = TestClient(app)


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def create_room(name: str = "Room A", location: str = "Floor 1") -> dict:
    res = client.post("/api/rooms", json={"name": name, "location": location})
    assert res.status_code == 201
    return res.json()


def request_assistance_message(room: dict) -> dict:
    return {
        "type": "requestAssistance",
        "roomId": room["id"],
        "roomName": room["name"],
        "roomLocation": room["location"],
    }


def test_request_assistance_is_broadcast_to_every_connection():
    room = create_room()

    with client.websocket_connect("/ws") as ws1, client.websocket_connect(
        "/ws"
    ) as ws2, client.websocket_connect("/ws") as ws3:
        ws1.send_json(request_assistance_message(room))
        frames = [ws.receive_text() for ws in (ws1, ws2, ws3)]

    assert len(set(frames)) == 1
    msg = json.loads(frames[0])
    assert msg["type"] == "notification"
    assert msg["status"] == "waiting"
    assert msg["roomName"] == "Room A"
    assert msg["roomLocation"] == "Floor 1"
    assert isinstance(msg["timestamp"], int)

    requests = client.get("/api/assistance-requests").json()
    assert [r["id"] for r in requests] == [msg["requestId"]]

    activity = client.get("/api/activities").json()[0]
    assert activity["type"] == "requested"
    assert activity["roomName"] == "Room A"


def test_update_request_status_over_realtime_channel():
    room = create_room()
    request = client.post(
        "/api/assistance-requests",
        json={"roomId": room["id"], "roomName": room["name"], "roomLocation": room["location"]},
    ).json()

    with client.websocket_connect("/ws") as ws:
        ws.send_json(
            {
                "type": "updateRequestStatus",
                "requestId": request["id"],
                "status": "in-progress",
                "updatedBy": "Bob",
            }
        )
        msg = ws.receive_json()
        assert msg["requestId"] == request["id"]
        assert msg["status"] == "in-progress"

        ws.send_json(
            {
                "type": "updateRequestStatus",
                "requestId": request["id"],
                "status": "resolved",
                "updatedBy": "Bob",
            }
        )
        assert ws.receive_json()["status"] == "resolved"

    stored = client.get(f"/api/assistance-requests/{request['id']}").json()
    assert stored["respondedAt"] is not None
    assert stored["resolvedBy"] == "Bob"

    resolved, responded = client.get("/api/activities").json()[:2]
    assert responded["message"] == "Bob responded to Room A request"
    assert responded["technician"] == "Bob"
    assert resolved["type"] == "resolved"


def test_invalid_and_unknown_messages_are_dropped_silently():
    room = create_room()

    with client.websocket_connect("/ws") as ws:
        ws.send_text("this is not json")
        ws.send_json({"type": "bogus"})
        ws.send_json({"type": "requestAssistance", "roomId": room["id"]})
        ws.send_json({"type": "updateRequestStatus", "requestId": 1, "status": "done"})
        ws.send_json({"type": "updateRequestStatus", "requestId": 999, "status": "resolved"})
        ws.send_bytes(b"\xff\xfe")

        # the connection is still usable and the next frame is for this message
        ws.send_json(request_assistance_message(room))
        msg = ws.receive_json()
        assert msg["type"] == "notification"
        assert msg["status"] == "waiting"

    assert len(client.get("/api/assistance-requests").json()) == 1
    assert [a["type"] for a in client.get("/api/activities").json()] == ["requested"]


def test_rest_mutations_are_broadcast():
    room = create_room()

    with client.websocket_connect("/ws") as ws:
        res = client.post(
            "/api/assistance-requests",
            json={"roomId": room["id"], "roomName": room["name"], "roomLocation": room["location"]},
        )
        assert res.status_code == 201
        created = ws.receive_json()
        assert created["requestId"] == res.json()["id"]
        assert created["status"] == "waiting"

        client.patch(
            f"/api/assistance-requests/{created['requestId']}",
            json={"status": "resolved", "resolvedBy": "Alice"},
        )
        updated = ws.receive_json()
        assert updated["requestId"] == created["requestId"]
        assert updated["status"] == "resolved"


def test_duplicate_requests_are_not_deduplicated():
    room = create_room()

    with client.websocket_connect("/ws") as ws:
        ws.send_json(request_assistance_message(room))
        ws.send_json(request_assistance_message(room))
        first = ws.receive_json()
        second = ws.receive_json()

    assert first["requestId"] != second["requestId"]
    assert len(client.get("/api/assistance-requests/active").json()) == 2


def test_closed_connections_are_unregistered():
    hub = app.state.hub

    with client.websocket_connect("/ws"):
        with client.websocket_connect("/ws"):
            assert len(hub.registry) == 2
        assert len(hub.registry) == 1
    assert len(hub.registry) == 0


def test_connection_survives_unexpected_error_while_applying_message(monkeypatch):
    from assistance_service.lifecycle import LifecycleService

    room = create_room()

    def explode(self, request_id, status, updated_by=None):
        raise OverflowError("Python int too large to convert to SQLite INTEGER")

    with client.websocket_connect("/ws") as ws:
        monkeypatch.setattr(LifecycleService, "update_status", explode)
        ws.send_json({"type": "updateRequestStatus", "requestId": 1, "status": "resolved"})
        ws.send_json(request_assistance_message(room))

        msg = ws.receive_json()
        assert msg["type"] == "notification"
        assert msg["status"] == "waiting"
        assert len(app.state.hub.registry) == 1


def test_out_of_range_request_id_is_dropped_and_connection_stays_open():
    room = create_room()

    with client.websocket_connect("/ws") as ws:
        ws.send_json(
            {"type": "updateRequestStatus", "requestId": 10**30, "status": "resolved", "updatedBy": "Bob"}
        )
        ws.send_json(request_assistance_message(room))

        msg = ws.receive_json()
        assert msg["status"] == "waiting"

    assert [a["type"] for a in client.get("/api/activities").json()] == ["requested"]
