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


def raise_request(room_id: int, name: str) -> dict:
    res = client.post(
        "/api/assistance-requests",
        json={"roomId": room_id, "roomName": name, "roomLocation": "Floor 1"},
    )
    assert res.status_code == 201
    return res.json()


def test_feed_is_empty_initially():
    res = client.get("/api/activities")
    assert res.status_code == 200
    assert res.json() == []


def test_feed_returns_latest_fifty_newest_first():
    room = client.post("/api/rooms", json={"name": "Room A", "location": "Floor 1"}).json()
    for i in range(55):
        raise_request(room["id"], f"Room {i}")

    activities = client.get("/api/activities").json()
    assert len(activities) == 50
    assert activities[0]["message"] == "New request from Room 54"
    assert activities[-1]["message"] == "New request from Room 5"
    ids = [a["id"] for a in activities]
    assert ids == sorted(ids, reverse=True)


def test_responded_entry_names_the_technician():
    room = client.post("/api/rooms", json={"name": "Room A", "location": "Floor 1"}).json()
    request = raise_request(room["id"], "Room A")

    client.patch(f"/api/assistance-requests/{request['id']}", json={"status": "in-progress"})
    client.patch(
        f"/api/assistance-requests/{request['id']}",
        json={"status": "resolved", "resolvedBy": "Alice"},
    )

    resolved, responded, requested = client.get("/api/activities").json()
    assert responded["message"] == "A technician responded to Room A request"
    assert responded["technician"] is None
    assert resolved["message"] == "Request from Room A was resolved"
    assert resolved["technician"] == "Alice"
    assert requested["roomId"] == room["id"]


def test_snapshot_name_without_matching_room_has_no_room_id():
    raise_request(1, "Unknown Room")
    activity = client.get("/api/activities").json()[0]
    assert activity["roomName"] == "Unknown Room"
    assert activity["roomId"] is None
