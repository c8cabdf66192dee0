from datetime import datetime, timedelta, timezone

import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import app.main as main_module
from app.config import settings
from app.container import build_container
from app.database import build_engine, create_db_and_tables
from app.services.auth import create_jwt_token
from app.application.ports.appointments_repo import AppointmentDto


@pytest.fixture
def client(monkeypatch):
    engine = build_engine("sqlite://")
    monkeypatch.setattr(main_module, "create_db_and_tables", lambda: create_db_and_tables(engine))
    main_module.app.state.container = build_container(engine, settings)
    with TestClient(main_module.app) as c:
        yield c
    main_module.app.state.container = None
    engine.dispose()


def _auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_jwt_token({'sub': user_id})}"}


def _tomorrow(hour: int = 10, minute: int = 0) -> str:
    day = datetime.now(timezone.utc) + timedelta(days=1)
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0).isoformat()


def _book(client, id="a1", when=None, patient="p1", practitioner="D"):
    return client.post(
        "/appointments/",
        json={"id": id, "practitioner_id": practitioner, "scheduled_time": when or _tomorrow()},
        headers=_auth(patient),
    )


def test_requires_authentication(client):
    r = client.get("/appointments/")
    assert r.status_code == 401
    assert r.json()["success"] is False
    assert r.json()["error"] == "Authentication required"
    r = client.get("/appointments/", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_book_and_conflict(client):
    r = _book(client, id="a1", when=_tomorrow(10, 0))
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "scheduled"
    assert body["patient_id"] == "p1"
    assert body["can_establish_session"] is False

    clash = _book(client, id="a2", when=_tomorrow(10, 20), patient="p2")
    assert clash.status_code == 409
    assert "not available" in clash.json()["error"]

    assert _book(client, id="a3", when=_tomorrow(10, 31), patient="p2").status_code == 201


def test_booking_in_the_past_is_400(client):
    past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    r = _book(client, when=past)
    assert r.status_code == 400


def test_lifecycle_and_session_gate(client):
    _book(client)
    assert client.get("/appointments/a1/session", headers=_auth("p1")).json()["can_establish_session"] is False

    # Patient cannot start
    assert client.put("/appointments/a1/start", headers=_auth("p1")).status_code == 403
    started = client.put("/appointments/a1/start", headers=_auth("D"))
    assert started.status_code == 200
    assert started.json()["status"] == "in_progress"
    assert client.get("/appointments/a1/session", headers=_auth("p1")).json()["can_establish_session"] is True

    waited = client.post("/appointments/a1/session/wait", headers=_auth("p1"))
    assert waited.status_code == 200

    assert client.put("/appointments/a1/complete", headers=_auth("D")).json()["status"] == "completed"
    assert client.get("/appointments/a1/session", headers=_auth("p1")).json()["can_establish_session"] is False

    cancel = client.put("/appointments/a1/cancel", headers=_auth("p1"))
    assert cancel.status_code == 409
    assert cancel.json()["error"] == "Appointment is already completed"


def test_other_users_cannot_see_appointment(client):
    _book(client)
    assert client.get("/appointments/a1", headers=_auth("D")).status_code == 200
    assert client.get("/appointments/a1", headers=_auth("stranger")).status_code == 404
    assert client.get("/appointments/missing", headers=_auth("p1")).status_code == 404


def test_listing_by_role(client):
    _book(client, id="a1", when=_tomorrow(9))
    _book(client, id="a2", when=_tomorrow(11), patient="p2")
    mine = client.get("/appointments/", headers=_auth("p1")).json()
    assert [a["id"] for a in mine] == ["a1"]
    practice = client.get("/appointments/?role=practitioner&upcoming=true", headers=_auth("D")).json()
    assert [a["id"] for a in practice] == ["a1", "a2"]


def test_waiting_room_flow(client):
    _book(client, id="a1", when=_tomorrow(9))
    _book(client, id="a2", when=_tomorrow(11), patient="p2")

    first = client.put("/appointments/a2/waiting-room/join", headers=_auth("p2")).json()
    again = client.put("/appointments/a2/waiting-room/join", headers=_auth("p2")).json()
    assert again["waiting_room_joined_at"] == first["waiting_room_joined_at"]
    client.put("/appointments/a1/waiting-room/join", headers=_auth("p1"))

    room = client.get("/practitioners/me/waiting-room", headers=_auth("D")).json()
    assert [a["id"] for a in room["waiting"]] == ["a2", "a1"]

    client.put("/appointments/a2/waiting-room/leave", headers=_auth("p2"))
    room = client.get("/practitioners/me/waiting-room", headers=_auth("D")).json()
    assert [a["id"] for a in room["waiting"]] == ["a1"]

    assert client.put("/appointments/a1/waiting-room/join", headers=_auth("D")).status_code == 403


def test_working_hours_drive_availability(client):
    hours = {"days": {"Monday": {"enabled": True, "start": "09:00", "end": "17:00"}}, "timezone": "UTC"}
    r = client.put("/practitioners/me/working-hours", json=hours, headers=_auth("D"))
    assert r.status_code == 200
    assert client.get("/practitioners/D/working-hours", headers=_auth("p1")).json()["days"]["Monday"]["end"] == "17:00"

    # 2030-01-08 is a Tuesday
    r = client.get("/practitioners/D/availability", params={"time": "2030-01-08T10:00:00Z"}, headers=_auth("p1"))
    assert r.status_code == 200
    assert r.json()["available"] is False
    assert r.json()["reason"] == "Practitioner is not available on Tuesday"

    r = client.get("/practitioners/D/availability", params={"time": "2030-01-07T10:00:00Z"}, headers=_auth("p1"))
    assert r.json()["available"] is True


def test_invalid_working_hours_are_rejected(client):
    bad_day = {"days": {"Funday": {"enabled": True, "start": "09:00", "end": "17:00"}}}
    assert client.put("/practitioners/me/working-hours", json=bad_day, headers=_auth("D")).status_code == 422
    bad_tz = {"days": {}, "timezone": "Mars/Olympus"}
    assert client.put("/practitioners/me/working-hours", json=bad_tz, headers=_auth("D")).status_code == 422


def test_payment_and_prescription(client):
    _book(client)
    paid = client.put("/appointments/a1/payment", json={"payment_id": "pay_1"}, headers=_auth("p1")).json()
    assert paid["is_paid"] is True
    assert client.put("/appointments/a1/prescription", json={"prescription_id": "rx"}, headers=_auth("p1")).status_code == 403
    assert client.put("/appointments/a1/prescription", json={"prescription_id": "rx"}, headers=_auth("D")).json()["prescription_id"] == "rx"


def test_websocket_pushes_session_permission(client):
    _book(client)
    token = create_jwt_token({"sub": "p1"})
    with client.websocket_connect(f"/appointments/a1/ws?token={token}") as ws:
        first = ws.receive_json()
        assert first["appointment"]["status"] == "scheduled"
        assert first["can_establish_session"] is False

        client.put("/appointments/a1/start", headers=_auth("D"))
        update = ws.receive_json()
        assert update["appointment"]["status"] == "in_progress"
        assert update["can_establish_session"] is True


def test_websocket_rejects_bad_token_and_strangers(client):
    _book(client)
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/appointments/a1/ws?token=nope") as ws:
            ws.receive_json()
    assert exc.value.code == 4401

    token = create_jwt_token({"sub": "stranger"})
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/appointments/a1/ws?token={token}") as ws:
            ws.receive_json()
    assert exc.value.code == 4404


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["database"]["ok"] is True


async def _drive_websocket_until_disconnect(path: str, token: str, container) -> list:
    """Connect, wait for the first snapshot, disconnect and wait for the handler to finish."""
    incoming: asyncio.Queue = asyncio.Queue()
    sent = []
    first_snapshot = asyncio.Event()

    async def receive():
        return await incoming.get()

    async def send(message):
        sent.append(message)
        if message["type"] == "websocket.send":
            first_snapshot.set()

    scope = {
        "type": "websocket",
        "asgi": {"version": "3.0"},
        "scheme": "ws",
        "path": path,
        "raw_path": path.encode(),
        "query_string": f"token={token}".encode(),
        "root_path": "",
        "headers": [(b"host", b"testserver")],
        "server": ("testserver", 80),
        "client": ("testclient", 50000),
        "subprotocols": [],
    }
    await incoming.put({"type": "websocket.connect"})
    handler = asyncio.create_task(main_module.app(scope, receive, send))
    await asyncio.wait_for(first_snapshot.wait(), timeout=2)
    assert container.appointments_repo.feed.listener_count == 1

    await incoming.put({"type": "websocket.disconnect", "code": 1000})
    await asyncio.wait_for(handler, timeout=2)
    return sent


@pytest.mark.asyncio
async def test_websocket_disconnect_releases_change_feed_listener():
    engine = build_engine("sqlite://")
    create_db_and_tables(engine)
    container = build_container(engine, settings)
    main_module.app.state.container = container
    try:
        when = datetime.now(timezone.utc) + timedelta(days=1)
        await container.appointments.book(AppointmentDto(id="a1", patient_id="p1", practitioner_id="D", scheduled_time=when))

        await _drive_websocket_until_disconnect("/appointments/a1/ws", create_jwt_token({"sub": "p1"}), container)
        assert container.appointments_repo.feed.listener_count == 0

        await _drive_websocket_until_disconnect("/practitioners/me/waiting-room/ws", create_jwt_token({"sub": "D"}), container)
        assert container.appointments_repo.feed.listener_count == 0

        # Later changes reach no one and raise nothing
        await container.appointments.start("a1")
    finally:
        main_module.app.state.container = None
        engine.dispose()
