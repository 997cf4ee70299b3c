"""
tests/test_realtime.py
ConnectionManager fan-out, client frame handling and the /ws handshake.
"""

import uuid
from typing import Any, List

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from config.redis_client import get_redis
from main import app
from services.booking.workflow import BookingWorkflow
from services.realtime.broadcaster import (
    Broadcaster,
    ConnectionManager,
    Scope,
    booking_room,
    role_room,
    user_room,
)
from services.realtime.router import get_connection_manager, handle_client_event
from shared.models.models import UserRole
from tests.conftest import auth_headers, ctx_for


class FakeWebSocket:
    """Stands in for starlette's WebSocket; records every frame sent."""

    def __init__(self, fail: bool = False) -> None:
        self.accepted = False
        self.fail = fail
        self.sent: List[Any] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self) -> List[str]:
        return [frame["event"] for frame in self.sent]


@pytest.fixture
def connections() -> ConnectionManager:
    return ConnectionManager()


# ── ConnectionManager ─────────────────────────────────────────

def test_broadcaster_requires_publish():
    class Silent(Broadcaster):
        pass

    with pytest.raises(TypeError):
        Silent()
    assert isinstance(ConnectionManager(), Broadcaster)


@pytest.mark.asyncio
async def test_connect_joins_personal_and_role_rooms(connections):
    ws = FakeWebSocket()
    user_id = uuid.uuid4()
    conn_id = await connections.connect(ws, user_id, UserRole.DRIVER)

    assert ws.accepted
    assert connections.rooms_of(conn_id) == {f"user:{user_id}", "role:driver"}
    stats = connections.get_stats()
    assert stats["connections"] == 1
    assert stats["users"] == 1
    assert stats["rooms"] == {f"user:{user_id}": 1, "role:driver": 1}


@pytest.mark.asyncio
async def test_publish_delivers_once_per_connection(connections):
    ws = FakeWebSocket()
    user_id = uuid.uuid4()
    conn_id = await connections.connect(ws, user_id, UserRole.ADMIN)
    connections.join(conn_id, booking_room("b1"))

    sent = await connections.publish(
        "bookingUpdated",
        {"id": "b1"},
        Scope.room(booking_room("b1"), role_room(UserRole.ADMIN), user_room(user_id)),
    )
    assert sent == 1
    assert ws.sent == [{"event": "bookingUpdated", "data": {"id": "b1"}}]


@pytest.mark.asyncio
async def test_publish_respects_rooms(connections):
    admin_ws, driver_ws = FakeWebSocket(), FakeWebSocket()
    await connections.connect(admin_ws, uuid.uuid4(), UserRole.ADMIN)
    await connections.connect(driver_ws, uuid.uuid4(), UserRole.DRIVER)

    await connections.publish("newBooking", {"id": "x"}, Scope.room(role_room(UserRole.ADMIN)))
    assert admin_ws.events() == ["newBooking"]
    assert driver_ws.events() == []


@pytest.mark.asyncio
async def test_publish_everyone_with_exclude(connections):
    sockets = [FakeWebSocket() for _ in range(3)]
    ids = [await connections.connect(ws, uuid.uuid4(), UserRole.PATIENT) for ws in sockets]

    sent = await connections.publish("ping", {}, Scope.all(), exclude=ids[0])
    assert sent == 2
    assert sockets[0].sent == []
    assert sockets[1].events() == ["ping"]


@pytest.mark.asyncio
async def test_same_user_multiple_tabs(connections):
    user_id = uuid.uuid4()
    tabs = [FakeWebSocket(), FakeWebSocket()]
    for ws in tabs:
        await connections.connect(ws, user_id, UserRole.PATIENT)

    await connections.publish("newNotification", {"title": "Hi"}, Scope.room(user_room(user_id)))
    assert all(ws.events() == ["newNotification"] for ws in tabs)
    assert connections.get_stats()["users"] == 1


@pytest.mark.asyncio
async def test_failed_send_drops_socket(connections):
    broken, healthy = FakeWebSocket(fail=True), FakeWebSocket()
    broken_id = await connections.connect(broken, uuid.uuid4(), UserRole.ADMIN)
    await connections.connect(healthy, uuid.uuid4(), UserRole.ADMIN)

    sent = await connections.publish("newBooking", {}, Scope.room("role:admin"))
    assert sent == 1
    assert healthy.events() == ["newBooking"]
    assert connections.rooms_of(broken_id) == set()
    assert connections.active_connections == 1


@pytest.mark.asyncio
async def test_disconnect_removes_empty_rooms(connections):
    conn_id = await connections.connect(FakeWebSocket(), uuid.uuid4(), UserRole.PATIENT)
    connections.join(conn_id, "abc")
    connections.disconnect(conn_id)
    assert connections.get_stats()["rooms"] == {}
    # Idempotent
    connections.disconnect(conn_id)


# ── Client frames ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_join_own_booking_room(connections, session_factory, pending_booking, patient):
    ws = FakeWebSocket()
    conn_id = await connections.connect(ws, patient.id, UserRole.PATIENT)

    await handle_client_event(
        conn_id, ctx_for(patient), {"event": "joinRoom", "data": str(pending_booking.id)},
        connections, session_factory,
    )
    assert ws.sent[-1] == {"event": "roomJoined", "data": {"room": str(pending_booking.id)}}
    assert str(pending_booking.id) in connections.rooms_of(conn_id)

    await handle_client_event(
        conn_id, ctx_for(patient), {"event": "leaveRoom", "data": str(pending_booking.id)},
        connections, session_factory,
    )
    assert ws.sent[-1]["event"] == "roomLeft"
    assert str(pending_booking.id) not in connections.rooms_of(conn_id)


@pytest.mark.asyncio
async def test_join_foreign_booking_denied(connections, session_factory, pending_booking, other_patient):
    ws = FakeWebSocket()
    conn_id = await connections.connect(ws, other_patient.id, UserRole.PATIENT)

    await handle_client_event(
        conn_id, ctx_for(other_patient), {"event": "joinRoom", "data": str(pending_booking.id)},
        connections, session_factory,
    )
    assert ws.sent[-1] == {"event": "error", "data": {"message": "Access denied"}}
    assert str(pending_booking.id) not in connections.rooms_of(conn_id)


@pytest.mark.asyncio
@pytest.mark.parametrize("data,message", [
    ("not-a-uuid", "Invalid booking id"),
    (str(uuid.UUID(int=7)), "Booking not found"),
])
async def test_join_bad_booking(connections, session_factory, patient, data, message):
    ws = FakeWebSocket()
    conn_id = await connections.connect(ws, patient.id, UserRole.PATIENT)
    await handle_client_event(
        conn_id, ctx_for(patient), {"event": "joinRoom", "data": data}, connections, session_factory
    )
    assert ws.sent[-1] == {"event": "error", "data": {"message": message}}


@pytest.mark.asyncio
async def test_driver_location_relayed_to_others(connections, session_factory, driver):
    driver_ws, admin_ws = FakeWebSocket(), FakeWebSocket()
    conn_id = await connections.connect(driver_ws, driver.id, UserRole.DRIVER)
    await connections.connect(admin_ws, uuid.uuid4(), UserRole.ADMIN)

    await handle_client_event(
        conn_id, ctx_for(driver),
        {"event": "updateLocation", "data": {"location": {"lat": 7.3, "lng": 80.6}}},
        connections, session_factory,
    )
    assert driver_ws.sent == []
    frame = admin_ws.sent[-1]
    assert frame["event"] == "driverLocationUpdated"
    assert frame["data"]["driverId"] == str(driver.id)
    assert frame["data"]["location"]["lat"] == 7.3


@pytest.mark.asyncio
async def test_patient_cannot_relay_location(connections, session_factory, patient):
    ws = FakeWebSocket()
    conn_id = await connections.connect(ws, patient.id, UserRole.PATIENT)
    await handle_client_event(
        conn_id, ctx_for(patient), {"event": "updateLocation", "data": "7.3,80.6"},
        connections, session_factory,
    )
    assert ws.sent[-1]["event"] == "error"


@pytest.mark.asyncio
@pytest.mark.parametrize("frame", [{"event": "dance"}, ["joinRoom"], {"data": 1}])
async def test_unusable_frames_answered_with_error(connections, session_factory, patient, frame):
    ws = FakeWebSocket()
    conn_id = await connections.connect(ws, patient.id, UserRole.PATIENT)
    await handle_client_event(conn_id, ctx_for(patient), frame, connections, session_factory)
    assert ws.events() == ["error"]


# ── Workflow through the live transport ───────────────────────

@pytest.mark.asyncio
async def test_booking_update_reaches_parties(connections, db, pending_booking, patient, driver, admin_user):
    patient_ws, driver_ws, admin_ws, other_ws = (FakeWebSocket() for _ in range(4))
    await connections.connect(patient_ws, patient.id, UserRole.PATIENT)
    await connections.connect(driver_ws, driver.id, UserRole.DRIVER)
    await connections.connect(admin_ws, admin_user.id, UserRole.ADMIN)
    await connections.connect(other_ws, uuid.uuid4(), UserRole.PATIENT)

    await BookingWorkflow(db, connections).assign_driver(pending_booking.id, driver.id, ctx_for(admin_user))

    assert patient_ws.events() == ["bookingUpdated", "newNotification"]
    assert driver_ws.events() == ["bookingUpdated", "newNotification"]
    assert admin_ws.events() == ["bookingUpdated"]
    assert other_ws.events() == []
    assert patient_ws.sent[0]["data"]["driverId"] == str(driver.id)


# ── HTTP / WebSocket surface ──────────────────────────────────

@pytest.mark.asyncio
async def test_realtime_stats_admin_only(client, patient, admin_user):
    connections = ConnectionManager()
    await connections.connect(FakeWebSocket(), patient.id, UserRole.PATIENT)
    app.dependency_overrides[get_connection_manager] = lambda: connections

    response = await client.get("/realtime/stats", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json()["connections"] == 1
    assert response.json()["rooms"]["role:patient"] == 1

    response = await client.get("/realtime/stats", headers=auth_headers(patient))
    assert response.status_code == 403


def test_websocket_rejects_bad_token():
    app.dependency_overrides[get_redis] = lambda: None
    try:
        # No context manager: the lifespan (database, Redis) must not start
        ws_client = TestClient(app)
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with ws_client.websocket_connect("/ws?token=not-a-jwt") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4401
    finally:
        app.dependency_overrides.clear()
