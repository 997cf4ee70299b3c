"""
services/realtime/router.py
WebSocket endpoint for live booking updates, driver locations and notifications.

Client frames: {"event": "joinRoom" | "leaveRoom" | "updateLocation", "data": ...}
Server frames: {"event": <name>, "data": <payload>}
"""

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.database import get_session_factory
from config.redis_client import get_redis
from services.booking.repository import BookingRepository
from services.booking.workflow import can_access_booking
from services.realtime.broadcaster import (
    ConnectionManager,
    Scope,
    booking_room,
    manager,
)
from shared.middleware.auth import RequestContext, require_admin, resolve_token
from shared.schemas.schemas import GeoPoint, RealtimeStatsResponse
from shared.utils.exceptions import AppError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

WS_UNAUTHORIZED = 4401


def get_connection_manager() -> ConnectionManager:
    return manager


async def handle_client_event(
    conn_id: int,
    ctx: RequestContext,
    frame: Any,
    connections: ConnectionManager,
    session_factory: async_sessionmaker,
) -> None:
    """Process one client frame. Errors are reported back on the same socket."""
    if not isinstance(frame, dict) or "event" not in frame:
        await connections.send(conn_id, "error", {"message": "Frames must be {event, data}"})
        return

    event, data = frame["event"], frame.get("data")

    if event == "joinRoom":
        try:
            booking_id = uuid.UUID(str(data))
        except ValueError:
            await connections.send(conn_id, "error", {"message": "Invalid booking id"})
            return
        async with session_factory() as db:
            booking = await BookingRepository(db).find_by_id(booking_id)
        if booking is None:
            await connections.send(conn_id, "error", {"message": "Booking not found"})
        elif not can_access_booking(booking, ctx):
            await connections.send(conn_id, "error", {"message": "Access denied"})
        else:
            connections.join(conn_id, booking_room(booking_id))
            await connections.send(conn_id, "roomJoined", {"room": booking_room(booking_id)})

    elif event == "leaveRoom":
        connections.leave(conn_id, booking_room(data))
        await connections.send(conn_id, "roomLeft", {"room": booking_room(data)})

    elif event == "updateLocation":
        if not ctx.is_driver:
            await connections.send(conn_id, "error", {"message": "Only drivers can share location"})
            return
        payload = data if isinstance(data, dict) else {"location": data}
        try:
            location = GeoPoint.model_validate(payload.get("location", payload))
        except ValueError:
            await connections.send(conn_id, "error", {"message": "Invalid location"})
            return
        # Relay only; persistence goes through PATCH /drivers/location
        await connections.publish(
            "driverLocationUpdated",
            {
                "driverId": str(ctx.user_id),
                "location": location.model_dump(mode="json", by_alias=True),
            },
            Scope.all(),
            exclude=conn_id,
        )

    else:
        await connections.send(conn_id, "error", {"message": f"Unknown event: {event}"})


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
    redis=Depends(get_redis),
    connections: ConnectionManager = Depends(get_connection_manager),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        ctx = await resolve_token(token, redis)
    except AppError as e:
        # Accept first so the client sees the application close code
        await websocket.accept()
        await websocket.close(code=WS_UNAUTHORIZED, reason=e.message)
        return

    conn_id = await connections.connect(websocket, ctx.user_id, ctx.role)
    try:
        while True:
            frame = await websocket.receive_json()
            await handle_client_event(conn_id, ctx, frame, connections, session_factory)
    except WebSocketDisconnect:
        pass
    except ValueError:
        logger.warning(f"Malformed frame from user {ctx.user_id}; closing connection {conn_id}")
    finally:
        connections.disconnect(conn_id)


@router.get("/realtime/stats", response_model=RealtimeStatsResponse)
async def realtime_stats(
    ctx: RequestContext = Depends(require_admin),
    connections: ConnectionManager = Depends(get_connection_manager),
):
    stats = connections.get_stats()
    return RealtimeStatsResponse(
        connections=stats["connections"],
        users=stats["users"],
        rooms=stats["rooms"],
    )
