"""
services/realtime/broadcaster.py
Event fan-out to real-time subscribers.

The booking workflow only sees the Broadcaster interface. ConnectionManager is the
in-process WebSocket implementation; tests substitute a recording stub through
the `get_broadcaster` dependency.

Rooms:
- <bookingId>     parties following one booking
- user:<id>       every connection of one account
- role:<role>     every connection of one role (admins dashboard, drivers)
"""

import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set, Tuple

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from shared.models.models import UserRole

logger = logging.getLogger(__name__)


def booking_room(booking_id) -> str:
    return str(booking_id)


def user_room(user_id) -> str:
    return f"user:{user_id}"


def role_room(role: UserRole) -> str:
    return f"role:{UserRole(role).value}"


@dataclass(frozen=True)
class Scope:
    """Who receives an event: every connection, or members of the named rooms."""

    everyone: bool = False
    rooms: Tuple[str, ...] = ()

    @classmethod
    def all(cls) -> "Scope":
        return cls(everyone=True)

    @classmethod
    def room(cls, *names: str) -> "Scope":
        # Drop duplicates, keep order
        return cls(rooms=tuple(dict.fromkeys(n for n in names if n)))


class Broadcaster(ABC):
    """Publish/subscribe seam between the workflow and the push transport."""

    @abstractmethod
    async def publish(self, event: str, payload: Dict[str, Any], scope: Scope) -> int:
        """Deliver `event` to every connection in `scope`; returns the delivery count."""


@dataclass
class ConnectionInfo:
    websocket: WebSocket
    user_id: str
    role: str
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    rooms: Set[str] = field(default_factory=set)


class ConnectionManager(Broadcaster):
    """
    In-process WebSocket registry. One account may hold several connections
    (tabs, devices); each is tracked under its own connection id.
    Delivery is best-effort and at-most-once: a failed send drops that socket.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        # conn_id -> ConnectionInfo
        self._connections: Dict[int, ConnectionInfo] = {}
        # room -> set of conn_ids
        self._rooms: Dict[str, Set[int]] = {}
        self._total_connections = 0
        self._total_messages_sent = 0

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket, user_id, role) -> int:
        """Accept the socket and join its personal and role rooms."""
        await websocket.accept()
        conn_id = next(self._ids)
        self._connections[conn_id] = ConnectionInfo(
            websocket=websocket, user_id=str(user_id), role=UserRole(role).value
        )
        self._total_connections += 1
        self.join(conn_id, user_room(user_id))
        self.join(conn_id, role_room(role))
        logger.info(f"WebSocket connected: user={user_id} role={UserRole(role).value} conn={conn_id}")
        return conn_id

    def disconnect(self, conn_id: int) -> None:
        conn = self._connections.pop(conn_id, None)
        if conn is None:
            return
        for room in list(conn.rooms):
            self._leave_room(conn_id, room)
        logger.info(f"WebSocket disconnected: user={conn.user_id} conn={conn_id}")

    def join(self, conn_id: int, room: str) -> None:
        conn = self._connections.get(conn_id)
        if conn is None:
            return
        conn.rooms.add(room)
        self._rooms.setdefault(room, set()).add(conn_id)

    def leave(self, conn_id: int, room: str) -> None:
        self._leave_room(conn_id, room)

    def _leave_room(self, conn_id: int, room: str) -> None:
        conn = self._connections.get(conn_id)
        if conn is not None:
            conn.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn_id)
            if not members:
                del self._rooms[room]

    def rooms_of(self, conn_id: int) -> Set[str]:
        conn = self._connections.get(conn_id)
        return set(conn.rooms) if conn else set()

    async def send(self, conn_id: int, event: str, data: Any) -> bool:
        """Send one frame to one connection. Returns False if it is gone."""
        conn = self._connections.get(conn_id)
        if conn is None:
            return False
        try:
            await conn.websocket.send_json({"event": event, "data": jsonable_encoder(data)})
            self._total_messages_sent += 1
            return True
        except Exception as e:
            logger.warning(f"Dropping WebSocket conn={conn_id}: {e}")
            self.disconnect(conn_id)
            return False

    def _recipients(self, scope: Scope, exclude: Optional[int] = None) -> Set[int]:
        if scope.everyone:
            targets = set(self._connections)
        else:
            targets = set()
            for room in scope.rooms:
                targets |= self._rooms.get(room, set())
        targets.discard(exclude)
        return targets

    async def publish(
        self,
        event: str,
        payload: Dict[str, Any],
        scope: Scope,
        exclude: Optional[int] = None,
    ) -> int:
        """
        Deliver `event` once to every connection in scope.
        Never raises; returns the number of frames sent.
        """
        sent = 0
        for conn_id in sorted(self._recipients(scope, exclude)):
            if await self.send(conn_id, event, payload):
                sent += 1
        return sent

    def get_stats(self) -> Dict[str, Any]:
        return {
            "connections": len(self._connections),
            "users": len({c.user_id for c in self._connections.values()}),
            "rooms": {room: len(members) for room, members in self._rooms.items()},
            "total_connections": self._total_connections,
            "total_messages_sent": self._total_messages_sent,
        }


# ── Process-wide instance ─────────────────────────────────────
manager = ConnectionManager()


def get_broadcaster() -> Broadcaster:
    """FastAPI dependency for the event broadcaster."""
    return manager
