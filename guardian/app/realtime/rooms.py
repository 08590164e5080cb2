"""
rooms.py — Per-emergency and per-user rooms over one connection registry.

Two addressing schemes share the same connections:

    Room key              Joined by                 Used for
    ────────────────────  ────────────────────────  ─────────────────────────
    user:<user_id>        automatically on connect  targeted delivery (alerts)
    emergency:<id>        client join_emergency     incident-wide updates

Membership lives in this process only. It is not persisted and not shared
between workers; a reconnecting client starts with its user room and must
re-join emergency rooms itself. Every event emitted here is also persisted
(or derivable from persisted state) before emission, so a client that missed
frames recovers by re-fetching over HTTP.

Emission is fire-and-forget: no acks, no buffering, no replay. A connection
whose send fails is dropped from every room. The registry lock guards only
the membership maps. Sends run concurrently on a snapshot taken outside the
lock, so one slow socket does not hold up the others in its room; the emit
call itself still returns only once the slowest send has finished.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Set

from guardian.app.realtime.events import (
    EventType,
    emergency_room,
    envelope,
    user_room,
)

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ClientConnection:
    """
    One authenticated realtime client.

    ``socket`` is anything with ``async send_json(dict)``; in production a
    Starlette WebSocket.
    """
    socket: Any
    user_id: str
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    rooms: Set[str] = field(default_factory=set)


class RoomBroadcaster:
    """Room membership registry with fire-and-forget emit."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[ClientConnection]] = {}
        self._lock = asyncio.Lock()

    # ── Membership ──

    async def connect(self, socket: Any, user_id: str) -> ClientConnection:
        """Register an authenticated socket and put it in its user room."""
        conn = ClientConnection(socket=socket, user_id=user_id)
        await self.join(conn, user_room(user_id))
        logger.info(
            "Realtime client %s connected as %s", conn.connection_id, user_id,
            extra={"user_id": user_id},
        )
        return conn

    async def join(self, conn: ClientConnection, room: str) -> None:
        async with self._lock:
            self._rooms.setdefault(room, set()).add(conn)
            conn.rooms.add(room)

    async def leave(self, conn: ClientConnection, room: str) -> None:
        async with self._lock:
            self._discard(conn, room)

    async def join_emergency(self, conn: ClientConnection, emergency_id: str) -> None:
        await self.join(conn, emergency_room(emergency_id))
        logger.info(
            "User %s joined emergency:%s", conn.user_id, emergency_id,
            extra={"user_id": conn.user_id, "emergency_id": emergency_id},
        )

    async def leave_emergency(self, conn: ClientConnection, emergency_id: str) -> None:
        await self.leave(conn, emergency_room(emergency_id))
        logger.info(
            "User %s left emergency:%s", conn.user_id, emergency_id,
            extra={"user_id": conn.user_id, "emergency_id": emergency_id},
        )

    async def disconnect(self, conn: ClientConnection) -> None:
        async with self._lock:
            for room in list(conn.rooms):
                self._discard(conn, room)
        logger.info(
            "Realtime client %s (%s) disconnected", conn.connection_id, conn.user_id,
            extra={"user_id": conn.user_id},
        )

    def _discard(self, conn: ClientConnection, room: str) -> None:
        # Caller holds the lock
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn)
            if not members:
                del self._rooms[room]
        conn.rooms.discard(room)

    # ── Emission ──

    async def emit(self, room: str, event: EventType, data: Dict[str, Any]) -> int:
        """
        Send one event to every connection in ``room``.

        Returns the number of connections the frame was handed to. Never
        raises; failing connections are pruned.
        """
        async with self._lock:
            members = list(self._rooms.get(room, ()))

        if not members:
            logger.debug("No listeners in %s for %s", room, event.value)
            return 0

        try:
            frame = envelope(event, data)
        except Exception as e:
            logger.error("Could not encode %s for %s: %s", event.value, room, e)
            return 0

        results = await asyncio.gather(
            *(conn.socket.send_json(frame) for conn in members),
            return_exceptions=True,
        )
        failed: List[ClientConnection] = []
        for conn, result in zip(members, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Send to %s in %s failed: %s", conn.connection_id, room, result,
                    extra={"room": room, "event": event.value},
                )
                failed.append(conn)
        delivered = len(members) - len(failed)

        if failed:
            async with self._lock:
                for conn in failed:
                    for joined in list(conn.rooms):
                        self._discard(conn, joined)

        return delivered

    async def emit_to_emergency(self, emergency_id: str, event: EventType, data: Dict[str, Any]) -> int:
        return await self.emit(emergency_room(emergency_id), event, data)

    async def emit_to_user(self, user_id: str, event: EventType, data: Dict[str, Any]) -> int:
        return await self.emit(user_room(user_id), event, data)

    # ── Introspection ──

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def stats(self) -> Dict[str, int]:
        connections = set()
        for members in self._rooms.values():
            connections.update(members)
        return {
            "rooms": len(self._rooms),
            "emergency_rooms": sum(1 for r in self._rooms if r.startswith("emergency:")),
            "connections": len(connections),
        }


# Process-wide registry (one per worker)
rooms = RoomBroadcaster()


def get_rooms() -> RoomBroadcaster:
    """FastAPI dependency."""
    return rooms
