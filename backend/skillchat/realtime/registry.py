"""In-process connection and room registry owned by the gateway."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Protocol

from starlette.websockets import WebSocketDisconnect

from skillchat.models.base import new_id

logger = logging.getLogger(__name__)


def user_room(user_id: str) -> str:
    return f"user-{user_id}"


def conversation_room(conversation_id: str) -> str:
    return f"conversation-{conversation_id}"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"
    JOINED = "joined"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class FrameSender(Protocol):
    """Anything that can push one JSON frame to a client, e.g. a Starlette WebSocket."""

    async def send_json(self, data: Any) -> None:
        ...


class ClientConnection:
    """One client socket plus the identity and rooms bound to it."""

    def __init__(self, sender: FrameSender, connection_id: str | None = None) -> None:
        self.sender = sender
        self.id = connection_id or new_id()
        self.user_id: str | None = None
        self.state = ConnectionState.CONNECTING
        self.rooms: set[str] = set()

    async def send(self, event: str, data: dict[str, Any]) -> None:
        await self.sender.send_json({"event": event, "data": data})

    def __repr__(self) -> str:
        return f"ClientConnection(id={self.id!r}, user_id={self.user_id!r}, state={self.state.value!r})"


class ConnectionRegistry:
    """Maps users and rooms to live connections. Mutated only on the event loop."""

    def __init__(self) -> None:
        self._connections: dict[str, ClientConnection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._users: dict[str, set[str]] = {}

    def register(self, connection: ClientConnection) -> None:
        self._connections[connection.id] = connection

    def bind_user(self, connection: ClientConnection, user_id: str) -> None:
        if connection.user_id and connection.user_id != user_id:
            self._discard_user(connection)
        connection.user_id = user_id
        self._users.setdefault(user_id, set()).add(connection.id)

    def unregister(self, connection: ClientConnection) -> None:
        for room in list(connection.rooms):
            self.leave(connection, room)
        self._discard_user(connection)
        self._connections.pop(connection.id, None)

    def join(self, connection: ClientConnection, room: str) -> None:
        if connection.id not in self._connections:
            return
        self._rooms.setdefault(room, set()).add(connection.id)
        connection.rooms.add(room)

    def leave(self, connection: ClientConnection, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self._rooms[room]
        connection.rooms.discard(room)

    def room_members(self, room: str) -> list[ClientConnection]:
        return [self._connections[cid] for cid in sorted(self._rooms.get(room, ())) if cid in self._connections]

    def connections_for_user(self, user_id: str) -> list[ClientConnection]:
        return [self._connections[cid] for cid in sorted(self._users.get(user_id, ())) if cid in self._connections]

    def connection_count(self) -> int:
        return len(self._connections)

    async def emit_to_room(
        self,
        room: str,
        event: str,
        data: dict[str, Any],
        *,
        exclude: ClientConnection | None = None,
    ) -> int:
        """Send one frame to every connection in `room`; returns the delivered count."""

        delivered = 0
        for connection in self.room_members(room):
            if exclude is not None and connection.id == exclude.id:
                continue
            if await self.emit_to_connection(connection, event, data):
                delivered += 1
        return delivered

    async def emit_to_connection(self, connection: ClientConnection, event: str, data: dict[str, Any]) -> bool:
        try:
            await connection.send(event, data)
        except (RuntimeError, OSError, WebSocketDisconnect):
            logger.warning("realtime.send_failed connection_id=%s event=%s", connection.id, event, exc_info=True)
            self.unregister(connection)
            return False
        return True

    def _discard_user(self, connection: ClientConnection) -> None:
        if connection.user_id is None:
            return
        sockets = self._users.get(connection.user_id)
        if sockets is not None:
            sockets.discard(connection.id)
            if not sockets:
                del self._users[connection.user_id]
