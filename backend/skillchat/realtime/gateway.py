"""Realtime gateway bridging client socket events to the messaging service.

Each client event is handled on the event loop; service calls are synchronous
store code and run in the threadpool with a bounded wait. Failures are
reported to the originating connection only, as an `error` event.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from contextlib import AbstractContextManager
from typing import Any, TypeVar

from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from skillchat.auth import TokenError, decode_principal
from skillchat.realtime.registry import (
    ClientConnection,
    ConnectionRegistry,
    ConnectionState,
    conversation_room,
    user_room,
)
from skillchat.schemas.message import MessageRead, MessageSendRequest
from skillchat.schemas.realtime import (
    AuthenticatePayload,
    ConversationEventPayload,
    JoinUserPayload,
    MessageEventPayload,
    ReactionEventPayload,
)
from skillchat.services.errors import MessagingError, MessagingPermissionError
from skillchat.services.messaging import MessagingService

logger = logging.getLogger(__name__)

T = TypeVar("T")
ServiceScope = Callable[[], AbstractContextManager[MessagingService]]
Authenticator = Callable[[str | None], str]
EventHandler = Callable[[ClientConnection, dict[str, Any]], Awaitable[None]]

_IDENTIFIED_STATES = {ConnectionState.AUTHENTICATED, ConnectionState.JOINED, ConnectionState.ACTIVE}


class GatewayError(Exception):
    """Event-level failure reported back to the caller with a code."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class RealtimeGateway:
    """Owns the connection registry and dispatches client events."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        service_scope: ServiceScope,
        *,
        authenticate: Authenticator = decode_principal,
        call_timeout: float = 15.0,
    ) -> None:
        self.registry = registry
        self.service_scope = service_scope
        self.authenticate = authenticate
        self.call_timeout = call_timeout
        self._handlers: dict[str, EventHandler] = {
            "authenticate": self._on_authenticate,
            "join_user": self._on_join_user,
            "join_conversation": self._on_join_conversation,
            "leave_conversation": self._on_leave_conversation,
            "send_message": self._on_send_message,
            "typing_start": self._on_typing_start,
            "typing_stop": self._on_typing_stop,
            "mark_read": self._on_mark_read,
            "mark_message_read": self._on_mark_message_read,
            "add_reaction": self._on_add_reaction,
            "remove_reaction": self._on_remove_reaction,
        }

    # connection lifecycle

    async def connect(self, connection: ClientConnection, token: str | None) -> None:
        """Register a socket and attempt authentication once; failure degrades to anonymous."""

        self.registry.register(connection)
        connection.state = ConnectionState.AUTHENTICATING
        user_id = self._try_authenticate(token)
        if user_id is not None:
            self.registry.bind_user(connection, user_id)
            connection.state = ConnectionState.AUTHENTICATED
        else:
            connection.state = ConnectionState.ANONYMOUS
        logger.info(
            "realtime.connected connection_id=%s user_id=%s state=%s",
            connection.id,
            user_id,
            connection.state.value,
        )
        await self.registry.emit_to_connection(
            connection,
            "connected",
            {"connection_id": connection.id, "authenticated": user_id is not None, "user_id": user_id},
        )

    async def disconnect(self, connection: ClientConnection) -> None:
        """Drop the socket from the registry. Membership rows are untouched."""

        self.registry.unregister(connection)
        connection.state = ConnectionState.DISCONNECTED
        logger.info("realtime.disconnected connection_id=%s user_id=%s", connection.id, connection.user_id)

    async def receive_text(self, connection: ClientConnection, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            await self._emit_error(connection, None, "Frames must be JSON objects", "invalid_frame")
            return
        await self.dispatch(connection, frame)

    async def dispatch(self, connection: ClientConnection, frame: Any) -> None:
        """Route one `{"event": ..., "data": {...}}` frame to its handler."""

        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await self._emit_error(connection, None, "Frames must carry an event name", "invalid_frame")
            return
        event = frame["event"]
        data = frame.get("data") or {}
        handler = self._handlers.get(event)
        if handler is None:
            await self._emit_error(connection, event, f"Unknown event: {event}", "unknown_event")
            return
        if not isinstance(data, dict):
            await self._emit_error(connection, event, "Event data must be an object", "validation_error")
            return

        try:
            await handler(connection, data)
        except MessagingError as exc:
            logger.info(
                "realtime.event_rejected event=%s connection_id=%s code=%s message=%s",
                event,
                connection.id,
                exc.code,
                exc.message,
            )
            await self._emit_error(connection, event, exc.message, exc.code)
            return
        except GatewayError as exc:
            await self._emit_error(connection, event, exc.message, exc.code)
            return
        except ValidationError as exc:
            await self._emit_error(connection, event, _validation_message(exc), "validation_error")
            return
        except asyncio.TimeoutError:
            logger.warning("realtime.event_timeout event=%s connection_id=%s", event, connection.id)
            await self._emit_error(connection, event, "The request timed out", "timeout")
            return
        except Exception:
            logger.exception("realtime.event_failed event=%s connection_id=%s", event, connection.id)
            await self._emit_error(connection, event, "Internal error", "internal_error")
            return

        if connection.state == ConnectionState.JOINED and event != "join_user":
            connection.state = ConnectionState.ACTIVE

    # server-side helpers

    async def emit_to_user(self, user_id: str, event: str, data: dict[str, Any]) -> int:
        return await self.registry.emit_to_room(user_room(user_id), event, data)

    async def emit_new_message(self, message: MessageRead, participant_ids: list[str] | None = None) -> int:
        """Broadcast `new_message` after pulling participants' sockets into the room."""

        room = conversation_room(message.conversation_id)
        for user_id in participant_ids or []:
            for connection in self.registry.connections_for_user(user_id):
                self.registry.join(connection, room)
        return await self.registry.emit_to_room(room, "new_message", message.model_dump(mode="json"))

    async def emit_conversation_update(self, conversation_id: str, update: dict[str, Any]) -> int:
        return await self.registry.emit_to_room(
            conversation_room(conversation_id),
            "conversation_updated",
            {"conversation_id": conversation_id, **update},
        )

    async def call(self, fn: Callable[[MessagingService], T]) -> T:
        """Run `fn` against a fresh service scope in the threadpool, bounded by the call timeout."""

        def run() -> T:
            with self.service_scope() as service:
                return fn(service)

        return await asyncio.wait_for(run_in_threadpool(run), timeout=self.call_timeout)

    # event handlers

    async def _on_authenticate(self, connection: ClientConnection, data: dict[str, Any]) -> None:
        payload = AuthenticatePayload.model_validate(data)
        try:
            user_id = self.authenticate(payload.token)
        except TokenError as exc:
            raise GatewayError(str(exc), "unauthenticated") from exc
        self.registry.bind_user(connection, user_id)
        if connection.state not in (ConnectionState.JOINED, ConnectionState.ACTIVE):
            connection.state = ConnectionState.AUTHENTICATED
        await self.registry.emit_to_connection(connection, "authenticated", {"user_id": user_id})

    async def _on_join_user(self, connection: ClientConnection, data: dict[str, Any]) -> None:
        payload = JoinUserPayload.model_validate(data)
        user_id = self._require_identity(connection)
        if payload.user_id and payload.user_id != user_id:
            raise MessagingPermissionError("Cannot join another user's room")

        conversation_ids = await self.call(lambda service: service.active_conversation_ids(user_id))
        self.registry.join(connection, user_room(user_id))
        for conversation_id in conversation_ids:
            self.registry.join(connection, conversation_room(conversation_id))
        connection.state = ConnectionState.JOINED
        logger.info(
            "realtime.user_joined user_id=%s connection_id=%s conversations=%s",
            user_id,
            connection.id,
            len(conversation_ids),
        )
        await self.registry.emit_to_connection(
            connection,
            "joined",
            {"user_id": user_id, "conversation_ids": conversation_ids},
        )

    async def _on_join_conversation(self, connection: ClientConnection, data: dict[str, Any]) -> None:
        payload = ConversationEventPayload.model_validate(data)
        user_id = self._require_identity(connection)
        await self.call(lambda service: service.get_conversation(payload.conversation_id, user_id))
        self.registry.join(connection, conversation_room(payload.conversation_id))
        await self.registry.emit_to_connection(
            connection,
            "conversation_joined",
            {"conversation_id": payload.conversation_id},
        )

    async def _on_leave_conversation(self, connection: ClientConnection, data: dict[str, Any]) -> None:
        payload = ConversationEventPayload.model_validate(data)
        self.registry.leave(connection, conversation_room(payload.conversation_id))

    async def _on_send_message(self, connection: ClientConnection, data: dict[str, Any]) -> None:
        user_id = self._require_identity(connection)
        payload = MessageSendRequest.model_validate(data)

        def send(service: MessagingService) -> tuple[MessageRead, list[str]]:
            message = service.send_message(user_id, payload)
            return message, service.participant_user_ids(message.conversation_id)

        message, participant_ids = await self.call(send)
        self.registry.join(connection, conversation_room(message.conversation_id))
        await self.emit_new_message(message, participant_ids)
        await self.registry.emit_to_connection(connection, "message_sent", message.model_dump(mode="json"))

    async def _on_typing_start(self, connection: ClientConnection, data: dict[str, Any]) -> None:
        await self._relay_typing(connection, data, is_typing=True)

    async def _on_typing_stop(self, connection: ClientConnection, data: dict[str, Any]) -> None:
        await self._relay_typing(connection, data, is_typing=False)

    async def _relay_typing(self, connection: ClientConnection, data: dict[str, Any], *, is_typing: bool) -> None:
        payload = ConversationEventPayload.model_validate(data)
        user_id = self._require_identity(connection)
        room = conversation_room(payload.conversation_id)
        if room not in connection.rooms:
            raise MessagingPermissionError("Join the conversation before sending typing updates")
        await self.registry.emit_to_room(
            room,
            "user_typing",
            {"conversation_id": payload.conversation_id, "user_id": user_id, "is_typing": is_typing},
            exclude=connection,
        )

    async def _on_mark_read(self, connection: ClientConnection, data: dict[str, Any]) -> None:
        payload = ConversationEventPayload.model_validate(data)
        user_id = self._require_identity(connection)
        result = await self.call(lambda service: service.mark_messages_as_read(payload.conversation_id, user_id))
        await self.registry.emit_to_room(
            conversation_room(payload.conversation_id),
            "messages_read",
            {
                "conversation_id": payload.conversation_id,
                "user_id": user_id,
                "marked_count": result.marked_count,
                "read_at": result.read_at.isoformat(),
            },
        )

    async def _on_mark_message_read(self, connection: ClientConnection, data: dict[str, Any]) -> None:
        payload = MessageEventPayload.model_validate(data)
        user_id = self._require_identity(connection)
        message = await self.call(lambda service: service.mark_message_as_read(payload.message_id, user_id))
        receipt = next(read for read in message.read_by if read.user_id == user_id)
        await self.registry.emit_to_room(
            conversation_room(message.conversation_id),
            "message_read",
            {
                "message_id": message.id,
                "conversation_id": message.conversation_id,
                "user_id": user_id,
                "read_at": receipt.read_at.isoformat(),
            },
        )

    async def _on_add_reaction(self, connection: ClientConnection, data: dict[str, Any]) -> None:
        payload = ReactionEventPayload.model_validate(data)
        user_id = self._require_identity(connection)
        message = await self.call(lambda service: service.add_reaction(payload.message_id, user_id, payload.emoji))
        await self._broadcast_reaction("reaction_added", message, user_id, payload.emoji)

    async def _on_remove_reaction(self, connection: ClientConnection, data: dict[str, Any]) -> None:
        payload = ReactionEventPayload.model_validate(data)
        user_id = self._require_identity(connection)
        message = await self.call(lambda service: service.remove_reaction(payload.message_id, user_id, payload.emoji))
        await self._broadcast_reaction("reaction_removed", message, user_id, payload.emoji)

    async def _broadcast_reaction(self, event: str, message: MessageRead, user_id: str, emoji: str) -> None:
        await self.registry.emit_to_room(
            conversation_room(message.conversation_id),
            event,
            {
                "message_id": message.id,
                "user_id": user_id,
                "emoji": emoji,
                "message": message.model_dump(mode="json"),
            },
        )

    # internals

    def _try_authenticate(self, token: str | None) -> str | None:
        if not token:
            return None
        try:
            return self.authenticate(token)
        except TokenError as exc:
            logger.info("realtime.auth_failed reason=%s", exc)
            return None

    @staticmethod
    def _require_identity(connection: ClientConnection) -> str:
        if connection.user_id is None or connection.state not in _IDENTIFIED_STATES:
            raise GatewayError("User not authenticated", "unauthenticated")
        return connection.user_id

    async def _emit_error(self, connection: ClientConnection, event: str | None, message: str, code: str) -> None:
        await self.registry.emit_to_connection(
            connection,
            "error",
            {"message": message, "code": code, "event": event},
        )


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid payload"
