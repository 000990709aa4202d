"""WebSocket endpoint for the realtime gateway."""

import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from skillchat.auth import bearer_from_header
from skillchat.realtime.gateway import RealtimeGateway
from skillchat.realtime.registry import ClientConnection

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    token: str | None = Query(default=None),
) -> None:
    """Accept first, then authenticate; a bad token degrades to an anonymous connection."""

    gateway: RealtimeGateway = websocket.app.state.gateway
    await websocket.accept()
    connection = ClientConnection(websocket)
    await gateway.connect(connection, token or bearer_from_header(websocket.headers.get("authorization")))
    try:
        while True:
            raw = await websocket.receive_text()
            await gateway.receive_text(connection, raw)
    except WebSocketDisconnect as exc:
        logger.debug("realtime.socket_closed connection_id=%s code=%s", connection.id, exc.code)
    finally:
        await gateway.disconnect(connection)
