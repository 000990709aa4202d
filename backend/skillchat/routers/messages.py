"""Message send, history, edit, receipt, and reaction routes."""

from fastapi import APIRouter, Depends, Path, Query
from starlette.concurrency import run_in_threadpool

from skillchat.auth import get_current_user_id
from skillchat.dependencies import get_gateway, get_messaging_service
from skillchat.realtime.gateway import RealtimeGateway
from skillchat.routers.common import http_error
from skillchat.schemas.common import ApiResponse
from skillchat.schemas.message import (
    MessageRead,
    MessageSendRequest,
    MessageUpdateRequest,
    ReactionRequest,
)
from skillchat.services.errors import MessagingError
from skillchat.services.messaging import MessagingService

router = APIRouter(prefix="/messages")

MessageIdParam = Path(..., min_length=1)


@router.post("", response_model=ApiResponse[MessageRead], status_code=201)
async def send_message(
    payload: MessageSendRequest,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> ApiResponse[MessageRead]:
    """Persist a message and fan it out to connected participants."""

    def send() -> tuple[MessageRead, list[str]]:
        message = service.send_message(user_id, payload)
        return message, service.participant_user_ids(message.conversation_id)

    try:
        message, participant_ids = await run_in_threadpool(send)
    except MessagingError as exc:
        raise http_error(exc) from exc

    await gateway.emit_new_message(message, participant_ids)
    return ApiResponse(data=message)


@router.get("/search", response_model=ApiResponse[list[MessageRead]])
def search_messages(
    q: str = Query(..., min_length=1, max_length=255),
    conversation_id: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[list[MessageRead]]:
    """Search message content across the caller's conversations."""

    try:
        results = service.search_messages(user_id, q, conversation_id=conversation_id, limit=limit, offset=offset)
    except MessagingError as exc:
        raise http_error(exc) from exc
    return ApiResponse(data=results)


@router.get("/{message_id}", response_model=ApiResponse[MessageRead])
def get_message(
    message_id: str = MessageIdParam,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[MessageRead]:
    try:
        return ApiResponse(data=service.get_message(message_id, user_id))
    except MessagingError as exc:
        raise http_error(exc) from exc


@router.put("/{message_id}", response_model=ApiResponse[MessageRead])
def update_message(
    payload: MessageUpdateRequest,
    message_id: str = MessageIdParam,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[MessageRead]:
    """Edit one message; sender only."""

    try:
        return ApiResponse(data=service.update_message(message_id, user_id, payload))
    except MessagingError as exc:
        raise http_error(exc) from exc


@router.delete("/{message_id}", response_model=ApiResponse[MessageRead])
def delete_message(
    message_id: str = MessageIdParam,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[MessageRead]:
    """Tombstone one message; sender only."""

    try:
        return ApiResponse(data=service.delete_message(message_id, user_id))
    except MessagingError as exc:
        raise http_error(exc) from exc


@router.post("/{message_id}/read", response_model=ApiResponse[MessageRead])
def mark_message_read(
    message_id: str = MessageIdParam,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[MessageRead]:
    try:
        return ApiResponse(data=service.mark_message_as_read(message_id, user_id))
    except MessagingError as exc:
        raise http_error(exc) from exc


@router.post("/{message_id}/reactions", response_model=ApiResponse[MessageRead])
def add_reaction(
    payload: ReactionRequest,
    message_id: str = MessageIdParam,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[MessageRead]:
    try:
        return ApiResponse(data=service.add_reaction(message_id, user_id, payload.emoji))
    except MessagingError as exc:
        raise http_error(exc) from exc


@router.delete("/{message_id}/reactions", response_model=ApiResponse[MessageRead])
def remove_reaction(
    message_id: str = MessageIdParam,
    emoji: str = Query(..., min_length=1, max_length=32),
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[MessageRead]:
    try:
        return ApiResponse(data=service.remove_reaction(message_id, user_id, emoji))
    except MessagingError as exc:
        raise http_error(exc) from exc
