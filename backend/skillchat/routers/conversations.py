"""Conversation lifecycle and membership routes."""

from datetime import datetime

from fastapi import APIRouter, Depends, Path, Query
from starlette.concurrency import run_in_threadpool

from skillchat.auth import get_current_user_id
from skillchat.dependencies import get_gateway, get_messaging_service
from skillchat.realtime.gateway import RealtimeGateway
from skillchat.routers.common import http_error
from skillchat.schemas.common import ApiResponse
from skillchat.schemas.conversation import (
    ConversationCreateRequest,
    ConversationDeleteResult,
    ConversationKindParam,
    ConversationRead,
    ConversationsListResponse,
    ConversationUpdateRequest,
    ParticipantRead,
    ParticipantRoleRequest,
    ParticipantsAddRequest,
    ParticipantUpdateRequest,
)
from skillchat.schemas.message import MarkReadResult, MessagePage
from skillchat.services.errors import MessagingError
from skillchat.services.messaging import MessagingService

router = APIRouter(prefix="/conversations")

ConversationIdParam = Path(..., min_length=1)


@router.post("", response_model=ApiResponse[ConversationRead], status_code=201)
async def create_conversation(
    payload: ConversationCreateRequest,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> ApiResponse[ConversationRead]:
    """Create a conversation; a repeated direct pair returns the existing one."""

    try:
        conversation = await run_in_threadpool(
            service.create_conversation,
            user_id,
            payload.kind,
            payload.participant_ids,
            payload.name,
            payload.description,
        )
    except MessagingError as exc:
        raise http_error(exc) from exc

    body = conversation.model_dump(mode="json")
    for participant_id in conversation.participant_ids:
        if participant_id != user_id:
            await gateway.emit_to_user(participant_id, "conversation_created", body)
    return ApiResponse(data=conversation)


@router.get("", response_model=ApiResponse[ConversationsListResponse])
def list_conversations(
    kind: ConversationKindParam | None = Query(default=None),
    search: str | None = Query(default=None, max_length=255),
    page: int | None = Query(default=None, ge=1),
    limit: int | None = Query(default=None, ge=1, le=100),
    offset: int | None = Query(default=None, ge=0),
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[ConversationsListResponse]:
    """List the caller's active conversations."""

    result = service.list_conversations(user_id, kind=kind, search=search, page=page, limit=limit, offset=offset)
    return ApiResponse(data=result)


@router.get("/{conversation_id}", response_model=ApiResponse[ConversationRead])
def get_conversation(
    conversation_id: str = ConversationIdParam,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[ConversationRead]:
    try:
        return ApiResponse(data=service.get_conversation(conversation_id, user_id))
    except MessagingError as exc:
        raise http_error(exc) from exc


@router.put("/{conversation_id}", response_model=ApiResponse[ConversationRead])
async def update_conversation(
    payload: ConversationUpdateRequest,
    conversation_id: str = ConversationIdParam,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> ApiResponse[ConversationRead]:
    """Rename or describe a group; creator or admin only."""

    try:
        conversation = await run_in_threadpool(
            lambda: service.update_conversation(
                conversation_id,
                user_id,
                name=payload.name,
                description=payload.description,
            )
        )
    except MessagingError as exc:
        raise http_error(exc) from exc

    await gateway.emit_conversation_update(conversation_id, {"conversation": conversation.model_dump(mode="json")})
    return ApiResponse(data=conversation)


@router.delete("/{conversation_id}", response_model=ApiResponse[ConversationDeleteResult])
async def delete_conversation(
    conversation_id: str = ConversationIdParam,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> ApiResponse[ConversationDeleteResult]:
    """Leave-for-everyone: marks every active membership as left."""

    try:
        result = await run_in_threadpool(service.delete_conversation, conversation_id, user_id)
    except MessagingError as exc:
        raise http_error(exc) from exc

    await gateway.emit_conversation_update(conversation_id, {"deleted": True, "deleted_by": user_id})
    return ApiResponse(data=result)


@router.post("/{conversation_id}/participants", response_model=ApiResponse[ConversationRead])
async def add_participants(
    payload: ParticipantsAddRequest,
    conversation_id: str = ConversationIdParam,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> ApiResponse[ConversationRead]:
    try:
        conversation = await run_in_threadpool(
            service.add_participants,
            conversation_id,
            user_id,
            payload.participant_ids,
        )
    except MessagingError as exc:
        raise http_error(exc) from exc

    await gateway.emit_conversation_update(conversation_id, {"conversation": conversation.model_dump(mode="json")})
    return ApiResponse(data=conversation)


@router.patch("/{conversation_id}/participants/me", response_model=ApiResponse[ParticipantRead])
def update_my_participation(
    payload: ParticipantUpdateRequest,
    conversation_id: str = ConversationIdParam,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[ParticipantRead]:
    """Mute or unmute the conversation for the caller."""

    try:
        return ApiResponse(data=service.set_muted(conversation_id, user_id, payload.is_muted))
    except MessagingError as exc:
        raise http_error(exc) from exc


@router.patch("/{conversation_id}/participants/{participant_id}/role", response_model=ApiResponse[ConversationRead])
def update_participant_role(
    payload: ParticipantRoleRequest,
    conversation_id: str = ConversationIdParam,
    participant_id: str = Path(..., min_length=1),
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[ConversationRead]:
    try:
        conversation = service.set_participant_role(conversation_id, user_id, participant_id, payload.role)
    except MessagingError as exc:
        raise http_error(exc) from exc
    return ApiResponse(data=conversation)


@router.delete("/{conversation_id}/participants/{participant_id}", response_model=ApiResponse[ConversationRead])
async def remove_participant(
    conversation_id: str = ConversationIdParam,
    participant_id: str = Path(..., min_length=1),
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> ApiResponse[ConversationRead]:
    """Leave a group, or remove a member as creator/admin."""

    try:
        conversation = await run_in_threadpool(
            service.remove_participant,
            conversation_id,
            user_id,
            participant_id,
        )
    except MessagingError as exc:
        raise http_error(exc) from exc

    await gateway.emit_conversation_update(conversation_id, {"removed_user_id": participant_id})
    return ApiResponse(data=conversation)


@router.get("/{conversation_id}/messages", response_model=ApiResponse[MessagePage])
def get_messages(
    conversation_id: str = ConversationIdParam,
    before: datetime | None = Query(default=None),
    after: datetime | None = Query(default=None),
    page: int | None = Query(default=None, ge=1),
    limit: int | None = Query(default=None, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[MessagePage]:
    """Return conversation history in chronological order; viewing rejoins the caller."""

    try:
        result = service.get_messages(conversation_id, user_id, before=before, after=after, page=page, limit=limit)
    except MessagingError as exc:
        raise http_error(exc) from exc
    return ApiResponse(data=result)


@router.post("/{conversation_id}/read", response_model=ApiResponse[MarkReadResult])
def mark_conversation_read(
    conversation_id: str = ConversationIdParam,
    user_id: str = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ApiResponse[MarkReadResult]:
    try:
        return ApiResponse(data=service.mark_messages_as_read(conversation_id, user_id))
    except MessagingError as exc:
        raise http_error(exc) from exc
