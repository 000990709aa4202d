"""Conversation request/response schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from skillchat.schemas.common import Pagination
from skillchat.schemas.message import MessageRead
from skillchat.schemas.user import UserSummary

ConversationKindParam = Literal["direct", "group"]


class ConversationCreateRequest(BaseModel):
    """New conversation payload. The caller is always added as a participant."""

    kind: ConversationKindParam = "direct"
    participant_ids: list[str] = Field(min_length=2)
    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=2000)


class ConversationUpdateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=2000)


class ParticipantsAddRequest(BaseModel):
    participant_ids: list[str] = Field(min_length=1)


class ParticipantUpdateRequest(BaseModel):
    """Self-service membership settings."""

    is_muted: bool


class ParticipantRoleRequest(BaseModel):
    role: Literal["member", "admin"]


class ParticipantRead(BaseModel):
    """Active participant with resolved identity."""

    id: str
    user_id: str
    user: UserSummary
    role: str
    joined_at: datetime
    last_read_at: datetime | None = None
    is_muted: bool = False


class ConversationRead(BaseModel):
    """Hydrated conversation as seen by one caller."""

    id: str
    kind: str
    name: str | None = None
    description: str | None = None
    created_by: str
    creator: UserSummary
    participant_ids: list[str]
    participants: list[ParticipantRead]
    last_message: MessageRead | None = None
    unread_count: int = 0
    created_at: datetime
    updated_at: datetime


class ConversationsListResponse(BaseModel):
    """Paginated conversation list payload."""

    items: list[ConversationRead]
    pagination: Pagination


class ConversationDeleteResult(BaseModel):
    conversation_id: str
    participants_left: int
