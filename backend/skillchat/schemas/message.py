"""Message request/response schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from skillchat.schemas.common import Pagination
from skillchat.schemas.user import UserSummary

MessageTypeParam = Literal["text", "image", "file", "system"]


class MessageAttachment(BaseModel):
    """One file reference carried by a message."""

    model_config = ConfigDict(extra="allow")

    filename: str = Field(min_length=1)
    url: str = Field(min_length=1)
    size: int | None = Field(default=None, ge=0)
    mime_type: str | None = None


class MessageSendRequest(BaseModel):
    """Outgoing message; exactly one of `conversation_id` or `receiver_id` is expected."""

    conversation_id: str | None = None
    receiver_id: str | None = None
    content: str = Field(min_length=1, max_length=10000)
    type: MessageTypeParam = "text"
    attachments: list[MessageAttachment] = Field(default_factory=list)
    reply_to_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MessageUpdateRequest(BaseModel):
    """Sender edit payload."""

    content: str | None = Field(default=None, min_length=1, max_length=10000)
    metadata: dict[str, Any] | None = None


class ReactionRequest(BaseModel):
    emoji: str = Field(min_length=1, max_length=32)


class ReactionRead(BaseModel):
    id: str
    emoji: str
    user_id: str
    user: UserSummary
    created_at: datetime


class ReadReceiptRead(BaseModel):
    id: str
    user_id: str
    user: UserSummary
    read_at: datetime


class MessageRead(BaseModel):
    """Serialized message with resolved identities."""

    id: str
    conversation_id: str
    sender_id: str
    sender: UserSummary
    receiver_id: str | None = None
    receiver: UserSummary | None = None
    content: str
    type: str
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    reply_to_id: str | None = None
    reply_to: "MessageRead | None" = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    reactions: list[ReactionRead] = Field(default_factory=list)
    read_by: list[ReadReceiptRead] = Field(default_factory=list)
    is_read: bool = False
    read_at: datetime | None = None
    is_edited: bool = False
    edited_at: datetime | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class MessagePage(BaseModel):
    """Chronological page of a conversation history."""

    items: list[MessageRead]
    pagination: Pagination


class MarkReadResult(BaseModel):
    conversation_id: str
    marked_count: int
    read_at: datetime


MessageRead.model_rebuild()
