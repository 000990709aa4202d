"""Typed store outputs independent of the backing engine."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

ConversationKind = Literal["direct", "group"]
ParticipantRole = Literal["member", "admin"]
MessageType = Literal["text", "image", "file", "system"]
UpsertOutcome = Literal["created", "rejoined", "active"]


@dataclass(slots=True)
class ParticipantRecord:
    """Membership row for one user in one conversation."""

    id: str
    conversation_id: str
    user_id: str
    role: str
    joined_at: datetime
    left_at: datetime | None = None
    last_read_at: datetime | None = None
    is_muted: bool = False

    @property
    def is_active(self) -> bool:
        return self.left_at is None


@dataclass(slots=True)
class ConversationRecord:
    """Conversation with every membership record, active or not."""

    id: str
    kind: str
    name: str | None
    description: str | None
    created_by: str
    created_at: datetime
    updated_at: datetime
    participants: list[ParticipantRecord] = field(default_factory=list)

    @property
    def active_participants(self) -> list[ParticipantRecord]:
        return [participant for participant in self.participants if participant.is_active]

    def participant_for(self, user_id: str) -> ParticipantRecord | None:
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None


@dataclass(slots=True)
class MessageRecord:
    id: str
    conversation_id: str
    sender_id: str
    content: str
    type: str
    created_at: datetime
    updated_at: datetime
    receiver_id: str | None = None
    attachments: list[dict[str, object]] = field(default_factory=list)
    reply_to_id: str | None = None
    metadata: dict[str, object] = field(default_factory=dict)
    is_read: bool = False
    read_at: datetime | None = None
    is_edited: bool = False
    edited_at: datetime | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None


@dataclass(slots=True)
class ReactionRecord:
    id: str
    message_id: str
    user_id: str
    emoji: str
    created_at: datetime


@dataclass(slots=True)
class ReadRecord:
    id: str
    message_id: str
    user_id: str
    read_at: datetime


@dataclass(slots=True)
class UserIdentity:
    """Display identity resolved from the accounts directory."""

    id: str
    username: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    avatar: str | None = None
