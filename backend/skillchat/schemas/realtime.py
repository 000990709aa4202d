"""Client event payloads accepted by the realtime gateway."""

from pydantic import BaseModel, Field


class AuthenticatePayload(BaseModel):
    token: str = Field(min_length=1)


class JoinUserPayload(BaseModel):
    user_id: str | None = None


class ConversationEventPayload(BaseModel):
    """Payload for join/leave, typing, and conversation-level read events."""

    conversation_id: str = Field(min_length=1)


class MessageEventPayload(BaseModel):
    message_id: str = Field(min_length=1)


class ReactionEventPayload(BaseModel):
    message_id: str = Field(min_length=1)
    emoji: str = Field(min_length=1, max_length=32)
