"""ORM models package exports."""

from skillchat.models.conversation import Conversation, ConversationParticipant
from skillchat.models.message import Message, MessageRead, MessageReaction
from skillchat.models.user import User

__all__ = [
    "Conversation",
    "ConversationParticipant",
    "Message",
    "MessageRead",
    "MessageReaction",
    "User",
]
