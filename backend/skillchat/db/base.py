"""SQLAlchemy metadata registry import for Alembic."""

from skillchat.models import Conversation, ConversationParticipant, Message, MessageRead, MessageReaction, User
from skillchat.models.base import Base

__all__ = ["Base", "Conversation", "ConversationParticipant", "Message", "MessageRead", "MessageReaction", "User"]
