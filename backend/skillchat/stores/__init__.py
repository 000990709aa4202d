"""Conversation/message persistence backends."""

from skillchat.stores.interface import ConversationStore, StoreWriteError, UserDirectory
from skillchat.stores.records import (
    ConversationRecord,
    MessageRecord,
    ParticipantRecord,
    ReactionRecord,
    ReadRecord,
    UserIdentity,
)

__all__ = [
    "ConversationRecord",
    "ConversationStore",
    "MessageRecord",
    "ParticipantRecord",
    "ReactionRecord",
    "ReadRecord",
    "StoreWriteError",
    "UserDirectory",
    "UserIdentity",
]
