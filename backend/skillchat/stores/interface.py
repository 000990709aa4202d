"""Persistence contracts for conversations, messages, and user identities."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime

from skillchat.stores.records import (
    ConversationRecord,
    MessageRecord,
    ParticipantRecord,
    ReactionRecord,
    ReadRecord,
    UpsertOutcome,
    UserIdentity,
)


class StoreWriteError(RuntimeError):
    """Raised when a write fails in the backing engine and the store could not recover."""


class ConversationStore(ABC):
    """Data access for the messaging aggregate. Enforces uniqueness only, no business rules."""

    # conversations

    @abstractmethod
    def create_conversation(
        self,
        *,
        kind: str,
        created_by: str,
        members: Sequence[tuple[str, str]],
        name: str | None = None,
        description: str | None = None,
    ) -> ConversationRecord:
        """Insert a conversation plus one participant row per `(user_id, role)` pair."""

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        """Return one conversation with all membership records."""

    @abstractmethod
    def find_direct_conversations(self, user_ids: Sequence[str]) -> list[ConversationRecord]:
        """Return direct conversations where any of `user_ids` holds a membership record."""

    @abstractmethod
    def list_conversations(
        self,
        user_id: str,
        *,
        kind: str | None = None,
        search: str | None = None,
        limit: int,
        offset: int,
    ) -> tuple[list[ConversationRecord], int]:
        """Return conversations the user actively belongs to, newest activity first, plus the total."""

    @abstractmethod
    def update_conversation(
        self,
        conversation_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> ConversationRecord | None:
        """Apply admin edits; `None` leaves a field untouched."""

    @abstractmethod
    def touch_conversation(self, conversation_id: str) -> None:
        """Bump `updated_at` to now."""

    # participants

    @abstractmethod
    def get_participant(self, conversation_id: str, user_id: str) -> ParticipantRecord | None:
        """Return the membership row regardless of `left_at`."""

    @abstractmethod
    def upsert_participant(
        self,
        conversation_id: str,
        user_id: str,
        *,
        role: str = "member",
    ) -> tuple[ParticipantRecord, UpsertOutcome]:
        """Insert a membership row or clear `left_at` on the existing one, atomically."""

    @abstractmethod
    def update_participant(
        self,
        conversation_id: str,
        user_id: str,
        *,
        role: str | None = None,
        is_muted: bool | None = None,
        last_read_at: datetime | None = None,
    ) -> ParticipantRecord | None:
        """Edit membership fields; returns `None` when the row does not exist."""

    @abstractmethod
    def mark_participants_left(
        self,
        conversation_id: str,
        user_ids: Sequence[str] | None = None,
    ) -> int:
        """Set `left_at` on active rows (all of them when `user_ids` is None)."""

    @abstractmethod
    def active_conversation_ids(self, user_id: str) -> list[str]:
        """Return ids of conversations the user actively belongs to."""

    # messages

    @abstractmethod
    def create_message(
        self,
        *,
        conversation_id: str,
        sender_id: str,
        content: str,
        type: str = "text",
        receiver_id: str | None = None,
        attachments: list[dict[str, object]] | None = None,
        reply_to_id: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> MessageRecord:
        """Insert one message."""

    @abstractmethod
    def get_message(self, message_id: str) -> MessageRecord | None:
        """Return one message, tombstoned or not."""

    @abstractmethod
    def get_messages(self, message_ids: Sequence[str]) -> list[MessageRecord]:
        """Return the messages with the given ids, in no particular order."""

    @abstractmethod
    def latest_message(self, conversation_id: str) -> MessageRecord | None:
        """Return the newest message of a conversation."""

    @abstractmethod
    def list_messages(
        self,
        conversation_id: str,
        *,
        before: datetime | None = None,
        after: datetime | None = None,
        limit: int,
        offset: int,
    ) -> tuple[list[MessageRecord], int]:
        """Return one page of messages newest first, plus the total in range."""

    @abstractmethod
    def update_message(
        self,
        message_id: str,
        *,
        edited_at: datetime,
        content: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> MessageRecord | None:
        """Apply an edit and flag the message as edited."""

    @abstractmethod
    def soft_delete_message(self, message_id: str, *, tombstone: str, deleted_at: datetime) -> MessageRecord | None:
        """Overwrite content with `tombstone` and flag the message deleted."""

    @abstractmethod
    def mark_conversation_read(self, conversation_id: str, receiver_id: str, read_at: datetime) -> int:
        """Flip the coarse read flag on unread messages addressed to `receiver_id`."""

    @abstractmethod
    def mark_message_read_flag(self, message_id: str, read_at: datetime) -> None:
        """Flip the coarse read flag on one message."""

    @abstractmethod
    def search_messages(
        self,
        query: str,
        *,
        conversation_ids: Sequence[str],
        limit: int,
        offset: int,
    ) -> list[MessageRecord]:
        """Case-insensitive substring search over non-deleted content, newest first."""

    @abstractmethod
    def count_unread(self, conversation_id: str, user_id: str, since: datetime | None) -> int:
        """Count messages from other senders created after `since`."""

    # reactions and receipts

    @abstractmethod
    def upsert_reaction(self, message_id: str, user_id: str, emoji: str) -> ReactionRecord:
        """Add a reaction; re-adding the same triple returns the existing row."""

    @abstractmethod
    def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> int:
        """Delete a reaction; returns the number of rows removed."""

    @abstractmethod
    def list_reactions(self, message_ids: Sequence[str]) -> list[ReactionRecord]:
        """Return reactions for the given messages, oldest first."""

    @abstractmethod
    def upsert_read(self, message_id: str, user_id: str, read_at: datetime) -> ReadRecord:
        """Create or refresh the per-user read receipt."""

    @abstractmethod
    def list_reads(self, message_ids: Sequence[str]) -> list[ReadRecord]:
        """Return read receipts for the given messages, oldest first."""


class UserDirectory(ABC):
    """Identity lookup owned by the accounts service."""

    @abstractmethod
    def resolve_users(self, user_ids: Sequence[str]) -> dict[str, UserIdentity]:
        """Return known identities keyed by id; unknown ids are omitted."""

    def resolve_user(self, user_id: str) -> UserIdentity | None:
        return self.resolve_users([user_id]).get(user_id)
