"""Document store backed by MongoDB collections.

Participants are embedded in their conversation document so membership
checks and the insert-or-reactivate primitive are single-document atomic
updates. Messages, reactions, and read receipts live in their own
collections with unique indexes matching the relational constraints.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from skillchat.models.base import new_id, utcnow
from skillchat.stores.interface import ConversationStore, StoreWriteError, UserDirectory
from skillchat.stores.records import (
    ConversationRecord,
    MessageRecord,
    ParticipantRecord,
    ReactionRecord,
    ReadRecord,
    UpsertOutcome,
    UserIdentity,
)

logger = logging.getLogger(__name__)

_MEMBERSHIP_UPSERT_ATTEMPTS = 2

# `seq` orders messages that share a millisecond timestamp.
_NEWEST_FIRST = [("created_at", DESCENDING), ("seq", DESCENDING), ("_id", DESCENDING)]


def ensure_indexes(database: Database) -> None:
    """Create the indexes the store relies on for uniqueness and ordering."""

    database.conversations.create_index([("participants.user_id", ASCENDING)])
    database.conversations.create_index([("updated_at", DESCENDING)])
    database.messages.create_index(
        [("conversation_id", ASCENDING), ("created_at", DESCENDING), ("seq", DESCENDING)]
    )
    database.message_reactions.create_index(
        [("message_id", ASCENDING), ("user_id", ASCENDING), ("emoji", ASCENDING)],
        unique=True,
    )
    database.message_reads.create_index([("message_id", ASCENDING), ("user_id", ASCENDING)], unique=True)


def _to_storage(value: datetime | None) -> datetime | None:
    # BSON dates are naive UTC with millisecond precision.
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def _from_storage(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _contains_pattern(term: str) -> dict[str, str]:
    return {"$regex": re.escape(term), "$options": "i"}


class DocumentConversationStore(ConversationStore):
    """`ConversationStore` over a pymongo database."""

    def __init__(self, database: Database) -> None:
        self.database = database
        self.conversations = database.conversations
        self.messages = database.messages
        self.reactions = database.message_reactions
        self.reads = database.message_reads

    def create_conversation(
        self,
        *,
        kind: str,
        created_by: str,
        members: Sequence[tuple[str, str]],
        name: str | None = None,
        description: str | None = None,
    ) -> ConversationRecord:
        now = _to_storage(utcnow())
        document = {
            "_id": new_id(),
            "kind": kind,
            "name": name,
            "description": description,
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
            "participants": [_participant_document(user_id, role, now) for user_id, role in members],
        }
        self.conversations.insert_one(document)
        return _conversation_record(document)

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        document = self.conversations.find_one({"_id": conversation_id})
        if document is None:
            return None
        return _conversation_record(document)

    def find_direct_conversations(self, user_ids: Sequence[str]) -> list[ConversationRecord]:
        cursor = self.conversations.find(
            {"kind": "direct", "participants.user_id": {"$in": list(user_ids)}}
        ).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        return [_conversation_record(document) for document in cursor]

    def list_conversations(
        self,
        user_id: str,
        *,
        kind: str | None = None,
        search: str | None = None,
        limit: int,
        offset: int,
    ) -> tuple[list[ConversationRecord], int]:
        query: dict[str, Any] = {"participants": {"$elemMatch": {"user_id": user_id, "left_at": None}}}
        if kind:
            query["kind"] = kind
        filter_term = (search or "").strip()
        if filter_term:
            pattern = _contains_pattern(filter_term)
            query["$or"] = [{"name": pattern}, {"description": pattern}]
        total = self.conversations.count_documents(query)
        cursor = (
            self.conversations.find(query)
            .sort([("updated_at", DESCENDING), ("_id", DESCENDING)])
            .skip(offset)
            .limit(limit)
        )
        return [_conversation_record(document) for document in cursor], total

    def update_conversation(
        self,
        conversation_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> ConversationRecord | None:
        changes: dict[str, Any] = {"updated_at": _to_storage(utcnow())}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        document = self.conversations.find_one_and_update(
            {"_id": conversation_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if document is None:
            return None
        return _conversation_record(document)

    def touch_conversation(self, conversation_id: str) -> None:
        self.conversations.update_one({"_id": conversation_id}, {"$set": {"updated_at": _to_storage(utcnow())}})

    def get_participant(self, conversation_id: str, user_id: str) -> ParticipantRecord | None:
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return None
        return conversation.participant_for(user_id)

    def upsert_participant(
        self,
        conversation_id: str,
        user_id: str,
        *,
        role: str = "member",
    ) -> tuple[ParticipantRecord, UpsertOutcome]:
        existing = self.get_participant(conversation_id, user_id)
        if existing is not None and existing.is_active:
            return existing, "active"

        try:
            for _ in range(_MEMBERSHIP_UPSERT_ATTEMPTS):
                reactivated = self.conversations.update_one(
                    {"_id": conversation_id, "participants.user_id": user_id},
                    {"$set": {"participants.$.left_at": None}},
                )
                if reactivated.matched_count:
                    break
                # The $ne guard keeps a concurrent push from creating a second row.
                inserted = self.conversations.update_one(
                    {"_id": conversation_id, "participants.user_id": {"$ne": user_id}},
                    {"$push": {"participants": _participant_document(user_id, role, _to_storage(utcnow()))}},
                )
                if inserted.matched_count:
                    break
                logger.info(
                    "store.participant_upsert_retry conversation_id=%s user_id=%s",
                    conversation_id,
                    user_id,
                )
        except PyMongoError as exc:
            raise StoreWriteError(
                f"participant upsert failed for conversation {conversation_id} user {user_id}"
            ) from exc

        participant = self.get_participant(conversation_id, user_id)
        if participant is None or not participant.is_active:
            raise StoreWriteError(f"participant row missing after upsert for conversation {conversation_id}")
        return participant, "created" if existing is None else "rejoined"

    def update_participant(
        self,
        conversation_id: str,
        user_id: str,
        *,
        role: str | None = None,
        is_muted: bool | None = None,
        last_read_at: datetime | None = None,
    ) -> ParticipantRecord | None:
        changes: dict[str, Any] = {}
        if role is not None:
            changes["participants.$.role"] = role
        if is_muted is not None:
            changes["participants.$.is_muted"] = is_muted
        if last_read_at is not None:
            changes["participants.$.last_read_at"] = _to_storage(last_read_at)
        if changes:
            self.conversations.update_one(
                {"_id": conversation_id, "participants.user_id": user_id},
                {"$set": changes},
            )
        return self.get_participant(conversation_id, user_id)

    def mark_participants_left(
        self,
        conversation_id: str,
        user_ids: Sequence[str] | None = None,
    ) -> int:
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return 0
        targets = [
            participant.user_id
            for participant in conversation.active_participants
            if user_ids is None or participant.user_id in user_ids
        ]
        left_at = _to_storage(utcnow())
        modified = 0
        for user_id in targets:
            result = self.conversations.update_one(
                {
                    "_id": conversation_id,
                    "participants": {"$elemMatch": {"user_id": user_id, "left_at": None}},
                },
                {"$set": {"participants.$.left_at": left_at}},
            )
            modified += result.modified_count
        return modified

    def active_conversation_ids(self, user_id: str) -> list[str]:
        cursor = self.conversations.find(
            {"participants": {"$elemMatch": {"user_id": user_id, "left_at": None}}},
            {"_id": 1},
        )
        return [document["_id"] for document in cursor]

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
        seq = self._next_message_seq()
        now = _to_storage(utcnow())
        document = {
            "_id": new_id(),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "type": type,
            "attachments": list(attachments or []),
            "reply_to_id": reply_to_id,
            "metadata": dict(metadata or {}),
            "is_read": False,
            "read_at": None,
            "is_edited": False,
            "edited_at": None,
            "is_deleted": False,
            "deleted_at": None,
            "created_at": now,
            "updated_at": now,
            "seq": seq,
        }
        self.messages.insert_one(document)
        return _message_record(document)

    def _next_message_seq(self) -> int:
        counter = self.database.counters.find_one_and_update(
            {"_id": "messages"},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return counter["value"]

    def get_message(self, message_id: str) -> MessageRecord | None:
        document = self.messages.find_one({"_id": message_id})
        if document is None:
            return None
        return _message_record(document)

    def get_messages(self, message_ids: Sequence[str]) -> list[MessageRecord]:
        if not message_ids:
            return []
        return [_message_record(document) for document in self.messages.find({"_id": {"$in": list(message_ids)}})]

    def latest_message(self, conversation_id: str) -> MessageRecord | None:
        cursor = (
            self.messages.find({"conversation_id": conversation_id})
            .sort(_NEWEST_FIRST)
            .limit(1)
        )
        for document in cursor:
            return _message_record(document)
        return None

    def list_messages(
        self,
        conversation_id: str,
        *,
        before: datetime | None = None,
        after: datetime | None = None,
        limit: int,
        offset: int,
    ) -> tuple[list[MessageRecord], int]:
        query: dict[str, Any] = {"conversation_id": conversation_id}
        created_range: dict[str, datetime] = {}
        if before is not None:
            created_range["$lt"] = _to_storage(before)
        if after is not None:
            created_range["$gt"] = _to_storage(after)
        if created_range:
            query["created_at"] = created_range
        total = self.messages.count_documents(query)
        cursor = (
            self.messages.find(query)
            .sort(_NEWEST_FIRST)
            .skip(offset)
            .limit(limit)
        )
        return [_message_record(document) for document in cursor], total

    def update_message(
        self,
        message_id: str,
        *,
        edited_at: datetime,
        content: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> MessageRecord | None:
        changes: dict[str, Any] = {
            "is_edited": True,
            "edited_at": _to_storage(edited_at),
            "updated_at": _to_storage(utcnow()),
        }
        if content is not None:
            changes["content"] = content
        if metadata is not None:
            changes["metadata"] = dict(metadata)
        document = self.messages.find_one_and_update(
            {"_id": message_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if document is None:
            return None
        return _message_record(document)

    def soft_delete_message(self, message_id: str, *, tombstone: str, deleted_at: datetime) -> MessageRecord | None:
        document = self.messages.find_one_and_update(
            {"_id": message_id},
            {
                "$set": {
                    "content": tombstone,
                    "is_deleted": True,
                    "deleted_at": _to_storage(deleted_at),
                    "updated_at": _to_storage(utcnow()),
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if document is None:
            return None
        return _message_record(document)

    def mark_conversation_read(self, conversation_id: str, receiver_id: str, read_at: datetime) -> int:
        result = self.messages.update_many(
            {"conversation_id": conversation_id, "receiver_id": receiver_id, "is_read": False},
            {"$set": {"is_read": True, "read_at": _to_storage(read_at)}},
        )
        return result.modified_count

    def mark_message_read_flag(self, message_id: str, read_at: datetime) -> None:
        self.messages.update_one({"_id": message_id}, {"$set": {"is_read": True, "read_at": _to_storage(read_at)}})

    def search_messages(
        self,
        query: str,
        *,
        conversation_ids: Sequence[str],
        limit: int,
        offset: int,
    ) -> list[MessageRecord]:
        if not conversation_ids:
            return []
        cursor = (
            self.messages.find(
                {
                    "conversation_id": {"$in": list(conversation_ids)},
                    "is_deleted": False,
                    "content": _contains_pattern(query),
                }
            )
            .sort(_NEWEST_FIRST)
            .skip(offset)
            .limit(limit)
        )
        return [_message_record(document) for document in cursor]

    def count_unread(self, conversation_id: str, user_id: str, since: datetime | None) -> int:
        query: dict[str, Any] = {"conversation_id": conversation_id, "sender_id": {"$ne": user_id}}
        if since is not None:
            query["created_at"] = {"$gt": _to_storage(since)}
        return self.messages.count_documents(query)

    def upsert_reaction(self, message_id: str, user_id: str, emoji: str) -> ReactionRecord:
        key = {"message_id": message_id, "user_id": user_id, "emoji": emoji}
        try:
            self.reactions.update_one(
                key,
                {"$setOnInsert": {"_id": new_id(), "created_at": _to_storage(utcnow())}},
                upsert=True,
            )
        except DuplicateKeyError:
            logger.info("store.reaction_upsert_conflict message_id=%s user_id=%s", message_id, user_id)
        document = self.reactions.find_one(key)
        if document is None:
            raise StoreWriteError(f"reaction upsert failed for message {message_id}")
        return _reaction_record(document)

    def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> int:
        result = self.reactions.delete_one({"message_id": message_id, "user_id": user_id, "emoji": emoji})
        return result.deleted_count

    def list_reactions(self, message_ids: Sequence[str]) -> list[ReactionRecord]:
        if not message_ids:
            return []
        cursor = self.reactions.find({"message_id": {"$in": list(message_ids)}}).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        return [_reaction_record(document) for document in cursor]

    def upsert_read(self, message_id: str, user_id: str, read_at: datetime) -> ReadRecord:
        key = {"message_id": message_id, "user_id": user_id}
        update = {"$set": {"read_at": _to_storage(read_at)}, "$setOnInsert": {"_id": new_id()}}
        try:
            self.reads.update_one(key, update, upsert=True)
        except DuplicateKeyError:
            self.reads.update_one(key, {"$set": update["$set"]})
        document = self.reads.find_one(key)
        if document is None:
            raise StoreWriteError(f"read receipt upsert failed for message {message_id}")
        return _read_record(document)

    def list_reads(self, message_ids: Sequence[str]) -> list[ReadRecord]:
        if not message_ids:
            return []
        cursor = self.reads.find({"message_id": {"$in": list(message_ids)}}).sort(
            [("read_at", ASCENDING), ("_id", ASCENDING)]
        )
        return [_read_record(document) for document in cursor]


class DocumentUserDirectory(UserDirectory):
    """Identity lookup over the `users` collection."""

    def __init__(self, database: Database) -> None:
        self.users = database.users

    def resolve_users(self, user_ids: Sequence[str]) -> dict[str, UserIdentity]:
        unique_ids = sorted({user_id for user_id in user_ids if user_id})
        if not unique_ids:
            return {}
        return {
            document["_id"]: UserIdentity(
                id=document["_id"],
                username=document.get("username") or "",
                email=document.get("email") or "",
                first_name=document.get("first_name"),
                last_name=document.get("last_name"),
                avatar=document.get("avatar"),
            )
            for document in self.users.find({"_id": {"$in": unique_ids}})
        }


def _participant_document(user_id: str, role: str, joined_at: datetime | None) -> dict[str, Any]:
    return {
        "id": new_id(),
        "user_id": user_id,
        "role": role,
        "joined_at": joined_at,
        "left_at": None,
        "last_read_at": None,
        "is_muted": False,
    }


def _conversation_record(document: dict[str, Any]) -> ConversationRecord:
    return ConversationRecord(
        id=document["_id"],
        kind=document["kind"],
        name=document.get("name"),
        description=document.get("description"),
        created_by=document["created_by"],
        created_at=_from_storage(document["created_at"]),
        updated_at=_from_storage(document["updated_at"]),
        participants=[
            ParticipantRecord(
                id=participant["id"],
                conversation_id=document["_id"],
                user_id=participant["user_id"],
                role=participant["role"],
                joined_at=_from_storage(participant["joined_at"]),
                left_at=_from_storage(participant.get("left_at")),
                last_read_at=_from_storage(participant.get("last_read_at")),
                is_muted=bool(participant.get("is_muted", False)),
            )
            for participant in document.get("participants", [])
        ],
    )


def _message_record(document: dict[str, Any]) -> MessageRecord:
    return MessageRecord(
        id=document["_id"],
        conversation_id=document["conversation_id"],
        sender_id=document["sender_id"],
        receiver_id=document.get("receiver_id"),
        content=document["content"],
        type=document.get("type", "text"),
        attachments=list(document.get("attachments") or []),
        reply_to_id=document.get("reply_to_id"),
        metadata=dict(document.get("metadata") or {}),
        is_read=bool(document.get("is_read", False)),
        read_at=_from_storage(document.get("read_at")),
        is_edited=bool(document.get("is_edited", False)),
        edited_at=_from_storage(document.get("edited_at")),
        is_deleted=bool(document.get("is_deleted", False)),
        deleted_at=_from_storage(document.get("deleted_at")),
        created_at=_from_storage(document["created_at"]),
        updated_at=_from_storage(document["updated_at"]),
    )


def _reaction_record(document: dict[str, Any]) -> ReactionRecord:
    return ReactionRecord(
        id=document["_id"],
        message_id=document["message_id"],
        user_id=document["user_id"],
        emoji=document["emoji"],
        created_at=_from_storage(document["created_at"]),
    )


def _read_record(document: dict[str, Any]) -> ReadRecord:
    return ReadRecord(
        id=document["_id"],
        message_id=document["message_id"],
        user_id=document["user_id"],
        read_at=_from_storage(document["read_at"]),
    )
