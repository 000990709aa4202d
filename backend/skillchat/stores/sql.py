"""Relational store backed by SQLAlchemy sessions."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from skillchat.models.base import new_id, utcnow
from skillchat.models.conversation import Conversation, ConversationParticipant
from skillchat.models.message import Message, MessageRead, MessageReaction
from skillchat.models.user import User
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

_NATIVE_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored value is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlConversationStore(ConversationStore):
    """`ConversationStore` over one SQLAlchemy session. Each write commits."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def create_conversation(
        self,
        *,
        kind: str,
        created_by: str,
        members: Sequence[tuple[str, str]],
        name: str | None = None,
        description: str | None = None,
    ) -> ConversationRecord:
        now = utcnow()
        conversation = Conversation(
            kind=kind,
            name=name,
            description=description,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.db.add(conversation)
        self.db.flush()
        for user_id, role in members:
            self.db.add(
                ConversationParticipant(
                    conversation_id=conversation.id,
                    user_id=user_id,
                    role=role,
                    joined_at=now,
                )
            )
        self.db.commit()
        self.db.refresh(conversation)
        return _conversation_record(conversation)

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        conversation = self.db.scalar(select(Conversation).where(Conversation.id == conversation_id))
        if conversation is None:
            return None
        return _conversation_record(conversation)

    def find_direct_conversations(self, user_ids: Sequence[str]) -> list[ConversationRecord]:
        member_of = select(ConversationParticipant.conversation_id).where(
            ConversationParticipant.user_id.in_(list(user_ids))
        )
        stmt = (
            select(Conversation)
            .where(Conversation.kind == "direct", Conversation.id.in_(member_of))
            .order_by(Conversation.created_at.asc(), Conversation.id.asc())
        )
        return [_conversation_record(conversation) for conversation in self.db.scalars(stmt).all()]

    def list_conversations(
        self,
        user_id: str,
        *,
        kind: str | None = None,
        search: str | None = None,
        limit: int,
        offset: int,
    ) -> tuple[list[ConversationRecord], int]:
        active_ids = select(ConversationParticipant.conversation_id).where(
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.left_at.is_(None),
        )
        base = select(Conversation).where(Conversation.id.in_(active_ids))
        if kind:
            base = base.where(Conversation.kind == kind)
        filter_term = (search or "").strip()
        if filter_term:
            base = base.where(
                or_(
                    Conversation.name.icontains(filter_term, autoescape=True),
                    Conversation.description.icontains(filter_term, autoescape=True),
                )
            )
        total = int(self.db.scalar(select(func.count()).select_from(base.subquery())) or 0)
        stmt = base.order_by(Conversation.updated_at.desc(), Conversation.id.desc()).limit(limit).offset(offset)
        items = [_conversation_record(conversation) for conversation in self.db.scalars(stmt).all()]
        return items, total

    def update_conversation(
        self,
        conversation_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> ConversationRecord | None:
        conversation = self.db.scalar(select(Conversation).where(Conversation.id == conversation_id))
        if conversation is None:
            return None
        if name is not None:
            conversation.name = name
        if description is not None:
            conversation.description = description
        conversation.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(conversation)
        return _conversation_record(conversation)

    def touch_conversation(self, conversation_id: str) -> None:
        self.db.execute(
            update(Conversation).where(Conversation.id == conversation_id).values(updated_at=utcnow())
        )
        self.db.commit()

    def get_participant(self, conversation_id: str, user_id: str) -> ParticipantRecord | None:
        participant = self._participant_row(conversation_id, user_id)
        if participant is None:
            return None
        return _participant_record(participant)

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
            insert_factory = _NATIVE_UPSERT_INSERTS.get(self.db.get_bind().dialect.name)
            if insert_factory is not None:
                self._native_upsert(insert_factory, conversation_id, user_id, role)
            else:
                self._insert_or_reactivate(conversation_id, user_id, role, exists=existing is not None)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreWriteError(
                f"participant upsert failed for conversation {conversation_id} user {user_id}"
            ) from exc

        participant = self.get_participant(conversation_id, user_id)
        if participant is None or not participant.is_active:
            raise StoreWriteError(f"participant row missing after upsert for conversation {conversation_id}")
        return participant, "created" if existing is None else "rejoined"

    def _native_upsert(self, insert_factory, conversation_id: str, user_id: str, role: str) -> None:
        stmt = insert_factory(ConversationParticipant).values(
            id=new_id(),
            conversation_id=conversation_id,
            user_id=user_id,
            role=role,
            joined_at=utcnow(),
            is_muted=False,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["conversation_id", "user_id"],
            set_={"left_at": None},
        )
        self.db.execute(stmt)
        self.db.commit()

    def _insert_or_reactivate(self, conversation_id: str, user_id: str, role: str, *, exists: bool) -> None:
        if not exists:
            try:
                self.db.add(
                    ConversationParticipant(
                        conversation_id=conversation_id,
                        user_id=user_id,
                        role=role,
                        joined_at=utcnow(),
                    )
                )
                self.db.commit()
                return
            except IntegrityError:
                # Another session inserted the row first; fall through and reactivate it.
                self.db.rollback()
                logger.info(
                    "store.participant_insert_conflict conversation_id=%s user_id=%s",
                    conversation_id,
                    user_id,
                )
        self.db.execute(
            update(ConversationParticipant)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id,
            )
            .values(left_at=None)
        )
        self.db.commit()

    def update_participant(
        self,
        conversation_id: str,
        user_id: str,
        *,
        role: str | None = None,
        is_muted: bool | None = None,
        last_read_at: datetime | None = None,
    ) -> ParticipantRecord | None:
        participant = self._participant_row(conversation_id, user_id)
        if participant is None:
            return None
        if role is not None:
            participant.role = role
        if is_muted is not None:
            participant.is_muted = is_muted
        if last_read_at is not None:
            participant.last_read_at = last_read_at
        self.db.commit()
        self.db.refresh(participant)
        return _participant_record(participant)

    def mark_participants_left(
        self,
        conversation_id: str,
        user_ids: Sequence[str] | None = None,
    ) -> int:
        stmt = update(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.left_at.is_(None),
        )
        if user_ids is not None:
            stmt = stmt.where(ConversationParticipant.user_id.in_(list(user_ids)))
        result = self.db.execute(stmt.values(left_at=utcnow()))
        self.db.commit()
        return int(result.rowcount or 0)

    def active_conversation_ids(self, user_id: str) -> list[str]:
        stmt = select(ConversationParticipant.conversation_id).where(
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.left_at.is_(None),
        )
        return list(self.db.scalars(stmt).all())

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
        now = utcnow()
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            type=type,
            attachments_json=list(attachments or []),
            reply_to_id=reply_to_id,
            metadata_json=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        return _message_record(message)

    def get_message(self, message_id: str) -> MessageRecord | None:
        message = self.db.scalar(select(Message).where(Message.id == message_id))
        if message is None:
            return None
        return _message_record(message)

    def get_messages(self, message_ids: Sequence[str]) -> list[MessageRecord]:
        if not message_ids:
            return []
        stmt = select(Message).where(Message.id.in_(list(message_ids)))
        return [_message_record(message) for message in self.db.scalars(stmt).all()]

    def latest_message(self, conversation_id: str) -> MessageRecord | None:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
        )
        message = self.db.scalar(stmt)
        if message is None:
            return None
        return _message_record(message)

    def list_messages(
        self,
        conversation_id: str,
        *,
        before: datetime | None = None,
        after: datetime | None = None,
        limit: int,
        offset: int,
    ) -> tuple[list[MessageRecord], int]:
        base = select(Message).where(Message.conversation_id == conversation_id)
        if before is not None:
            base = base.where(Message.created_at < _as_utc(before))
        if after is not None:
            base = base.where(Message.created_at > _as_utc(after))
        total = int(self.db.scalar(select(func.count()).select_from(base.subquery())) or 0)
        stmt = base.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).offset(offset)
        return [_message_record(message) for message in self.db.scalars(stmt).all()], total

    def update_message(
        self,
        message_id: str,
        *,
        edited_at: datetime,
        content: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> MessageRecord | None:
        message = self.db.scalar(select(Message).where(Message.id == message_id))
        if message is None:
            return None
        if content is not None:
            message.content = content
        if metadata is not None:
            message.metadata_json = dict(metadata)
        message.is_edited = True
        message.edited_at = edited_at
        self.db.commit()
        self.db.refresh(message)
        return _message_record(message)

    def soft_delete_message(self, message_id: str, *, tombstone: str, deleted_at: datetime) -> MessageRecord | None:
        message = self.db.scalar(select(Message).where(Message.id == message_id))
        if message is None:
            return None
        message.content = tombstone
        message.is_deleted = True
        message.deleted_at = deleted_at
        self.db.commit()
        self.db.refresh(message)
        return _message_record(message)

    def mark_conversation_read(self, conversation_id: str, receiver_id: str, read_at: datetime) -> int:
        result = self.db.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.receiver_id == receiver_id,
                Message.is_read.is_(False),
            )
            .values(is_read=True, read_at=read_at)
        )
        self.db.commit()
        return int(result.rowcount or 0)

    def mark_message_read_flag(self, message_id: str, read_at: datetime) -> None:
        self.db.execute(update(Message).where(Message.id == message_id).values(is_read=True, read_at=read_at))
        self.db.commit()

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
        stmt = (
            select(Message)
            .where(
                Message.conversation_id.in_(list(conversation_ids)),
                Message.is_deleted.is_(False),
                Message.content.icontains(query, autoescape=True),
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [_message_record(message) for message in self.db.scalars(stmt).all()]

    def count_unread(self, conversation_id: str, user_id: str, since: datetime | None) -> int:
        stmt = select(func.count(Message.id)).where(
            Message.conversation_id == conversation_id,
            Message.sender_id != user_id,
        )
        if since is not None:
            stmt = stmt.where(Message.created_at > _as_utc(since))
        return int(self.db.scalar(stmt) or 0)

    def upsert_reaction(self, message_id: str, user_id: str, emoji: str) -> ReactionRecord:
        existing = self._reaction_row(message_id, user_id, emoji)
        if existing is not None:
            return _reaction_record(existing)
        try:
            reaction = MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji, created_at=utcnow())
            self.db.add(reaction)
            self.db.commit()
            self.db.refresh(reaction)
            return _reaction_record(reaction)
        except IntegrityError:
            self.db.rollback()
        existing = self._reaction_row(message_id, user_id, emoji)
        if existing is None:
            raise StoreWriteError(f"reaction upsert failed for message {message_id}")
        return _reaction_record(existing)

    def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> int:
        result = self.db.execute(
            delete(MessageReaction).where(
                MessageReaction.message_id == message_id,
                MessageReaction.user_id == user_id,
                MessageReaction.emoji == emoji,
            )
        )
        self.db.commit()
        return int(result.rowcount or 0)

    def list_reactions(self, message_ids: Sequence[str]) -> list[ReactionRecord]:
        if not message_ids:
            return []
        stmt = (
            select(MessageReaction)
            .where(MessageReaction.message_id.in_(list(message_ids)))
            .order_by(MessageReaction.created_at.asc(), MessageReaction.id.asc())
        )
        return [_reaction_record(reaction) for reaction in self.db.scalars(stmt).all()]

    def upsert_read(self, message_id: str, user_id: str, read_at: datetime) -> ReadRecord:
        receipt = self._read_row(message_id, user_id)
        if receipt is None:
            try:
                receipt = MessageRead(message_id=message_id, user_id=user_id, read_at=read_at)
                self.db.add(receipt)
                self.db.commit()
                self.db.refresh(receipt)
                return _read_record(receipt)
            except IntegrityError:
                self.db.rollback()
                receipt = self._read_row(message_id, user_id)
                if receipt is None:
                    raise StoreWriteError(f"read receipt upsert failed for message {message_id}") from None
        receipt.read_at = read_at
        self.db.commit()
        self.db.refresh(receipt)
        return _read_record(receipt)

    def list_reads(self, message_ids: Sequence[str]) -> list[ReadRecord]:
        if not message_ids:
            return []
        stmt = (
            select(MessageRead)
            .where(MessageRead.message_id.in_(list(message_ids)))
            .order_by(MessageRead.read_at.asc(), MessageRead.id.asc())
        )
        return [_read_record(receipt) for receipt in self.db.scalars(stmt).all()]

    def _participant_row(self, conversation_id: str, user_id: str) -> ConversationParticipant | None:
        return self.db.scalar(
            select(ConversationParticipant).where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id,
            )
        )

    def _reaction_row(self, message_id: str, user_id: str, emoji: str) -> MessageReaction | None:
        return self.db.scalar(
            select(MessageReaction).where(
                MessageReaction.message_id == message_id,
                MessageReaction.user_id == user_id,
                MessageReaction.emoji == emoji,
            )
        )

    def _read_row(self, message_id: str, user_id: str) -> MessageRead | None:
        return self.db.scalar(
            select(MessageRead).where(MessageRead.message_id == message_id, MessageRead.user_id == user_id)
        )


class SqlUserDirectory(UserDirectory):
    """Identity lookup over the `users` table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def resolve_users(self, user_ids: Sequence[str]) -> dict[str, UserIdentity]:
        unique_ids = sorted({user_id for user_id in user_ids if user_id})
        if not unique_ids:
            return {}
        users = self.db.scalars(select(User).where(User.id.in_(unique_ids))).all()
        return {
            user.id: UserIdentity(
                id=user.id,
                username=user.username,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                avatar=user.avatar,
            )
            for user in users
        }


def _participant_record(participant: ConversationParticipant) -> ParticipantRecord:
    return ParticipantRecord(
        id=participant.id,
        conversation_id=participant.conversation_id,
        user_id=participant.user_id,
        role=participant.role,
        joined_at=_as_utc(participant.joined_at),
        left_at=_as_utc(participant.left_at),
        last_read_at=_as_utc(participant.last_read_at),
        is_muted=participant.is_muted,
    )


def _conversation_record(conversation: Conversation) -> ConversationRecord:
    return ConversationRecord(
        id=conversation.id,
        kind=conversation.kind,
        name=conversation.name,
        description=conversation.description,
        created_by=conversation.created_by,
        created_at=_as_utc(conversation.created_at),
        updated_at=_as_utc(conversation.updated_at),
        participants=[_participant_record(participant) for participant in conversation.participants],
    )


def _message_record(message: Message) -> MessageRecord:
    return MessageRecord(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        receiver_id=message.receiver_id,
        content=message.content,
        type=message.type,
        attachments=list(message.attachments_json or []),
        reply_to_id=message.reply_to_id,
        metadata=dict(message.metadata_json or {}),
        is_read=message.is_read,
        read_at=_as_utc(message.read_at),
        is_edited=message.is_edited,
        edited_at=_as_utc(message.edited_at),
        is_deleted=message.is_deleted,
        deleted_at=_as_utc(message.deleted_at),
        created_at=_as_utc(message.created_at),
        updated_at=_as_utc(message.updated_at),
    )


def _reaction_record(reaction: MessageReaction) -> ReactionRecord:
    return ReactionRecord(
        id=reaction.id,
        message_id=reaction.message_id,
        user_id=reaction.user_id,
        emoji=reaction.emoji,
        created_at=_as_utc(reaction.created_at),
    )


def _read_record(receipt: MessageRead) -> ReadRecord:
    return ReadRecord(
        id=receipt.id,
        message_id=receipt.message_id,
        user_id=receipt.user_id,
        read_at=_as_utc(receipt.read_at),
    )
