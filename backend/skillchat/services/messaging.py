"""Messaging business rules: conversation lifecycle, membership repair, and message bookkeeping.

The service depends only on a `ConversationStore` and a `UserDirectory`, so
both the REST routers and the realtime gateway drive the same rules against
whichever backend is configured.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime

from skillchat.models.base import utcnow
from skillchat.schemas.common import Pagination
from skillchat.schemas.conversation import (
    ConversationDeleteResult,
    ConversationRead,
    ConversationsListResponse,
    ParticipantRead,
)
from skillchat.schemas.message import (
    MarkReadResult,
    MessagePage,
    MessageRead,
    MessageSendRequest,
    MessageUpdateRequest,
    ReactionRead,
    ReadReceiptRead,
)
from skillchat.schemas.user import UserSummary
from skillchat.services.errors import (
    MembershipRepairError,
    MessagingNotFoundError,
    MessagingPermissionError,
    MessagingValidationError,
)
from skillchat.stores.interface import ConversationStore, StoreWriteError, UserDirectory
from skillchat.stores.records import (
    ConversationRecord,
    MessageRecord,
    ParticipantRecord,
    ReactionRecord,
    ReadRecord,
    UserIdentity,
)

logger = logging.getLogger(__name__)

MESSAGE_TOMBSTONE = "[Message deleted]"
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
_MEMBERSHIP_REPAIR_ATTEMPTS = 2


def resolve_page_window(
    *,
    page: int | None = None,
    limit: int | None = None,
    offset: int | None = None,
    default_limit: int = DEFAULT_PAGE_SIZE,
) -> tuple[int, int, int]:
    """Return `(page, limit, offset)` with `limit` clamped to 1..100.

    An explicit `page` wins; otherwise `offset` selects the page containing it.
    """

    size = min(max(limit or default_limit, 1), MAX_PAGE_SIZE)
    if page is None or page < 1:
        page = max(offset or 0, 0) // size + 1
    return page, size, (page - 1) * size


def _distinct(user_ids: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for user_id in user_ids:
        if user_id and user_id not in seen:
            seen.append(user_id)
    return seen


class MessagingService:
    """Conversation and message operations for one unit of work."""

    def __init__(
        self,
        store: ConversationStore,
        users: UserDirectory,
        *,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self.store = store
        self.users = users
        self.default_page_size = default_page_size

    # conversations

    def create_conversation(
        self,
        creator_id: str,
        kind: str,
        participant_ids: Sequence[str],
        name: str | None = None,
        description: str | None = None,
    ) -> ConversationRead:
        """Create a conversation, or return the existing direct conversation for the pair."""

        conversation = self._create_or_reuse(creator_id, kind, participant_ids, name, description)
        return self._hydrate_conversations([conversation], creator_id)[0]

    def get_conversation(self, conversation_id: str, user_id: str) -> ConversationRead:
        conversation = self._require_conversation(conversation_id)
        self._require_active_participant(conversation, user_id)
        return self._hydrate_conversations([conversation], user_id)[0]

    def list_conversations(
        self,
        user_id: str,
        *,
        kind: str | None = None,
        search: str | None = None,
        page: int | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> ConversationsListResponse:
        """List the caller's active conversations, most recently active first."""

        page, size, start = resolve_page_window(
            page=page, limit=limit, offset=offset, default_limit=self.default_page_size
        )
        records, total = self.store.list_conversations(user_id, kind=kind, search=search, limit=size, offset=start)
        return ConversationsListResponse(
            items=self._hydrate_conversations(records, user_id),
            pagination=Pagination.build(page=page, limit=size, total=total),
        )

    def update_conversation(
        self,
        conversation_id: str,
        user_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> ConversationRead:
        conversation = self._require_conversation(conversation_id)
        self._require_admin(conversation, user_id, "You do not have permission to update this conversation")
        if name is not None:
            if conversation.kind == "direct":
                raise MessagingValidationError("Direct conversations cannot be renamed")
            name = name.strip()
            if not name:
                raise MessagingValidationError("Group conversations must have a name")

        updated = self.store.update_conversation(conversation_id, name=name, description=description)
        if updated is None:
            raise MessagingNotFoundError("Conversation not found")
        logger.info("messaging.conversation_updated conversation_id=%s user_id=%s", conversation_id, user_id)
        return self._hydrate_conversations([updated], user_id)[0]

    def delete_conversation(self, conversation_id: str, user_id: str) -> ConversationDeleteResult:
        """Mark every active membership as left.

        Any participant may delete a direct conversation; groups need the creator or an admin.
        """

        conversation = self._require_conversation(conversation_id)
        participant = self._require_active_participant(conversation, user_id)
        if conversation.kind == "group" and not self._is_admin(conversation, participant):
            raise MessagingPermissionError("Only the creator or an admin can delete group conversations")

        left = self.store.mark_participants_left(conversation_id)
        self.store.touch_conversation(conversation_id)
        logger.info(
            "messaging.conversation_deleted conversation_id=%s user_id=%s participants_left=%s",
            conversation_id,
            user_id,
            left,
        )
        return ConversationDeleteResult(conversation_id=conversation_id, participants_left=left)

    def add_participants(
        self,
        conversation_id: str,
        user_id: str,
        participant_ids: Sequence[str],
    ) -> ConversationRead:
        """Add or reactivate group members. Existing rows are never duplicated."""

        conversation = self._require_conversation(conversation_id)
        self._require_admin(conversation, user_id, "You do not have permission to add participants")
        if conversation.kind == "direct":
            raise MessagingValidationError("Participants cannot be added to a direct conversation")
        targets = _distinct(participant_ids)
        if not targets:
            raise MessagingValidationError("participant_ids must be a non-empty list")

        for participant_id in targets:
            try:
                _, outcome = self.store.upsert_participant(conversation_id, participant_id, role="member")
            except StoreWriteError as exc:
                raise MembershipRepairError("Failed to add participant") from exc
            if outcome != "active":
                logger.info(
                    "messaging.participant_%s conversation_id=%s user_id=%s",
                    outcome,
                    conversation_id,
                    participant_id,
                )
        self.store.touch_conversation(conversation_id)
        return self._hydrate_conversations([self._require_conversation(conversation_id)], user_id)[0]

    def remove_participant(self, conversation_id: str, user_id: str, participant_id: str) -> ConversationRead:
        """Leave a group, or remove another member as creator/admin."""

        conversation = self._require_conversation(conversation_id)
        actor = self._require_active_participant(conversation, user_id)
        if conversation.kind == "direct":
            raise MessagingValidationError("Direct conversations cannot change participants; delete it instead")
        target = conversation.participant_for(participant_id)
        if target is None or not target.is_active:
            raise MessagingNotFoundError("Participant not found")
        if participant_id != user_id and not self._is_admin(conversation, actor):
            raise MessagingPermissionError("You do not have permission to remove this participant")

        self.store.mark_participants_left(conversation_id, [participant_id])
        self.store.touch_conversation(conversation_id)
        logger.info(
            "messaging.participant_left conversation_id=%s user_id=%s removed_by=%s",
            conversation_id,
            participant_id,
            user_id,
        )
        return self._hydrate_conversations([self._require_conversation(conversation_id)], user_id)[0]

    def set_participant_role(
        self,
        conversation_id: str,
        user_id: str,
        participant_id: str,
        role: str,
    ) -> ConversationRead:
        conversation = self._require_conversation(conversation_id)
        self._require_admin(conversation, user_id, "Only the creator or an admin can change roles")
        if conversation.kind == "direct":
            raise MessagingValidationError("Roles cannot be changed in a direct conversation")
        if role not in ("member", "admin"):
            raise MessagingValidationError(f"Unknown participant role: {role}")
        target = conversation.participant_for(participant_id)
        if target is None or not target.is_active:
            raise MessagingNotFoundError("Participant not found")

        self.store.update_participant(conversation_id, participant_id, role=role)
        return self._hydrate_conversations([self._require_conversation(conversation_id)], user_id)[0]

    def set_muted(self, conversation_id: str, user_id: str, is_muted: bool) -> ParticipantRead:
        conversation = self._require_conversation(conversation_id)
        self._require_active_participant(conversation, user_id)
        updated = self.store.update_participant(conversation_id, user_id, is_muted=is_muted)
        if updated is None:
            raise MessagingNotFoundError("Participant not found")
        identities = self.users.resolve_users([user_id])
        return self._participant_read(updated, identities)

    def participant_user_ids(self, conversation_id: str) -> list[str]:
        """Return active member ids, used for realtime fan-out."""

        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            return []
        return [participant.user_id for participant in conversation.active_participants]

    def active_conversation_ids(self, user_id: str) -> list[str]:
        return self.store.active_conversation_ids(user_id)

    # messages

    def send_message(self, sender_id: str, payload: MessageSendRequest) -> MessageRead:
        """Persist a message, repairing the sender's membership when it is stale."""

        if payload.conversation_id:
            conversation = self._require_conversation(payload.conversation_id)
        elif payload.receiver_id:
            conversation = self._create_or_reuse(sender_id, "direct", [sender_id, payload.receiver_id])
        else:
            raise MessagingValidationError("Either conversation_id or receiver_id must be provided")

        self._ensure_membership(conversation, sender_id)
        conversation = self._require_conversation(conversation.id)

        receiver_id = payload.receiver_id
        if receiver_id is not None and conversation.participant_for(receiver_id) is None:
            raise MessagingValidationError("Receiver is not a participant in this conversation")
        if receiver_id is None and conversation.kind == "direct":
            others = [p.user_id for p in conversation.active_participants if p.user_id != sender_id]
            if len(others) == 1:
                receiver_id = others[0]

        if payload.reply_to_id:
            reply_target = self.store.get_message(payload.reply_to_id)
            if reply_target is None or reply_target.conversation_id != conversation.id:
                raise MessagingValidationError("Reply target must be a message in the same conversation")

        record = self.store.create_message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            content=payload.content,
            type=payload.type,
            receiver_id=receiver_id,
            attachments=[attachment.model_dump(exclude_none=True) for attachment in payload.attachments],
            reply_to_id=payload.reply_to_id,
            metadata=payload.metadata,
        )
        self.store.touch_conversation(conversation.id)
        logger.info(
            "messaging.message_sent conversation_id=%s message_id=%s sender_id=%s",
            conversation.id,
            record.id,
            sender_id,
        )
        return self._hydrate_messages([record])[0]

    def get_messages(
        self,
        conversation_id: str,
        user_id: str,
        *,
        before: datetime | None = None,
        after: datetime | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> MessagePage:
        """Return one page of history in chronological order. Viewing implicitly (re)joins."""

        conversation = self._require_conversation(conversation_id)
        self._ensure_membership(conversation, user_id)

        page, size, start = resolve_page_window(page=page, limit=limit, default_limit=self.default_page_size)
        records, total = self.store.list_messages(
            conversation_id, before=before, after=after, limit=size, offset=start
        )
        records.reverse()
        return MessagePage(
            items=self._hydrate_messages(records),
            pagination=Pagination.build(page=page, limit=size, total=total),
        )

    def get_message(self, message_id: str, user_id: str) -> MessageRead:
        message = self.store.get_message(message_id)
        if message is None:
            raise MessagingNotFoundError("Message not found")
        conversation = self._require_conversation(message.conversation_id)
        self._require_active_participant(conversation, user_id)
        return self._hydrate_messages([message])[0]

    def update_message(self, message_id: str, user_id: str, payload: MessageUpdateRequest) -> MessageRead:
        message = self._require_sender_message(message_id, user_id, "edit")
        if payload.content is None and payload.metadata is None:
            raise MessagingValidationError("Nothing to update")

        updated = self.store.update_message(
            message.id,
            edited_at=utcnow(),
            content=payload.content,
            metadata=payload.metadata,
        )
        if updated is None:
            raise MessagingNotFoundError("Message not found")
        logger.info("messaging.message_edited message_id=%s user_id=%s", message_id, user_id)
        return self._hydrate_messages([updated])[0]

    def delete_message(self, message_id: str, user_id: str) -> MessageRead:
        """Tombstone a message. Irreversible; the row keeps its place in history."""

        message = self._require_sender_message(message_id, user_id, "delete")
        deleted = self.store.soft_delete_message(message.id, tombstone=MESSAGE_TOMBSTONE, deleted_at=utcnow())
        if deleted is None:
            raise MessagingNotFoundError("Message not found")
        logger.info("messaging.message_deleted message_id=%s user_id=%s", message_id, user_id)
        return self._hydrate_messages([deleted])[0]

    def mark_messages_as_read(self, conversation_id: str, user_id: str) -> MarkReadResult:
        """Flip the coarse flag on messages addressed to the caller and advance `last_read_at`."""

        conversation = self._require_conversation(conversation_id)
        self._require_active_participant(conversation, user_id)

        read_at = utcnow()
        latest = self.store.latest_message(conversation_id)
        if latest is not None and latest.created_at > read_at:
            read_at = latest.created_at
        marked = self.store.mark_conversation_read(conversation_id, user_id, read_at)
        self.store.update_participant(conversation_id, user_id, last_read_at=read_at)
        logger.debug(
            "messaging.conversation_read conversation_id=%s user_id=%s marked=%s",
            conversation_id,
            user_id,
            marked,
        )
        return MarkReadResult(conversation_id=conversation_id, marked_count=marked, read_at=read_at)

    def mark_message_as_read(self, message_id: str, user_id: str) -> MessageRead:
        """Upsert the caller's read receipt; the coarse flag only flips for the direct receiver."""

        message = self._require_member_message(message_id, user_id)
        read_at = utcnow()
        self.store.upsert_read(message.id, user_id, read_at)
        if message.receiver_id == user_id and not message.is_read:
            self.store.mark_message_read_flag(message.id, read_at)
        return self._reload_message(message.id)

    def add_reaction(self, message_id: str, user_id: str, emoji: str) -> MessageRead:
        message = self._require_member_message(message_id, user_id)
        self.store.upsert_reaction(message.id, user_id, self._clean_emoji(emoji))
        return self._reload_message(message.id)

    def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> MessageRead:
        """Remove a reaction; removing one that does not exist is a no-op."""

        message = self._require_member_message(message_id, user_id)
        self.store.remove_reaction(message.id, user_id, self._clean_emoji(emoji))
        return self._reload_message(message.id)

    def search_messages(
        self,
        user_id: str,
        query: str,
        *,
        conversation_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[MessageRead]:
        """Substring search over the caller's conversations, newest first."""

        term = (query or "").strip()
        if not term:
            raise MessagingValidationError("Search query is required")
        if conversation_id:
            conversation = self._require_conversation(conversation_id)
            self._require_active_participant(conversation, user_id)
            conversation_ids = [conversation_id]
        else:
            conversation_ids = self.store.active_conversation_ids(user_id)

        size = min(max(limit or self.default_page_size, 1), MAX_PAGE_SIZE)
        records = self.store.search_messages(
            term,
            conversation_ids=conversation_ids,
            limit=size,
            offset=max(offset, 0),
        )
        return self._hydrate_messages(records)

    # rules

    def _create_or_reuse(
        self,
        creator_id: str,
        kind: str,
        participant_ids: Sequence[str],
        name: str | None = None,
        description: str | None = None,
    ) -> ConversationRecord:
        member_ids = _distinct(participant_ids)
        if len(member_ids) < 2:
            raise MessagingValidationError("A conversation must have at least 2 participants")
        if creator_id not in member_ids:
            member_ids.append(creator_id)

        if kind == "direct":
            if len(member_ids) != 2:
                raise MessagingValidationError("Direct conversations must have exactly 2 participants")
            existing = self._find_direct(member_ids)
            if existing is not None:
                return existing
            name = None
        elif kind == "group":
            name = (name or "").strip()
            if not name:
                raise MessagingValidationError("Group conversations must have a name")
        else:
            raise MessagingValidationError(f"Unknown conversation kind: {kind}")

        members = [(user_id, "admin" if user_id == creator_id else "member") for user_id in member_ids]
        conversation = self.store.create_conversation(
            kind=kind,
            created_by=creator_id,
            members=members,
            name=name,
            description=description,
        )
        logger.info(
            "messaging.conversation_created conversation_id=%s kind=%s created_by=%s participants=%s",
            conversation.id,
            kind,
            creator_id,
            len(members),
        )
        return conversation

    def _find_direct(self, pair: Sequence[str]) -> ConversationRecord | None:
        """Return the pair's direct conversation, reactivating members who left it."""

        wanted = set(pair)
        for conversation in self.store.find_direct_conversations(list(pair)):
            if {participant.user_id for participant in conversation.participants} != wanted:
                continue
            inactive = [participant for participant in conversation.participants if not participant.is_active]
            if not inactive:
                return conversation
            for participant in inactive:
                self._ensure_membership(conversation, participant.user_id)
            return self._require_conversation(conversation.id)
        return None

    def _ensure_membership(self, conversation: ConversationRecord, user_id: str) -> ParticipantRecord:
        """Self-healing membership: insert or reactivate the caller's row.

        Direct conversations only reactivate one of their two members.
        A failed upsert is retried once after re-reading the row.
        """

        existing = conversation.participant_for(user_id)
        if existing is not None and existing.is_active:
            return existing
        if conversation.kind == "direct" and existing is None:
            raise MessagingPermissionError("You are not a participant in this conversation")

        for attempt in range(1, _MEMBERSHIP_REPAIR_ATTEMPTS + 1):
            try:
                participant, outcome = self.store.upsert_participant(conversation.id, user_id, role="member")
            except StoreWriteError:
                logger.warning(
                    "messaging.membership_repair_failed conversation_id=%s user_id=%s attempt=%s",
                    conversation.id,
                    user_id,
                    attempt,
                    exc_info=True,
                )
                found = self.store.get_participant(conversation.id, user_id)
                if found is not None and found.is_active:
                    return found
                continue
            if outcome != "active":
                self.store.touch_conversation(conversation.id)
                logger.info(
                    "messaging.participant_%s conversation_id=%s user_id=%s",
                    outcome,
                    conversation.id,
                    user_id,
                )
            return participant

        raise MembershipRepairError("Failed to add participant. Please try again.")

    def _require_conversation(self, conversation_id: str) -> ConversationRecord:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise MessagingNotFoundError("Conversation not found")
        return conversation

    @staticmethod
    def _require_active_participant(conversation: ConversationRecord, user_id: str) -> ParticipantRecord:
        participant = conversation.participant_for(user_id)
        if participant is None or not participant.is_active:
            raise MessagingPermissionError("You are not a participant in this conversation")
        return participant

    @staticmethod
    def _is_admin(conversation: ConversationRecord, participant: ParticipantRecord) -> bool:
        return participant.user_id == conversation.created_by or participant.role == "admin"

    def _require_admin(self, conversation: ConversationRecord, user_id: str, message: str) -> ParticipantRecord:
        participant = self._require_active_participant(conversation, user_id)
        if not self._is_admin(conversation, participant):
            raise MessagingPermissionError(message)
        return participant

    def _require_sender_message(self, message_id: str, user_id: str, action: str) -> MessageRecord:
        message = self.store.get_message(message_id)
        if message is None or message.is_deleted:
            raise MessagingNotFoundError("Message not found")
        if message.sender_id != user_id:
            raise MessagingPermissionError(f"Only the sender can {action} this message")
        return message

    def _require_member_message(self, message_id: str, user_id: str) -> MessageRecord:
        message = self.store.get_message(message_id)
        if message is None or message.is_deleted:
            raise MessagingNotFoundError("Message not found")
        conversation = self._require_conversation(message.conversation_id)
        self._require_active_participant(conversation, user_id)
        return message

    def _reload_message(self, message_id: str) -> MessageRead:
        message = self.store.get_message(message_id)
        if message is None:
            raise MessagingNotFoundError("Message not found")
        return self._hydrate_messages([message])[0]

    @staticmethod
    def _clean_emoji(emoji: str) -> str:
        cleaned = (emoji or "").strip()
        if not cleaned:
            raise MessagingValidationError("Emoji is required")
        return cleaned

    # hydration

    def _hydrate_conversations(
        self,
        conversations: Sequence[ConversationRecord],
        viewer_id: str,
    ) -> list[ConversationRead]:
        latest = {conversation.id: self.store.latest_message(conversation.id) for conversation in conversations}
        user_ids: set[str] = set()
        for conversation in conversations:
            user_ids.add(conversation.created_by)
            user_ids.update(participant.user_id for participant in conversation.active_participants)
        for message in latest.values():
            if message is not None:
                user_ids.add(message.sender_id)
                if message.receiver_id:
                    user_ids.add(message.receiver_id)
        identities = self.users.resolve_users(sorted(user_ids))

        items: list[ConversationRead] = []
        for conversation in conversations:
            viewer = conversation.participant_for(viewer_id)
            unread = 0
            if viewer is not None and viewer.is_active:
                unread = self.store.count_unread(conversation.id, viewer_id, viewer.last_read_at)
            last_message = latest[conversation.id]
            active = conversation.active_participants
            items.append(
                ConversationRead(
                    id=conversation.id,
                    kind=conversation.kind,
                    name=conversation.name,
                    description=conversation.description,
                    created_by=conversation.created_by,
                    creator=_summary(identities, conversation.created_by),
                    participant_ids=[participant.user_id for participant in active],
                    participants=[self._participant_read(participant, identities) for participant in active],
                    last_message=_message_read(last_message, identities) if last_message else None,
                    unread_count=unread,
                    created_at=conversation.created_at,
                    updated_at=conversation.updated_at,
                )
            )
        return items

    def _hydrate_messages(self, records: Sequence[MessageRecord]) -> list[MessageRead]:
        if not records:
            return []
        message_ids = [record.id for record in records]
        reply_ids = sorted({record.reply_to_id for record in records if record.reply_to_id})
        replies = {reply.id: reply for reply in self.store.get_messages(reply_ids)}

        reactions: dict[str, list[ReactionRecord]] = defaultdict(list)
        for reaction in self.store.list_reactions(message_ids):
            reactions[reaction.message_id].append(reaction)
        reads: dict[str, list[ReadRecord]] = defaultdict(list)
        for read in self.store.list_reads(message_ids):
            reads[read.message_id].append(read)

        user_ids: set[str] = set()
        for message in [*records, *replies.values()]:
            user_ids.add(message.sender_id)
            if message.receiver_id:
                user_ids.add(message.receiver_id)
        for bucket in reactions.values():
            user_ids.update(reaction.user_id for reaction in bucket)
        for bucket in reads.values():
            user_ids.update(read.user_id for read in bucket)
        identities = self.users.resolve_users(sorted(user_ids))

        return [
            _message_read(
                record,
                identities,
                reply_to=replies.get(record.reply_to_id) if record.reply_to_id else None,
                reactions=reactions.get(record.id, ()),
                reads=reads.get(record.id, ()),
            )
            for record in records
        ]

    @staticmethod
    def _participant_read(participant: ParticipantRecord, identities: dict[str, UserIdentity]) -> ParticipantRead:
        return ParticipantRead(
            id=participant.id,
            user_id=participant.user_id,
            user=_summary(identities, participant.user_id),
            role=participant.role,
            joined_at=participant.joined_at,
            last_read_at=participant.last_read_at,
            is_muted=participant.is_muted,
        )


def _summary(identities: dict[str, UserIdentity], user_id: str) -> UserSummary:
    identity = identities.get(user_id)
    if identity is None:
        return UserSummary.unknown(user_id)
    return UserSummary.model_validate(identity)


def _message_read(
    record: MessageRecord,
    identities: dict[str, UserIdentity],
    *,
    reply_to: MessageRecord | None = None,
    reactions: Iterable[ReactionRecord] = (),
    reads: Iterable[ReadRecord] = (),
) -> MessageRead:
    return MessageRead(
        id=record.id,
        conversation_id=record.conversation_id,
        sender_id=record.sender_id,
        sender=_summary(identities, record.sender_id),
        receiver_id=record.receiver_id,
        receiver=_summary(identities, record.receiver_id) if record.receiver_id else None,
        content=record.content,
        type=record.type,
        attachments=list(record.attachments),
        reply_to_id=record.reply_to_id,
        reply_to=_message_read(reply_to, identities) if reply_to is not None else None,
        metadata=dict(record.metadata),
        reactions=[
            ReactionRead(
                id=reaction.id,
                emoji=reaction.emoji,
                user_id=reaction.user_id,
                user=_summary(identities, reaction.user_id),
                created_at=reaction.created_at,
            )
            for reaction in reactions
        ],
        read_by=[
            ReadReceiptRead(
                id=read.id,
                user_id=read.user_id,
                user=_summary(identities, read.user_id),
                read_at=read.read_at,
            )
            for read in reads
        ],
        is_read=record.is_read,
        read_at=record.read_at,
        is_edited=record.is_edited,
        edited_at=record.edited_at,
        is_deleted=record.is_deleted,
        deleted_at=record.deleted_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
