"""Tests for messaging business rules over the relational store."""

from __future__ import annotations

import tempfile
import threading
import unittest
from pathlib import Path

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from skillchat.models.base import Base
from skillchat.models.conversation import Conversation, ConversationParticipant
from skillchat.models.message import Message, MessageRead, MessageReaction
from skillchat.models.user import User
from skillchat.schemas.message import MessageSendRequest, MessageUpdateRequest
from skillchat.services.errors import (
    MembershipRepairError,
    MessagingNotFoundError,
    MessagingPermissionError,
    MessagingValidationError,
)
from skillchat.services.messaging import MESSAGE_TOMBSTONE, MessagingService, resolve_page_window
from skillchat.stores.interface import StoreWriteError
from skillchat.stores.sql import SqlConversationStore, SqlUserDirectory


class _FailingUpsertStore(SqlConversationStore):
    """Every participant upsert reports a write failure, optionally after applying it."""

    def __init__(self, db: Session, *, apply_before_failing: bool = False) -> None:
        super().__init__(db)
        self.apply_before_failing = apply_before_failing
        self.upsert_calls = 0

    def upsert_participant(self, conversation_id, user_id, *, role="member"):
        self.upsert_calls += 1
        if self.apply_before_failing:
            super().upsert_participant(conversation_id, user_id, role=role)
        raise StoreWriteError("simulated write failure")


def _text(conversation_id=None, receiver_id=None, content="hello", **extra) -> MessageSendRequest:
    return MessageSendRequest(conversation_id=conversation_id, receiver_id=receiver_id, content=content, **extra)


class MessagingServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls.SessionLocal = sessionmaker(bind=cls.engine, autoflush=False, autocommit=False, future=True)
        Base.metadata.create_all(cls.engine)

    @classmethod
    def tearDownClass(cls) -> None:
        Base.metadata.drop_all(cls.engine)
        cls.engine.dispose()

    def setUp(self) -> None:
        self.db: Session = self.SessionLocal()
        self.db.execute(delete(MessageRead))
        self.db.execute(delete(MessageReaction))
        self.db.execute(delete(Message))
        self.db.execute(delete(ConversationParticipant))
        self.db.execute(delete(Conversation))
        self.db.execute(delete(User))
        for user_id in ("alice", "bob", "carol"):
            self.db.add(User(id=user_id, username=user_id, email=f"{user_id}@example.com"))
        self.db.commit()
        self.service = MessagingService(SqlConversationStore(self.db), SqlUserDirectory(self.db))

    def tearDown(self) -> None:
        self.db.close()

    def _group(self, *members: str, name: str = "Study group"):
        return self.service.create_conversation(
            "alice", "group", ["alice", *(members or ("bob", "carol"))], name=name
        )

    def _direct(self, creator: str = "alice", other: str = "bob"):
        return self.service.create_conversation(creator, "direct", [creator, other])

    def _participant_rows(self, conversation_id: str, user_id: str) -> int:
        return int(
            self.db.scalar(
                select(func.count())
                .select_from(ConversationParticipant)
                .where(
                    ConversationParticipant.conversation_id == conversation_id,
                    ConversationParticipant.user_id == user_id,
                )
            )
        )

    # conversations

    def test_direct_conversation_is_reused_for_the_same_pair(self) -> None:
        first = self._direct()
        second = self._direct()
        reverse = self._direct(creator="bob", other="alice")

        self.assertEqual(first.id, second.id)
        self.assertEqual(first.id, reverse.id)
        self.assertEqual(int(self.db.scalar(select(func.count()).select_from(Conversation))), 1)

    def test_create_adds_creator_as_admin(self) -> None:
        group = self._group("bob")

        self.assertEqual(sorted(group.participant_ids), ["alice", "bob"])
        roles = {p.user_id: p.role for p in group.participants}
        self.assertEqual(roles, {"alice": "admin", "bob": "member"})
        self.assertEqual(group.creator.username, "alice")

    def test_create_rejects_invalid_shapes(self) -> None:
        with self.assertRaises(MessagingValidationError):
            self.service.create_conversation("alice", "direct", ["alice"])
        with self.assertRaises(MessagingValidationError):
            self.service.create_conversation("alice", "direct", ["bob", "carol"])
        with self.assertRaises(MessagingValidationError):
            self.service.create_conversation("alice", "group", ["alice", "bob"], name="   ")
        with self.assertRaises(MessagingValidationError):
            self.service.create_conversation("alice", "channel", ["alice", "bob"])

    def test_create_counts_participants_before_adding_creator(self) -> None:
        with self.assertRaisesRegex(MessagingValidationError, "at least 2"):
            self.service.create_conversation("alice", "direct", ["bob"])
        with self.assertRaisesRegex(MessagingValidationError, "at least 2"):
            self.service.create_conversation("alice", "group", ["bob"], name="Pair")
        with self.assertRaisesRegex(MessagingValidationError, "at least 2"):
            self.service.create_conversation("alice", "group", ["bob", "bob"], name="Pair")

        group = self.service.create_conversation("alice", "group", ["bob", "carol"], name="Trio")
        self.assertEqual(sorted(group.participant_ids), ["alice", "bob", "carol"])
        self.assertEqual(int(self.db.scalar(select(func.count()).select_from(Conversation))), 1)

    def test_get_conversation_requires_active_membership(self) -> None:
        direct = self._direct()

        with self.assertRaises(MessagingPermissionError):
            self.service.get_conversation(direct.id, "carol")
        with self.assertRaises(MessagingNotFoundError):
            self.service.get_conversation("missing", "alice")

    def test_list_conversations_reports_unread_and_last_message(self) -> None:
        direct = self._direct()
        self.service.send_message("alice", _text(direct.id, content="first"))
        self.service.send_message("alice", _text(direct.id, content="second"))

        listing = self.service.list_conversations("bob")

        self.assertEqual(listing.pagination.total, 1)
        item = listing.items[0]
        self.assertEqual(item.unread_count, 2)
        self.assertEqual(item.last_message.content, "second")

        self.service.mark_messages_as_read(direct.id, "bob")
        self.assertEqual(self.service.list_conversations("bob").items[0].unread_count, 0)

    def test_list_conversations_filters_by_kind_and_search(self) -> None:
        self._direct()
        group = self._group(name="Physics revision")

        by_kind = self.service.list_conversations("alice", kind="group")
        by_search = self.service.list_conversations("alice", search="physics")

        self.assertEqual([c.id for c in by_kind.items], [group.id])
        self.assertEqual([c.id for c in by_search.items], [group.id])

    def test_update_conversation_requires_admin_and_group(self) -> None:
        group = self._group()
        direct = self._direct()

        with self.assertRaises(MessagingPermissionError):
            self.service.update_conversation(group.id, "bob", name="Renamed")
        with self.assertRaises(MessagingValidationError):
            self.service.update_conversation(direct.id, "alice", name="Renamed")

        updated = self.service.update_conversation(group.id, "alice", name="Renamed", description="Exam prep")
        self.assertEqual(updated.name, "Renamed")
        self.assertEqual(updated.description, "Exam prep")

    def test_delete_group_requires_admin_and_marks_everyone_left(self) -> None:
        group = self._group()

        with self.assertRaises(MessagingPermissionError):
            self.service.delete_conversation(group.id, "bob")

        result = self.service.delete_conversation(group.id, "alice")
        self.assertEqual(result.participants_left, 3)
        self.assertEqual(self.service.list_conversations("bob").pagination.total, 0)

    def test_deleted_direct_conversation_is_revived_on_next_send(self) -> None:
        direct = self._direct()
        self.service.delete_conversation(direct.id, "bob")

        message = self.service.send_message("alice", _text(receiver_id="bob", content="are you there?"))

        self.assertEqual(message.conversation_id, direct.id)
        revived = self.service.get_conversation(direct.id, "bob")
        self.assertEqual(sorted(revived.participant_ids), ["alice", "bob"])
        self.assertEqual(self._participant_rows(direct.id, "bob"), 1)

    def test_add_participants_reactivates_without_duplicates(self) -> None:
        group = self._group("bob")
        self.service.remove_participant(group.id, "bob", "bob")

        with self.assertRaises(MessagingPermissionError):
            self.service.add_participants(group.id, "carol", ["bob"])

        updated = self.service.add_participants(group.id, "alice", ["bob", "carol", "bob"])
        self.assertEqual(sorted(updated.participant_ids), ["alice", "bob", "carol"])
        self.assertEqual(self._participant_rows(group.id, "bob"), 1)

    def test_add_participants_rejects_direct_conversations(self) -> None:
        direct = self._direct()

        with self.assertRaises(MessagingValidationError):
            self.service.add_participants(direct.id, "alice", ["carol"])

    def test_remove_participant_permissions(self) -> None:
        group = self._group()

        with self.assertRaises(MessagingPermissionError):
            self.service.remove_participant(group.id, "bob", "carol")

        after_leave = self.service.remove_participant(group.id, "bob", "bob")
        self.assertNotIn("bob", after_leave.participant_ids)
        after_kick = self.service.remove_participant(group.id, "alice", "carol")
        self.assertEqual(after_kick.participant_ids, ["alice"])
        with self.assertRaises(MessagingNotFoundError):
            self.service.remove_participant(group.id, "alice", "carol")

    def test_promoted_admin_can_manage_group(self) -> None:
        group = self._group()

        with self.assertRaises(MessagingPermissionError):
            self.service.set_participant_role(group.id, "bob", "carol", "admin")
        promoted = self.service.set_participant_role(group.id, "alice", "bob", "admin")
        self.assertEqual({p.user_id: p.role for p in promoted.participants}["bob"], "admin")

        renamed = self.service.update_conversation(group.id, "bob", name="Run by bob")
        self.assertEqual(renamed.name, "Run by bob")

    def test_set_muted_updates_only_caller(self) -> None:
        group = self._group()

        participant = self.service.set_muted(group.id, "bob", True)

        self.assertTrue(participant.is_muted)
        muted = {p.user_id: p.is_muted for p in self.service.get_conversation(group.id, "alice").participants}
        self.assertEqual(muted, {"alice": False, "bob": True, "carol": False})

    # messages and membership repair

    def test_send_message_by_receiver_creates_direct_and_sets_receiver(self) -> None:
        message = self.service.send_message("alice", _text(receiver_id="bob"))

        self.assertEqual(message.receiver_id, "bob")
        self.assertEqual(message.sender.username, "alice")
        conversation = self.service.get_conversation(message.conversation_id, "bob")
        self.assertEqual(conversation.kind, "direct")

        follow_up = self.service.send_message("bob", _text(message.conversation_id, content="hi back"))
        self.assertEqual(follow_up.receiver_id, "alice")

    def test_send_message_requires_a_target(self) -> None:
        with self.assertRaises(MessagingValidationError):
            self.service.send_message("alice", _text())
        with self.assertRaises(MessagingValidationError):
            self.service.send_message("alice", _text(receiver_id="alice"))

    def test_send_message_rejoins_group_member_who_left(self) -> None:
        group = self._group()
        self.service.set_participant_role(group.id, "alice", "bob", "admin")
        self.service.remove_participant(group.id, "bob", "bob")

        message = self.service.send_message("bob", _text(group.id, content="back again"))

        self.assertEqual(message.sender_id, "bob")
        rejoined = self.service.get_conversation(group.id, "bob")
        self.assertIn("bob", rejoined.participant_ids)
        self.assertEqual({p.user_id: p.role for p in rejoined.participants}["bob"], "admin")
        self.assertEqual(self._participant_rows(group.id, "bob"), 1)

    def test_send_message_adds_new_group_member_on_first_send(self) -> None:
        group = self._group("bob")

        self.service.send_message("carol", _text(group.id, content="hello all"))

        self.assertIn("carol", self.service.participant_user_ids(group.id))

    def test_send_message_rejects_outsider_on_direct_conversation(self) -> None:
        direct = self._direct()

        with self.assertRaises(MessagingPermissionError):
            self.service.send_message("carol", _text(direct.id))
        self.assertEqual(self._participant_rows(direct.id, "carol"), 0)

    def test_send_message_validates_receiver_and_reply_target(self) -> None:
        group = self._group("bob")
        other = self._group("carol", name="Other")
        foreign = self.service.send_message("alice", _text(other.id, content="elsewhere"))

        with self.assertRaises(MessagingValidationError):
            self.service.send_message("alice", _text(group.id, receiver_id="carol"))
        with self.assertRaises(MessagingValidationError):
            self.service.send_message("alice", _text(group.id, reply_to_id=foreign.id))

        original = self.service.send_message("alice", _text(group.id, content="question"))
        reply = self.service.send_message("bob", _text(group.id, content="answer", reply_to_id=original.id))
        self.assertEqual(reply.reply_to.content, "question")

    def test_membership_repair_gives_up_after_two_attempts(self) -> None:
        group = self._group()
        self.service.remove_participant(group.id, "bob", "bob")
        store = _FailingUpsertStore(self.db)
        service = MessagingService(store, SqlUserDirectory(self.db))

        with self.assertRaises(MembershipRepairError):
            service.send_message("bob", _text(group.id))
        self.assertEqual(store.upsert_calls, 2)
        self.assertEqual(int(self.db.scalar(select(func.count()).select_from(Message))), 0)

    def test_membership_repair_accepts_row_written_despite_error(self) -> None:
        group = self._group()
        self.service.remove_participant(group.id, "bob", "bob")
        store = _FailingUpsertStore(self.db, apply_before_failing=True)
        service = MessagingService(store, SqlUserDirectory(self.db))

        message = service.send_message("bob", _text(group.id))

        self.assertEqual(message.sender_id, "bob")
        self.assertEqual(store.upsert_calls, 1)

    def test_get_messages_returns_chronological_pages_and_rejoins(self) -> None:
        group = self._group()
        for index in range(5):
            self.service.send_message("alice", _text(group.id, content=f"m{index}"))
        self.service.remove_participant(group.id, "carol", "carol")

        page = self.service.get_messages(group.id, "carol", limit=2)

        self.assertEqual([m.content for m in page.items], ["m3", "m4"])
        self.assertEqual(page.pagination.total, 5)
        self.assertEqual(page.pagination.total_pages, 3)
        self.assertTrue(page.pagination.has_next)
        self.assertIn("carol", self.service.participant_user_ids(group.id))

        second = self.service.get_messages(group.id, "carol", page=2, limit=2)
        self.assertEqual([m.content for m in second.items], ["m1", "m2"])

    def test_unknown_sender_falls_back_to_placeholder_identity(self) -> None:
        group = self._group("bob")
        self.service.send_message("ghost", _text(group.id, content="boo"))

        page = self.service.get_messages(group.id, "alice")

        self.assertEqual(page.items[0].sender.username, "Unknown")
        self.assertEqual(page.items[0].sender.id, "ghost")

    def test_update_message_is_sender_only(self) -> None:
        direct = self._direct()
        message = self.service.send_message("alice", _text(direct.id, content="draft"))

        with self.assertRaises(MessagingPermissionError):
            self.service.update_message(message.id, "bob", MessageUpdateRequest(content="hijack"))
        with self.assertRaises(MessagingValidationError):
            self.service.update_message(message.id, "alice", MessageUpdateRequest())

        edited = self.service.update_message(message.id, "alice", MessageUpdateRequest(content="final"))
        self.assertEqual(edited.content, "final")
        self.assertTrue(edited.is_edited)
        self.assertIsNotNone(edited.edited_at)

    def test_deleted_message_is_tombstoned_and_frozen(self) -> None:
        direct = self._direct()
        message = self.service.send_message("alice", _text(direct.id, content="secret plan"))

        with self.assertRaises(MessagingPermissionError):
            self.service.delete_message(message.id, "bob")
        deleted = self.service.delete_message(message.id, "alice")

        self.assertTrue(deleted.is_deleted)
        self.assertEqual(deleted.content, MESSAGE_TOMBSTONE)
        history = self.service.get_messages(direct.id, "bob")
        self.assertEqual([m.content for m in history.items], [MESSAGE_TOMBSTONE])
        self.assertEqual(self.service.search_messages("alice", "secret"), [])
        with self.assertRaises(MessagingNotFoundError):
            self.service.update_message(message.id, "alice", MessageUpdateRequest(content="again"))
        with self.assertRaises(MessagingNotFoundError):
            self.service.delete_message(message.id, "alice")
        with self.assertRaises(MessagingNotFoundError):
            self.service.add_reaction(message.id, "bob", "👍")

    def test_mark_messages_as_read_flags_only_addressed_messages(self) -> None:
        direct = self._direct()
        self.service.send_message("alice", _text(direct.id, content="one"))
        self.service.send_message("alice", _text(direct.id, content="two"))
        self.service.send_message("bob", _text(direct.id, content="three"))

        result = self.service.mark_messages_as_read(direct.id, "bob")

        self.assertEqual(result.marked_count, 2)
        history = self.service.get_messages(direct.id, "bob")
        self.assertEqual([m.is_read for m in history.items], [True, True, False])
        participant = {p.user_id: p for p in self.service.get_conversation(direct.id, "bob").participants}["bob"]
        self.assertEqual(participant.last_read_at, result.read_at)
        self.assertGreaterEqual(result.read_at, history.items[-1].created_at)

    def test_mark_messages_as_read_requires_active_membership(self) -> None:
        group = self._group()
        self.service.remove_participant(group.id, "carol", "carol")

        with self.assertRaises(MessagingPermissionError):
            self.service.mark_messages_as_read(group.id, "carol")

    def test_mark_message_as_read_records_receipt_per_user(self) -> None:
        group = self._group()
        message = self.service.send_message("alice", _text(group.id))

        self.service.mark_message_as_read(message.id, "bob")
        result = self.service.mark_message_as_read(message.id, "carol")
        again = self.service.mark_message_as_read(message.id, "carol")

        self.assertEqual(sorted(r.user_id for r in result.read_by), ["bob", "carol"])
        self.assertEqual(len(again.read_by), 2)
        self.assertFalse(again.is_read)

    def test_mark_message_as_read_flips_flag_for_direct_receiver(self) -> None:
        direct = self._direct()
        message = self.service.send_message("alice", _text(direct.id))

        result = self.service.mark_message_as_read(message.id, "bob")

        self.assertTrue(result.is_read)
        self.assertEqual([r.user_id for r in result.read_by], ["bob"])

    def test_reactions_are_unique_per_user_and_emoji(self) -> None:
        group = self._group()
        message = self.service.send_message("alice", _text(group.id))

        self.service.add_reaction(message.id, "bob", "👍")
        self.service.add_reaction(message.id, "bob", " 👍 ")
        result = self.service.add_reaction(message.id, "carol", "👍")
        self.assertEqual(len(result.reactions), 2)

        result = self.service.remove_reaction(message.id, "bob", "👍")
        self.assertEqual([r.user_id for r in result.reactions], ["carol"])
        unchanged = self.service.remove_reaction(message.id, "bob", "🎉")
        self.assertEqual(len(unchanged.reactions), 1)

        with self.assertRaises(MessagingValidationError):
            self.service.add_reaction(message.id, "bob", "   ")

    def test_reactions_require_membership(self) -> None:
        direct = self._direct()
        message = self.service.send_message("alice", _text(direct.id))

        with self.assertRaises(MessagingPermissionError):
            self.service.add_reaction(message.id, "carol", "👍")

    def test_search_messages_is_scoped_to_active_conversations(self) -> None:
        group = self._group("bob")
        other = self.service.create_conversation("carol", "direct", ["carol", "bob"])
        self.service.send_message("alice", _text(group.id, content="Homework due Friday"))
        self.service.send_message("carol", _text(other.id, content="homework help?"))

        alice_hits = self.service.search_messages("alice", "HOMEWORK")
        bob_hits = self.service.search_messages("bob", "homework")
        scoped = self.service.search_messages("bob", "homework", conversation_id=group.id)

        self.assertEqual([m.content for m in alice_hits], ["Homework due Friday"])
        self.assertEqual(len(bob_hits), 2)
        self.assertEqual([m.conversation_id for m in scoped], [group.id])
        with self.assertRaises(MessagingValidationError):
            self.service.search_messages("alice", "  ")
        with self.assertRaises(MessagingPermissionError):
            self.service.search_messages("alice", "homework", conversation_id=other.id)

    def test_resolve_page_window_clamps_limit_and_derives_page(self) -> None:
        self.assertEqual(resolve_page_window(limit=500), (1, 100, 0))
        self.assertEqual(resolve_page_window(limit=0), (1, 50, 0))
        self.assertEqual(resolve_page_window(offset=120, limit=50), (3, 50, 100))
        self.assertEqual(resolve_page_window(page=2, offset=999, limit=10), (2, 10, 10))


class ConcurrentFirstSendTests(unittest.TestCase):
    """Parallel first sends from a non-member, each thread on its own session."""

    SENDERS = 8

    def setUp(self) -> None:
        self.directory = tempfile.TemporaryDirectory()
        database_path = Path(self.directory.name) / "skillchat.db"
        self.engine = create_engine(
            f"sqlite+pysqlite:///{database_path}",
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)
        Base.metadata.create_all(self.engine)

        db = self.SessionLocal()
        for user_id in ("alice", "bob", "carol"):
            db.add(User(id=user_id, username=user_id, email=f"{user_id}@example.com"))
        db.commit()
        service = MessagingService(SqlConversationStore(db), SqlUserDirectory(db))
        self.conversation_id = service.create_conversation("alice", "group", ["alice", "bob"], name="Study group").id
        db.close()

    def tearDown(self) -> None:
        self.engine.dispose()
        self.directory.cleanup()

    def test_parallel_first_sends_create_one_participant_row(self) -> None:
        barrier = threading.Barrier(self.SENDERS)
        errors: list[BaseException] = []
        errors_lock = threading.Lock()

        def send(index: int) -> None:
            db = self.SessionLocal()
            try:
                service = MessagingService(SqlConversationStore(db), SqlUserDirectory(db))
                barrier.wait(timeout=10)
                service.send_message("carol", _text(self.conversation_id, content=f"hello {index}"))
            except Exception as exc:
                with errors_lock:
                    errors.append(exc)
            finally:
                db.close()

        threads = [threading.Thread(target=send, args=(index,)) for index in range(self.SENDERS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        self.assertEqual(errors, [])
        db = self.SessionLocal()
        try:
            rows = db.scalar(
                select(func.count())
                .select_from(ConversationParticipant)
                .where(
                    ConversationParticipant.conversation_id == self.conversation_id,
                    ConversationParticipant.user_id == "carol",
                )
            )
            messages = db.scalar(select(func.count()).select_from(Message).where(Message.sender_id == "carol"))
        finally:
            db.close()
        self.assertEqual(int(rows), 1)
        self.assertEqual(int(messages), self.SENDERS)


if __name__ == "__main__":
    unittest.main()
