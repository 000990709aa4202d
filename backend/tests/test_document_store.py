"""Tests for the document conversation store and messaging rules on top of it."""

from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import mongomock

from skillchat.models.base import utcnow
from skillchat.schemas.message import MessageSendRequest
from skillchat.services.errors import MessagingPermissionError
from skillchat.services.messaging import MESSAGE_TOMBSTONE, MessagingService
from skillchat.stores.document import DocumentConversationStore, DocumentUserDirectory, ensure_indexes


class _StaleReadStore(DocumentConversationStore):
    def __init__(self, database) -> None:
        super().__init__(database)
        self.stale_reads = 1

    def get_participant(self, conversation_id, user_id):
        if self.stale_reads:
            self.stale_reads -= 1
            return None
        return super().get_participant(conversation_id, user_id)


class DocumentConversationStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = mongomock.MongoClient()
        self.database = self.client.skillchat_test
        ensure_indexes(self.database)
        self.database.users.insert_many(
            [
                {"_id": "alice", "username": "alice", "email": "alice@example.com"},
                {"_id": "bob", "username": "bob", "email": "bob@example.com"},
            ]
        )
        self.store = DocumentConversationStore(self.database)
        self.users = DocumentUserDirectory(self.database)

    def tearDown(self) -> None:
        self.client.close()

    def _group(self, name: str = "Study group"):
        return self.store.create_conversation(
            kind="group",
            created_by="alice",
            members=[("alice", "admin"), ("bob", "member")],
            name=name,
        )

    def _participant_entries(self, conversation_id: str, user_id: str) -> int:
        document = self.database.conversations.find_one({"_id": conversation_id})
        return sum(1 for participant in document["participants"] if participant["user_id"] == user_id)

    def test_create_conversation_embeds_participants(self) -> None:
        conversation = self._group()

        stored = self.store.get_conversation(conversation.id)
        self.assertEqual([p.user_id for p in stored.participants], ["alice", "bob"])
        self.assertEqual(stored.created_at.tzinfo is not None, True)

    def test_upsert_participant_reports_outcomes(self) -> None:
        conversation = self._group()

        _, created = self.store.upsert_participant(conversation.id, "carol")
        _, active = self.store.upsert_participant(conversation.id, "carol")
        self.store.mark_participants_left(conversation.id, ["carol"])
        participant, rejoined = self.store.upsert_participant(conversation.id, "carol")

        self.assertEqual((created, active, rejoined), ("created", "active", "rejoined"))
        self.assertTrue(participant.is_active)
        self.assertEqual(self._participant_entries(conversation.id, "carol"), 1)

    def test_upsert_participant_after_stale_read_reactivates_existing_entry(self) -> None:
        conversation = self._group()
        self.store.mark_participants_left(conversation.id, ["bob"])

        participant, _ = _StaleReadStore(self.database).upsert_participant(conversation.id, "bob")

        self.assertTrue(participant.is_active)
        self.assertEqual(participant.role, "member")
        self.assertEqual(self._participant_entries(conversation.id, "bob"), 1)

    def test_list_conversations_filters_membership_and_escapes_search(self) -> None:
        first = self._group(name="Algebra (advanced)")
        second = self._group(name="Chemistry")
        self.store.mark_participants_left(second.id, ["bob"])

        items, total = self.store.list_conversations("bob", limit=10, offset=0)
        self.assertEqual((total, [c.id for c in items]), (1, [first.id]))

        items, _ = self.store.list_conversations("alice", search="(advanced", limit=10, offset=0)
        self.assertEqual([c.id for c in items], [first.id])
        items, total = self.store.list_conversations("alice", search="a.*", limit=10, offset=0)
        self.assertEqual(total, 0)

    def test_mark_participants_left_counts_active_entries(self) -> None:
        conversation = self._group()

        self.assertEqual(self.store.mark_participants_left(conversation.id), 2)
        self.assertEqual(self.store.mark_participants_left(conversation.id), 0)
        self.assertEqual(self.store.active_conversation_ids("alice"), [])

    def test_messages_page_newest_first_and_search_skips_deleted(self) -> None:
        conversation = self._group()
        created = [
            self.store.create_message(conversation_id=conversation.id, sender_id="alice", content=f"note {i}")
            for i in range(3)
        ]
        self.store.soft_delete_message(created[0].id, tombstone=MESSAGE_TOMBSTONE, deleted_at=utcnow())

        page, total = self.store.list_messages(conversation.id, limit=2, offset=0)
        hits = self.store.search_messages("NOTE", conversation_ids=[conversation.id], limit=10, offset=0)

        self.assertEqual(total, 3)
        self.assertEqual(len(page), 2)
        self.assertEqual(page[0].created_at >= page[1].created_at, True)
        self.assertEqual(sorted(m.id for m in hits), sorted(m.id for m in created[1:]))

    def test_messages_sharing_a_timestamp_keep_insertion_order(self) -> None:
        conversation = self._group()
        frozen = datetime(2026, 10, 19, 12, 0, 0, 123456, tzinfo=timezone.utc)

        with mock.patch("skillchat.stores.document.utcnow", return_value=frozen):
            created = [
                self.store.create_message(conversation_id=conversation.id, sender_id="alice", content=f"burst {i}")
                for i in range(6)
            ]

        page, _ = self.store.list_messages(conversation.id, limit=10, offset=0)
        hits = self.store.search_messages("burst", conversation_ids=[conversation.id], limit=10, offset=0)

        newest_first = [m.id for m in reversed(created)]
        self.assertEqual([m.id for m in page], newest_first)
        self.assertEqual([m.id for m in hits], newest_first)
        self.assertEqual(self.store.latest_message(conversation.id).id, created[-1].id)

    def test_reaction_and_read_upserts_are_idempotent(self) -> None:
        conversation = self._group()
        message = self.store.create_message(conversation_id=conversation.id, sender_id="alice", content="hi")

        first = self.store.upsert_reaction(message.id, "bob", "👍")
        again = self.store.upsert_reaction(message.id, "bob", "👍")
        self.assertEqual(first.id, again.id)
        self.assertEqual(len(self.store.list_reactions([message.id])), 1)
        self.assertEqual(self.store.remove_reaction(message.id, "bob", "👍"), 1)
        self.assertEqual(self.store.remove_reaction(message.id, "bob", "👍"), 0)

        read_at = utcnow()
        receipt = self.store.upsert_read(message.id, "bob", read_at)
        refreshed = self.store.upsert_read(message.id, "bob", read_at + timedelta(minutes=1))
        self.assertEqual(receipt.id, refreshed.id)
        self.assertEqual(len(self.store.list_reads([message.id])), 1)
        self.assertGreater(refreshed.read_at, receipt.read_at)

    def test_count_unread_respects_last_read(self) -> None:
        conversation = self._group()
        self.store.create_message(conversation_id=conversation.id, sender_id="alice", content="one")
        self.store.create_message(conversation_id=conversation.id, sender_id="bob", content="own")

        self.assertEqual(self.store.count_unread(conversation.id, "bob", None), 1)
        self.assertEqual(self.store.count_unread(conversation.id, "bob", utcnow() + timedelta(seconds=1)), 0)

    def test_update_participant_sets_embedded_fields(self) -> None:
        conversation = self._group()

        updated = self.store.update_participant(conversation.id, "bob", role="admin", is_muted=True)

        self.assertEqual((updated.role, updated.is_muted), ("admin", True))
        self.assertIsNone(self.store.update_participant(conversation.id, "carol", is_muted=True))

    def test_user_directory_resolves_known_ids(self) -> None:
        identities = self.users.resolve_users(["alice", "ghost"])

        self.assertEqual(list(identities), ["alice"])
        self.assertEqual(identities["alice"].email, "alice@example.com")

    def test_service_rules_hold_on_document_backend(self) -> None:
        service = MessagingService(self.store, self.users)
        direct = service.create_conversation("alice", "direct", ["alice", "bob"])
        self.assertEqual(service.create_conversation("bob", "direct", ["bob", "alice"]).id, direct.id)

        service.delete_conversation(direct.id, "alice")
        message = service.send_message("bob", MessageSendRequest(receiver_id="alice", content="still there?"))

        self.assertEqual(message.conversation_id, direct.id)
        self.assertEqual(message.receiver_id, "alice")
        self.assertEqual(sorted(service.participant_user_ids(direct.id)), ["alice", "bob"])
        with self.assertRaises(MessagingPermissionError):
            service.send_message("carol", MessageSendRequest(conversation_id=direct.id, content="let me in"))

        result = service.mark_messages_as_read(direct.id, "alice")
        self.assertEqual(result.marked_count, 1)
        self.assertEqual(service.list_conversations("alice").items[0].unread_count, 0)


if __name__ == "__main__":
    unittest.main()
