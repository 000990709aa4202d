"""Seed demo users, a study-group conversation, and a few messages.

Usage (from repository root):
    python backend/scripts/seed_demo.py

Usage (from backend directory):
    python scripts/seed_demo.py
    # or
    python -m scripts.seed_demo
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Make `skillchat` imports work whether the script is run from repo root or backend/.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from skillchat.auth import create_access_token
from skillchat.config import get_settings
from skillchat.dependencies import open_messaging_service
from skillchat.schemas.message import MessageSendRequest
from skillchat.stores.records import UserIdentity

DEMO_USERS = [
    UserIdentity(id="demo-instructor", username="ada", email="ada@example.com", first_name="Ada", last_name="Lovelace"),
    UserIdentity(id="demo-student-1", username="grace", email="grace@example.com", first_name="Grace", last_name="Hopper"),
    UserIdentity(id="demo-student-2", username="alan", email="alan@example.com", first_name="Alan", last_name="Turing"),
]

DEMO_MESSAGES = [
    ("demo-instructor", "Welcome to the algorithms study group. Week 1 notes are pinned."),
    ("demo-student-1", "Thanks! Is the recursion worksheet due Friday?"),
    ("demo-instructor", "Yes, Friday at noon. Bring questions to the live session."),
    ("demo-student-2", "Could someone share the link to the graph traversal video?"),
]


def seed_users() -> None:
    """Insert or refresh the demo identities in the configured backend."""

    settings = get_settings()
    if settings.storage_backend == "document":
        from skillchat.stores.factory import get_mongo_database

        users = get_mongo_database().users
        for user in DEMO_USERS:
            users.update_one(
                {"_id": user.id},
                {
                    "$set": {
                        "username": user.username,
                        "email": user.email,
                        "first_name": user.first_name,
                        "last_name": user.last_name,
                        "avatar": user.avatar,
                    }
                },
                upsert=True,
            )
        return

    from skillchat.db.session import SessionLocal
    from skillchat.models.user import User

    with SessionLocal() as db:
        for user in DEMO_USERS:
            db.merge(
                User(
                    id=user.id,
                    username=user.username,
                    email=user.email,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    avatar=user.avatar,
                )
            )
        db.commit()


def parse_args() -> argparse.Namespace:
    """Parse script CLI arguments."""

    parser = argparse.ArgumentParser(description="Seed demo users and a study-group conversation.")
    parser.add_argument(
        "--group-name",
        default="Algorithms Study Group",
        help="Name of the seeded group conversation.",
    )
    parser.add_argument(
        "--no-messages",
        action="store_true",
        help="Create the conversation without seeding messages.",
    )
    return parser.parse_args()


def main() -> None:
    """Seed demo data and print a short summary."""

    args = parse_args()
    seed_users()
    instructor, *students = DEMO_USERS

    with open_messaging_service() as service:
        conversation = service.create_conversation(
            instructor.id,
            "group",
            [student.id for student in students],
            name=args.group_name,
            description="Demo conversation seeded for local development.",
        )
        sent = 0
        if not args.no_messages:
            for sender_id, content in DEMO_MESSAGES:
                service.send_message(sender_id, MessageSendRequest(conversation_id=conversation.id, content=content))
                sent += 1

    print("Seed complete")
    print(f"conversation_id={conversation.id}")
    print(f"participants={len(conversation.participant_ids)}")
    print(f"messages_created={sent}")
    print()
    print("Tokens:")
    for user in DEMO_USERS:
        print(f"  {user.username}: {create_access_token(user.id)}")
    print()
    print("Inspect:")
    print(f"  GET /conversations/{conversation.id}/messages")
    print("  WS  /ws?token=<token>")


if __name__ == "__main__":
    main()
