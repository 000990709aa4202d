"""Select and open the configured storage backend."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache

from pymongo import MongoClient
from pymongo.database import Database

from skillchat.config import Settings, get_settings
from skillchat.stores.document import DocumentConversationStore, DocumentUserDirectory, ensure_indexes
from skillchat.stores.interface import ConversationStore, UserDirectory
from skillchat.stores.sql import SqlConversationStore, SqlUserDirectory


@lru_cache
def get_mongo_database() -> Database:
    """Return the shared document database handle with indexes in place."""

    settings = get_settings()
    client: MongoClient = MongoClient(settings.mongo_url, tz_aware=False)
    database = client[settings.mongo_database]
    ensure_indexes(database)
    return database


@contextmanager
def open_backend(settings: Settings | None = None) -> Iterator[tuple[ConversationStore, UserDirectory]]:
    """Yield a store and user directory bound to one unit of work."""

    settings = settings or get_settings()
    if settings.storage_backend == "document":
        database = get_mongo_database()
        yield DocumentConversationStore(database), DocumentUserDirectory(database)
        return

    # Imported lazily so the document backend never builds a SQL engine.
    from skillchat.db.session import SessionLocal

    with SessionLocal() as db:
        yield SqlConversationStore(db), SqlUserDirectory(db)
