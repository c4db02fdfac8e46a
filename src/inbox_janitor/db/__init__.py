"""Database layer for InboxJanitor.

This module provides SQLite database access with async operations.

Usage:
    from inbox_janitor.db import DatabaseStore, SyncedMessage

    store = DatabaseStore("data/janitor.db")
    await store.initialize()

    account = await store.create_account("user-1", "me@gmail.com")
    created = await store.upsert_message(
        SyncedMessage(
            user_id="user-1",
            account_id=account.id,
            gmail_message_id="18c2f...",
            sender="news@example.com",
        )
    )
"""

from inbox_janitor.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from inbox_janitor.db.store import (
    MAX_SNIPPET_LENGTH,
    ClassificationUpdate,
    DatabaseStore,
    DeleteBatch,
    DeleteBatchItem,
    LLMLogEntry,
    MailboxAccount,
    Message,
    SenderStats,
    SyncCheckpoint,
    SyncedMessage,
    SyncProgress,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "MAX_SNIPPET_LENGTH",
    # Dataclasses
    "MailboxAccount",
    "Message",
    "SyncedMessage",
    "ClassificationUpdate",
    "SenderStats",
    "SyncProgress",
    "SyncCheckpoint",
    "DeleteBatch",
    "DeleteBatchItem",
    "LLMLogEntry",
]
