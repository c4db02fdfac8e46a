"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for InboxJanitor. It uses aiosqlite for async access and provides
type-safe operations with dataclasses.

Usage:
    from inbox_janitor.db.store import DatabaseStore

    store = DatabaseStore("data/janitor.db")
    await store.initialize()

    # Account operations
    account = await store.create_account(user_id, "me@gmail.com")

    # Sync operations
    created = await store.upsert_message(synced_message)
    await store.save_sync_checkpoint(run.id, checkpoint)
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from inbox_janitor.core.errors import DatabaseError
from inbox_janitor.core.logging import current_run_id, get_logger
from inbox_janitor.db.models import init_database

logger = get_logger(__name__)

# Maximum snippet length stored (Gmail snippets are ~200 chars already)
MAX_SNIPPET_LENGTH = 1000

# Type aliases
SyncStatus = Literal["pending", "in_progress", "completed", "failed", "timeout"]
DeleteBatchStatus = Literal["pending", "completed", "failed"]
DeleteDecision = Literal["deleted", "skipped", "error"]
SenderCounter = Literal["deleted_by_app_count", "manually_deleted_count", "manually_kept_count"]
ReadStatus = Literal["all", "read", "unread"]

ACTIVE_SYNC_STATUSES: tuple[SyncStatus, ...] = ("in_progress", "timeout")


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _load_json_list(value: str | None) -> list[str]:
    if not value:
        return []
    try:
        data = json.loads(value)
    except json.JSONDecodeError:
        return []
    return [str(item) for item in data] if isinstance(data, list) else []


@dataclass
class MailboxAccount:
    """Connected Gmail account."""

    id: str
    user_id: str
    email_address: str
    auto_include_senders: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Message:
    """Message record from the database."""

    id: str
    user_id: str
    account_id: str
    gmail_message_id: str
    sender: str
    gmail_thread_id: str | None = None
    sender_name: str | None = None
    subject: str | None = None
    snippet: str | None = None
    internal_date: datetime | None = None
    labels: list[str] = field(default_factory=list)
    has_user_replied: bool = False
    ai_category: str = "unknown"
    ai_delete_score: float | None = None
    ai_delete_reason: str | None = None
    is_delete_candidate: bool = False
    is_deleted_by_app: bool = False
    is_manually_kept: bool = False
    is_manually_deleted: bool = False
    last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_unread(self) -> bool:
        return "UNREAD" in self.labels


@dataclass
class SyncedMessage:
    """Message metadata observed by a sync pass, ready to upsert."""

    user_id: str
    account_id: str
    gmail_message_id: str
    sender: str
    gmail_thread_id: str | None = None
    sender_name: str | None = None
    subject: str | None = None
    snippet: str | None = None
    internal_date: datetime | None = None
    labels: list[str] = field(default_factory=list)
    has_user_replied: bool = False


@dataclass
class ClassificationUpdate:
    """Partial update written by a classification run (only these fields change)."""

    message_id: str
    ai_category: str
    ai_delete_score: float
    ai_delete_reason: str
    is_delete_candidate: bool


@dataclass
class SenderStats:
    """Per (account, sender) counters."""

    account_id: str
    sender: str
    total_count: int = 0
    deleted_by_app_count: int = 0
    manually_deleted_count: int = 0
    manually_kept_count: int = 0
    last_email_at: datetime | None = None

    @property
    def total_actions(self) -> int:
        """Number of user decisions recorded for this sender."""
        return self.manually_kept_count + self.deleted_by_app_count + self.manually_deleted_count


@dataclass
class SyncProgress:
    """Sync run record from the database."""

    id: str
    user_id: str
    account_id: str
    status: SyncStatus = "pending"
    total_messages: int = 0
    processed_messages: int = 0
    created_messages: int = 0
    updated_messages: int = 0
    error_count: int = 0
    next_page_token: str | None = None
    page_offset: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SYNC_STATUSES


@dataclass
class SyncCheckpoint:
    """Partial update persisted after each sync sub-chunk.

    Carries the counters and resumption point; ``error_message`` and
    ``completed`` are only applied when set.
    """

    status: SyncStatus
    total_messages: int
    processed_messages: int
    created_messages: int
    updated_messages: int
    error_count: int
    next_page_token: str | None
    page_offset: int
    error_message: str | None = None
    completed: bool = False


@dataclass
class DeleteBatch:
    """Delete batch audit record."""

    id: str
    user_id: str
    account_id: str
    total_candidates: int = 0
    total_deleted: int = 0
    status: DeleteBatchStatus = "pending"
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass
class DeleteBatchItem:
    """Per-message outcome inside a delete batch."""

    id: int
    delete_batch_id: str
    message_id: str
    decision: DeleteDecision
    gmail_message_id: str | None = None
    reason: str | None = None
    created_at: datetime | None = None


@dataclass
class LLMLogEntry:
    """LLM request log entry from the database."""

    id: int
    timestamp: datetime | None
    task_type: str | None = None
    model: str | None = None
    account_id: str | None = None
    run_id: str | None = None
    prompt_json: Any = None
    response_json: Any = None
    tool_call_json: Any = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None
    error: str | None = None


class DatabaseStore:
    """Database store for all InboxJanitor data.

    This class provides async CRUD operations for all database tables.
    It handles connection management, JSON serialization, and type conversion.

    Attributes:
        db_path: Path to the SQLite database file
        _initialized: Whether the database has been initialized
    """

    def __init__(self, db_path: str | Path):
        """Initialize the database store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets all required PRAGMAs for reliability and performance:
        - busy_timeout: 10s to handle concurrent access from sync + web requests
        - foreign_keys: ON so account/user teardown cascades
        - synchronous: NORMAL (safe with WAL, faster writes)
        - temp_store: MEMORY for faster temp operations
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # User & Account Operations
    # =========================================================================

    async def ensure_user(self, user_id: str, email: str | None = None) -> None:
        """Create the user row if it does not exist yet.

        Identity is owned by the session layer; this only mirrors the id so
        foreign keys and cascading teardown work.
        """
        try:
            async with self._db() as db:
                await db.execute(
                    "INSERT INTO users (id, email) VALUES (?, ?) ON CONFLICT(id) DO NOTHING",
                    (user_id, email),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("ensure_user_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to register user {user_id}: {e}") from e

    async def create_account(self, user_id: str, email_address: str) -> MailboxAccount:
        """Register a Gmail account for a user.

        Returns the existing account if the user already connected this address.

        Raises:
            DatabaseError: If the operation fails
        """
        await self.ensure_user(user_id)
        email_address = email_address.strip().lower()
        now = _now()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO mailbox_accounts (id, user_id, email_address, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, email_address) DO NOTHING
                    """,
                    (str(uuid.uuid4()), user_id, email_address, now, now),
                )
                await db.commit()
                cursor = await db.execute(
                    "SELECT * FROM mailbox_accounts WHERE user_id = ? AND email_address = ?",
                    (user_id, email_address),
                )
                row = await cursor.fetchone()
                return self._row_to_account(row)
        except aiosqlite.Error as e:
            logger.error("create_account_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to create account {email_address}: {e}") from e

    async def get_account(self, account_id: str, user_id: str | None = None) -> MailboxAccount | None:
        """Get an account by ID, optionally scoped to its owner.

        Args:
            account_id: Mailbox account ID
            user_id: If given, only return the account when this user owns it

        Returns:
            MailboxAccount or None if not found (or not owned)
        """
        try:
            async with self._db() as db:
                query = "SELECT * FROM mailbox_accounts WHERE id = ?"
                params: list[Any] = [account_id]
                if user_id is not None:
                    query += " AND user_id = ?"
                    params.append(user_id)
                cursor = await db.execute(query, params)
                row = await cursor.fetchone()
                return self._row_to_account(row) if row else None
        except aiosqlite.Error as e:
            logger.error("get_account_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get account {account_id}: {e}") from e

    async def list_accounts(self, user_id: str) -> list[MailboxAccount]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM mailbox_accounts WHERE user_id = ? ORDER BY created_at",
                    (user_id,),
                )
                return [self._row_to_account(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("list_accounts_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to list accounts: {e}") from e

    async def delete_account(self, account_id: str) -> bool:
        """Delete an account and every dependent row (cascade).

        Returns:
            True if an account was deleted
        """
        try:
            async with self._db() as db:
                cursor = await db.execute("DELETE FROM mailbox_accounts WHERE id = ?", (account_id,))
                await db.commit()
                deleted = cursor.rowcount > 0
            if deleted:
                logger.info("account_deleted", account_id=account_id)
            return deleted
        except aiosqlite.Error as e:
            logger.error("delete_account_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to delete account {account_id}: {e}") from e

    async def delete_user_data(self, user_id: str) -> bool:
        """Full user teardown: removes the user and all accounts, messages and stats."""
        try:
            async with self._db() as db:
                cursor = await db.execute("DELETE FROM users WHERE id = ?", (user_id,))
                await db.commit()
                deleted = cursor.rowcount > 0
            logger.info("user_data_deleted", user_id=user_id, existed=deleted)
            return deleted
        except aiosqlite.Error as e:
            logger.error("delete_user_data_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to delete data for user {user_id}: {e}") from e

    async def set_auto_include_senders(self, account_id: str, senders: list[str]) -> list[str]:
        """Replace the account's auto-include sender list.

        Addresses are lowercased, stripped and de-duplicated (order preserved).

        Returns:
            The normalized list that was stored
        """
        normalized: list[str] = []
        for sender in senders:
            value = sender.strip().lower()
            if value and value not in normalized:
                normalized.append(value)

        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE mailbox_accounts SET auto_include_senders = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(normalized), _now(), account_id),
                )
                await db.commit()
            return normalized
        except aiosqlite.Error as e:
            logger.error("set_auto_include_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to update auto-include senders: {e}") from e

    def _row_to_account(self, row: aiosqlite.Row) -> MailboxAccount:
        return MailboxAccount(
            id=row["id"],
            user_id=row["user_id"],
            email_address=row["email_address"],
            auto_include_senders=_load_json_list(row["auto_include_senders"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def upsert_message(self, message: SyncedMessage) -> bool:
        """Insert or update a message keyed by (account_id, gmail_message_id).

        On insert, the sender's total_count is incremented in the same
        transaction. Classification and deletion fields are never touched
        by a sync update.

        Args:
            message: Metadata observed by the sync pass

        Returns:
            True if a new row was created, False if an existing row was updated

        Raises:
            DatabaseError: If the operation fails
        """
        snippet = message.snippet
        if snippet and len(snippet) > MAX_SNIPPET_LENGTH:
            snippet = snippet[:MAX_SNIPPET_LENGTH]

        now = _now()
        internal_date = message.internal_date.isoformat() if message.internal_date else None
        labels_json = json.dumps(message.labels)

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO messages (
                        id, user_id, account_id, gmail_message_id, gmail_thread_id,
                        sender, sender_name, subject, snippet, internal_date, labels,
                        has_user_replied, last_synced_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account_id, gmail_message_id) DO NOTHING
                    """,
                    (
                        str(uuid.uuid4()),
                        message.user_id,
                        message.account_id,
                        message.gmail_message_id,
                        message.gmail_thread_id,
                        message.sender,
                        message.sender_name,
                        message.subject,
                        snippet,
                        internal_date,
                        labels_json,
                        int(message.has_user_replied),
                        now,
                        now,
                        now,
                    ),
                )
                created = cursor.rowcount == 1

                if created:
                    await db.execute(
                        """
                        INSERT INTO sender_stats (
                            user_id, account_id, sender, total_count, last_email_at,
                            created_at, updated_at
                        ) VALUES (?, ?, ?, 1, ?, ?, ?)
                        ON CONFLICT(account_id, sender) DO UPDATE SET
                            total_count = total_count + 1,
                            last_email_at = CASE
                                WHEN last_email_at IS NULL OR excluded.last_email_at > last_email_at
                                THEN excluded.last_email_at
                                ELSE last_email_at
                            END,
                            updated_at = excluded.updated_at
                        """,
                        (
                            message.user_id,
                            message.account_id,
                            message.sender,
                            internal_date,
                            now,
                            now,
                        ),
                    )
                else:
                    await db.execute(
                        """
                        UPDATE messages SET
                            gmail_thread_id = ?,
                            sender = ?,
                            sender_name = ?,
                            subject = ?,
                            snippet = ?,
                            internal_date = ?,
                            labels = ?,
                            has_user_replied = ?,
                            last_synced_at = ?,
                            updated_at = ?
                        WHERE account_id = ? AND gmail_message_id = ?
                        """,
                        (
                            message.gmail_thread_id,
                            message.sender,
                            message.sender_name,
                            message.subject,
                            snippet,
                            internal_date,
                            labels_json,
                            int(message.has_user_replied),
                            now,
                            now,
                            message.account_id,
                            message.gmail_message_id,
                        ),
                    )

                await db.commit()
                return created

        except aiosqlite.Error as e:
            logger.error(
                "upsert_message_failed",
                gmail_message_id=message.gmail_message_id,
                error=str(e),
            )
            raise DatabaseError(
                f"Failed to upsert message {message.gmail_message_id}: {e}"
            ) from e

    async def get_message(self, message_id: str) -> Message | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
                row = await cursor.fetchone()
                return self._row_to_message(row) if row else None
        except aiosqlite.Error as e:
            logger.error("get_message_failed", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to get message {message_id}: {e}") from e

    async def get_messages_batch(self, account_id: str, message_ids: list[str]) -> dict[str, Message]:
        """Get multiple messages of one account by ID in a single query.

        Returns:
            Dict mapping message id to Message (ids outside the account are omitted)
        """
        if not message_ids:
            return {}

        try:
            async with self._db() as db:
                placeholders = ",".join("?" * len(message_ids))
                cursor = await db.execute(
                    f"SELECT * FROM messages WHERE account_id = ? AND id IN ({placeholders})",
                    [account_id, *message_ids],
                )
                rows = await cursor.fetchall()
                return {row["id"]: self._row_to_message(row) for row in rows}
        except aiosqlite.Error as e:
            logger.error("get_messages_batch_failed", count=len(message_ids), error=str(e))
            raise DatabaseError(f"Failed to get messages batch: {e}") from e

    async def count_messages(self, account_id: str) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM messages WHERE account_id = ?", (account_id,)
                )
                return (await cursor.fetchone())[0]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count messages: {e}") from e

    async def select_for_classification(
        self,
        account_id: str,
        older_than: datetime,
        auto_include_senders: list[str],
        limit: int,
    ) -> list[Message]:
        """Select messages eligible for deletion classification.

        Eligible: not deleted by the app, not manually kept, and either
        older than ``older_than`` or sent by an auto-include sender.
        Ordered oldest first and capped at ``limit``.
        """
        conditions = "internal_date < ?"
        params: list[Any] = [account_id, older_than.isoformat()]
        if auto_include_senders:
            placeholders = ",".join("?" * len(auto_include_senders))
            conditions = f"({conditions} OR sender IN ({placeholders}))"
            params.extend(auto_include_senders)
        params.append(limit)

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT * FROM messages
                    WHERE account_id = ?
                      AND is_deleted_by_app = 0
                      AND is_manually_kept = 0
                      AND {conditions}
                    ORDER BY internal_date ASC
                    LIMIT ?
                    """,
                    params,
                )
                return [self._row_to_message(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("select_for_classification_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to select messages for classification: {e}") from e

    async def save_classifications(self, updates: list[ClassificationUpdate]) -> int:
        """Write classification results in a single transaction.

        Writes are last-write-wins per message, so a re-run simply overwrites.

        Returns:
            Number of message rows updated
        """
        if not updates:
            return 0

        now = _now()
        try:
            async with self._db() as db:
                cursor = await db.executemany(
                    """
                    UPDATE messages SET
                        ai_category = ?,
                        ai_delete_score = ?,
                        ai_delete_reason = ?,
                        is_delete_candidate = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    [
                        (
                            update.ai_category,
                            update.ai_delete_score,
                            update.ai_delete_reason,
                            int(update.is_delete_candidate),
                            now,
                            update.message_id,
                        )
                        for update in updates
                    ],
                )
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as e:
            logger.error("save_classifications_failed", count=len(updates), error=str(e))
            raise DatabaseError(f"Failed to save classifications: {e}") from e

    async def get_delete_candidates(
        self,
        account_id: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Message]:
        """Current delete candidates (flagged and not yet deleted), highest score first."""
        query = """
            SELECT * FROM messages
            WHERE account_id = ? AND is_delete_candidate = 1 AND is_deleted_by_app = 0
            ORDER BY ai_delete_score DESC, internal_date ASC
        """
        params: list[Any] = [account_id]
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return [self._row_to_message(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("get_delete_candidates_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get delete candidates: {e}") from e

    async def count_delete_candidates(self, account_id: str) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT COUNT(*) FROM messages
                    WHERE account_id = ? AND is_delete_candidate = 1 AND is_deleted_by_app = 0
                    """,
                    (account_id,),
                )
                return (await cursor.fetchone())[0]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count delete candidates: {e}") from e

    async def mark_message_deleted(self, message_id: str) -> None:
        """Mark a message trashed by the app (deleted-by-app and manually-deleted)."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE messages SET
                        is_deleted_by_app = 1,
                        is_manually_deleted = 1,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (_now(), message_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("mark_message_deleted_failed", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to mark message {message_id} deleted: {e}") from e

    async def mark_message_kept(self, message_id: str) -> None:
        """Mark a message manually kept and clear its candidate flag."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE messages SET
                        is_manually_kept = 1,
                        is_delete_candidate = 0,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (_now(), message_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("mark_message_kept_failed", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to mark message {message_id} kept: {e}") from e

    async def list_messages(
        self,
        account_id: str,
        sender: str | None = None,
        category: str | None = None,
        read_status: ReadStatus = "all",
        candidates_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Message]:
        """List non-deleted messages of an account, newest first.

        ``sender`` and ``category`` accept "all" as no filter. Read status
        is derived from the UNREAD label.
        """
        query = "SELECT * FROM messages WHERE account_id = ? AND is_deleted_by_app = 0"
        params: list[Any] = [account_id]

        if sender and sender != "all":
            query += " AND sender = ?"
            params.append(sender.lower())
        if category and category != "all":
            query += " AND ai_category = ?"
            params.append(category)
        if candidates_only:
            query += " AND is_delete_candidate = 1"
        if read_status == "unread":
            query += " AND labels LIKE '%\"UNREAD\"%'"
        elif read_status == "read":
            query += " AND labels NOT LIKE '%\"UNREAD\"%'"

        query += " ORDER BY internal_date DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return [self._row_to_message(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("list_messages_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to list messages: {e}") from e

    async def get_filter_options(
        self, account_id: str, sender_limit: int = 100
    ) -> dict[str, list[str]]:
        """Distinct senders (alphabetical, capped) and AI categories of listable messages."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT DISTINCT sender FROM messages
                    WHERE account_id = ? AND is_deleted_by_app = 0
                    ORDER BY sender LIMIT ?
                    """,
                    (account_id, sender_limit),
                )
                senders = [row["sender"] for row in await cursor.fetchall()]
                cursor = await db.execute(
                    """
                    SELECT DISTINCT ai_category FROM messages
                    WHERE account_id = ? AND is_deleted_by_app = 0 AND ai_category IS NOT NULL
                    ORDER BY ai_category
                    """,
                    (account_id,),
                )
                categories = [row["ai_category"] for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("get_filter_options_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to load message filter options: {e}") from e

        return {"senders": senders, "categories": categories}

    async def get_account_stats(self, account_id: str) -> dict[str, Any]:
        """Dashboard statistics for one account.

        Returns:
            Dict with totals, reply split, deleted/candidate counts, category
            distribution, top 20 senders and the last sync time
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT
                        COUNT(*) AS total,
                        COALESCE(SUM(has_user_replied), 0) AS replied,
                        COALESCE(SUM(is_deleted_by_app), 0) AS deleted,
                        COALESCE(SUM(
                            CASE WHEN is_delete_candidate = 1 AND is_deleted_by_app = 0
                            THEN 1 ELSE 0 END
                        ), 0) AS candidates,
                        MAX(last_synced_at) AS last_synced_at
                    FROM messages WHERE account_id = ?
                    """,
                    (account_id,),
                )
                totals = await cursor.fetchone()

                cursor = await db.execute(
                    "SELECT COUNT(*) FROM sender_stats WHERE account_id = ?", (account_id,)
                )
                total_senders = (await cursor.fetchone())[0]

                cursor = await db.execute(
                    """
                    SELECT ai_category, COUNT(*) AS count FROM messages
                    WHERE account_id = ? GROUP BY ai_category
                    """,
                    (account_id,),
                )
                categories = {row["ai_category"]: row["count"] for row in await cursor.fetchall()}

                cursor = await db.execute(
                    """
                    SELECT * FROM sender_stats WHERE account_id = ?
                    ORDER BY total_count DESC LIMIT 20
                    """,
                    (account_id,),
                )
                top_senders = [
                    {
                        "sender": row["sender"],
                        "total_count": row["total_count"],
                        "deleted_by_app_count": row["deleted_by_app_count"],
                        "manually_kept_count": row["manually_kept_count"],
                        "last_email_at": row["last_email_at"],
                    }
                    for row in await cursor.fetchall()
                ]

            total = totals["total"]
            return {
                "total_emails": total,
                "total_senders": total_senders,
                "replied_count": totals["replied"],
                "not_replied_count": total - totals["replied"],
                "deleted_count": totals["deleted"],
                "candidate_count": totals["candidates"],
                "categories": categories,
                "top_senders": top_senders,
                "last_synced_at": totals["last_synced_at"],
            }
        except aiosqlite.Error as e:
            logger.error("get_account_stats_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get account stats: {e}") from e

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        """Convert a database row to a Message dataclass."""
        return Message(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            gmail_message_id=row["gmail_message_id"],
            gmail_thread_id=row["gmail_thread_id"],
            sender=row["sender"],
            sender_name=row["sender_name"],
            subject=row["subject"],
            snippet=row["snippet"],
            internal_date=_parse_dt(row["internal_date"]),
            labels=_load_json_list(row["labels"]),
            has_user_replied=bool(row["has_user_replied"]),
            ai_category=row["ai_category"] or "unknown",
            ai_delete_score=row["ai_delete_score"],
            ai_delete_reason=row["ai_delete_reason"],
            is_delete_candidate=bool(row["is_delete_candidate"]),
            is_deleted_by_app=bool(row["is_deleted_by_app"]),
            is_manually_kept=bool(row["is_manually_kept"]),
            is_manually_deleted=bool(row["is_manually_deleted"]),
            last_synced_at=_parse_dt(row["last_synced_at"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # Sender Statistics Operations
    # =========================================================================

    async def increment_sender_counter(
        self,
        user_id: str,
        account_id: str,
        sender: str,
        counter: SenderCounter,
    ) -> None:
        """Increment one decision counter, creating the stats row if absent.

        A freshly created row starts with total_count = 1 and the counter at 1.
        """
        if counter not in ("deleted_by_app_count", "manually_deleted_count", "manually_kept_count"):
            raise ValueError(f"Unknown sender counter: {counter}")

        now = _now()
        try:
            async with self._db() as db:
                await db.execute(
                    f"""
                    INSERT INTO sender_stats (
                        user_id, account_id, sender, total_count, {counter},
                        created_at, updated_at
                    ) VALUES (?, ?, ?, 1, 1, ?, ?)
                    ON CONFLICT(account_id, sender) DO UPDATE SET
                        {counter} = {counter} + 1,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, account_id, sender, now, now),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error(
                "increment_sender_counter_failed",
                sender=sender,
                counter=counter,
                error=str(e),
            )
            raise DatabaseError(f"Failed to update sender stats for {sender}: {e}") from e

    async def get_sender_stats(self, account_id: str, sender: str) -> SenderStats | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM sender_stats WHERE account_id = ? AND sender = ?",
                    (account_id, sender),
                )
                row = await cursor.fetchone()
                return self._row_to_sender_stats(row) if row else None
        except aiosqlite.Error as e:
            logger.error("get_sender_stats_failed", sender=sender, error=str(e))
            raise DatabaseError(f"Failed to get sender stats for {sender}: {e}") from e

    async def get_sender_stats_batch(
        self, account_id: str, senders: list[str]
    ) -> dict[str, SenderStats]:
        """Get stats for many senders of one account in a single query.

        Returns:
            Dict mapping sender to SenderStats (senders without stats are omitted)
        """
        unique = list(dict.fromkeys(senders))
        if not unique:
            return {}

        try:
            async with self._db() as db:
                placeholders = ",".join("?" * len(unique))
                cursor = await db.execute(
                    f"SELECT * FROM sender_stats WHERE account_id = ? AND sender IN ({placeholders})",
                    [account_id, *unique],
                )
                rows = await cursor.fetchall()
                return {row["sender"]: self._row_to_sender_stats(row) for row in rows}
        except aiosqlite.Error as e:
            logger.error("get_sender_stats_batch_failed", count=len(unique), error=str(e))
            raise DatabaseError(f"Failed to get sender stats batch: {e}") from e

    def _row_to_sender_stats(self, row: aiosqlite.Row) -> SenderStats:
        return SenderStats(
            account_id=row["account_id"],
            sender=row["sender"],
            total_count=row["total_count"] or 0,
            deleted_by_app_count=row["deleted_by_app_count"] or 0,
            manually_deleted_count=row["manually_deleted_count"] or 0,
            manually_kept_count=row["manually_kept_count"] or 0,
            last_email_at=_parse_dt(row["last_email_at"]),
        )

    # =========================================================================
    # Sync Progress Operations
    # =========================================================================

    async def get_active_sync(self, account_id: str) -> SyncProgress | None:
        """The account's in_progress or timeout run, if any."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM sync_progress
                    WHERE account_id = ? AND status IN ('in_progress', 'timeout')
                    """,
                    (account_id,),
                )
                row = await cursor.fetchone()
                return self._row_to_sync(row) if row else None
        except aiosqlite.Error as e:
            logger.error("get_active_sync_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get active sync: {e}") from e

    async def get_latest_sync(self, account_id: str) -> SyncProgress | None:
        """Most recently started run of the account, in any status."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM sync_progress WHERE account_id = ?
                    ORDER BY started_at DESC, rowid DESC LIMIT 1
                    """,
                    (account_id,),
                )
                row = await cursor.fetchone()
                return self._row_to_sync(row) if row else None
        except aiosqlite.Error as e:
            logger.error("get_latest_sync_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get latest sync: {e}") from e

    async def start_sync_run(self, user_id: str, account_id: str) -> tuple[SyncProgress, bool]:
        """Create a fresh in_progress run unless one is already active.

        The partial unique index on active runs makes this race-free: a
        concurrent starter loses the insert and gets the winner's row.

        Returns:
            (run, created) where created is False when an active run was reused
        """
        now = _now()
        run_id = str(uuid.uuid4())
        try:
            async with self._db() as db:
                try:
                    await db.execute(
                        """
                        INSERT INTO sync_progress (
                            id, user_id, account_id, status, started_at, updated_at
                        ) VALUES (?, ?, ?, 'in_progress', ?, ?)
                        """,
                        (run_id, user_id, account_id, now, now),
                    )
                    await db.commit()
                    created = True
                except aiosqlite.IntegrityError:
                    await db.rollback()
                    created = False

                if created:
                    cursor = await db.execute("SELECT * FROM sync_progress WHERE id = ?", (run_id,))
                else:
                    cursor = await db.execute(
                        """
                        SELECT * FROM sync_progress
                        WHERE account_id = ? AND status IN ('in_progress', 'timeout')
                        """,
                        (account_id,),
                    )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("start_sync_run_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to start sync run: {e}") from e

        if row is None:
            raise DatabaseError(
                f"Sync run for account {account_id} vanished while starting. Retry the sync."
            )
        return self._row_to_sync(row), created

    async def save_sync_checkpoint(self, run_id: str, checkpoint: SyncCheckpoint) -> None:
        """Persist counters and the resumption point of a run."""
        now = _now()
        query = """
            UPDATE sync_progress SET
                status = ?,
                total_messages = ?,
                processed_messages = ?,
                created_messages = ?,
                updated_messages = ?,
                error_count = ?,
                next_page_token = ?,
                page_offset = ?,
                updated_at = ?
        """
        params: list[Any] = [
            checkpoint.status,
            checkpoint.total_messages,
            checkpoint.processed_messages,
            checkpoint.created_messages,
            checkpoint.updated_messages,
            checkpoint.error_count,
            checkpoint.next_page_token,
            checkpoint.page_offset,
            now,
        ]
        if checkpoint.error_message is not None:
            query += ", error_message = ?"
            params.append(checkpoint.error_message)
        if checkpoint.completed:
            query += ", completed_at = ?"
            params.append(now)
        query += " WHERE id = ?"
        params.append(run_id)

        try:
            async with self._db() as db:
                await db.execute(query, params)
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("save_sync_checkpoint_failed", run_id=run_id, error=str(e))
            raise DatabaseError(f"Failed to save sync checkpoint: {e}") from e

    async def fail_sync_run(self, run_id: str, error_message: str) -> None:
        """Mark a run failed (terminal)."""
        now = _now()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE sync_progress SET
                        status = 'failed', error_message = ?, updated_at = ?, completed_at = ?
                    WHERE id = ?
                    """,
                    (error_message, now, now, run_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("fail_sync_run_failed", run_id=run_id, error=str(e))
            raise DatabaseError(f"Failed to mark sync run failed: {e}") from e

    async def get_sync_run(self, run_id: str) -> SyncProgress | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM sync_progress WHERE id = ?", (run_id,))
                row = await cursor.fetchone()
                return self._row_to_sync(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get sync run {run_id}: {e}") from e

    async def list_active_syncs(self) -> list[SyncProgress]:
        """All in_progress/timeout runs across accounts (used by the scheduler)."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM sync_progress
                    WHERE status IN ('in_progress', 'timeout')
                    ORDER BY updated_at ASC
                    """
                )
                return [self._row_to_sync(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("list_active_syncs_failed", error=str(e))
            raise DatabaseError(f"Failed to list active syncs: {e}") from e

    def _row_to_sync(self, row: aiosqlite.Row) -> SyncProgress:
        return SyncProgress(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            status=row["status"],
            total_messages=row["total_messages"] or 0,
            processed_messages=row["processed_messages"] or 0,
            created_messages=row["created_messages"] or 0,
            updated_messages=row["updated_messages"] or 0,
            error_count=row["error_count"] or 0,
            next_page_token=row["next_page_token"],
            page_offset=row["page_offset"] or 0,
            error_message=row["error_message"],
            started_at=_parse_dt(row["started_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            completed_at=_parse_dt(row["completed_at"]),
        )

    # =========================================================================
    # Delete Batch Operations
    # =========================================================================

    async def create_delete_batch(
        self, user_id: str, account_id: str, total_candidates: int
    ) -> DeleteBatch:
        """Create a pending delete batch audit record."""
        batch = DeleteBatch(
            id=str(uuid.uuid4()),
            user_id=user_id,
            account_id=account_id,
            total_candidates=total_candidates,
            started_at=datetime.now(UTC),
        )
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO delete_batches (
                        id, user_id, account_id, total_candidates, total_deleted,
                        started_at, status
                    ) VALUES (?, ?, ?, ?, 0, ?, 'pending')
                    """,
                    (
                        batch.id,
                        user_id,
                        account_id,
                        total_candidates,
                        batch.started_at.isoformat(),
                    ),
                )
                await db.commit()
            return batch
        except aiosqlite.Error as e:
            logger.error("create_delete_batch_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to create delete batch: {e}") from e

    async def add_delete_batch_item(
        self,
        batch_id: str,
        message_id: str,
        gmail_message_id: str | None,
        decision: DeleteDecision,
        reason: str | None = None,
    ) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO delete_batch_items (
                        delete_batch_id, message_id, gmail_message_id, decision, reason, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (batch_id, message_id, gmail_message_id, decision, reason, _now()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error(
                "add_delete_batch_item_failed",
                batch_id=batch_id,
                message_id=message_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to record delete batch item: {e}") from e

    async def finalize_delete_batch(
        self,
        batch_id: str,
        status: DeleteBatchStatus,
        total_deleted: int,
        error_message: str | None = None,
    ) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE delete_batches SET
                        status = ?, total_deleted = ?, error_message = ?, finished_at = ?
                    WHERE id = ?
                    """,
                    (status, total_deleted, error_message, _now(), batch_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("finalize_delete_batch_failed", batch_id=batch_id, error=str(e))
            raise DatabaseError(f"Failed to finalize delete batch: {e}") from e

    async def get_delete_batch(self, batch_id: str) -> DeleteBatch | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM delete_batches WHERE id = ?", (batch_id,))
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get delete batch {batch_id}: {e}") from e

        if not row:
            return None
        return DeleteBatch(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            total_candidates=row["total_candidates"] or 0,
            total_deleted=row["total_deleted"] or 0,
            status=row["status"],
            error_message=row["error_message"],
            started_at=_parse_dt(row["started_at"]),
            finished_at=_parse_dt(row["finished_at"]),
        )

    async def get_delete_batch_items(self, batch_id: str) -> list[DeleteBatchItem]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM delete_batch_items WHERE delete_batch_id = ? ORDER BY id",
                    (batch_id,),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get delete batch items: {e}") from e

        return [
            DeleteBatchItem(
                id=row["id"],
                delete_batch_id=row["delete_batch_id"],
                message_id=row["message_id"],
                gmail_message_id=row["gmail_message_id"],
                decision=row["decision"],
                reason=row["reason"],
                created_at=_parse_dt(row["created_at"]),
            )
            for row in rows
        ]

    # =========================================================================
    # LLM Request Log Operations
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        prompt: dict[str, Any] | list[dict[str, Any]] | None,
        response: dict[str, Any] | None = None,
        tool_call: dict[str, Any] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        account_id: str | None = None,
        error: str | None = None,
    ) -> int:
        """Log an LLM request for debugging.

        The run bound with bind_run() is stored as run_id.

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        timestamp, task_type, model, account_id, run_id,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _now(),
                        task_type,
                        model,
                        account_id,
                        current_run_id(),
                        json.dumps(prompt) if prompt is not None else None,
                        json.dumps(response) if response else None,
                        json.dumps(tool_call) if tool_call else None,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("log_llm_request_failed", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def get_llm_logs(self, limit: int = 100, run_id: str | None = None) -> list[LLMLogEntry]:
        query = "SELECT * FROM llm_request_log"
        params: list[Any] = []
        if run_id:
            query += " WHERE run_id = ?"
            params.append(run_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("get_llm_logs_failed", error=str(e))
            raise DatabaseError(f"Failed to get LLM logs: {e}") from e

        return [self._row_to_llm_log(row) for row in rows]

    async def prune_llm_logs(self, retention_days: int) -> int:
        """Delete LLM logs older than the retention period.

        Returns:
            Number of entries deleted
        """
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM llm_request_log WHERE timestamp < ?",
                    (cutoff.isoformat(),),
                )
                await db.commit()
                deleted = cursor.rowcount
            if deleted:
                logger.info("llm_logs_pruned", deleted=deleted, retention_days=retention_days)
            return deleted
        except aiosqlite.Error as e:
            logger.error("prune_llm_logs_failed", error=str(e))
            raise DatabaseError(f"Failed to prune LLM logs: {e}") from e

    def _row_to_llm_log(self, row: aiosqlite.Row) -> LLMLogEntry:
        """Convert a database row to an LLMLogEntry dataclass."""

        def _load(value: str | None) -> Any:
            if not value:
                return None
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None

        return LLMLogEntry(
            id=row["id"],
            timestamp=_parse_dt(row["timestamp"]),
            task_type=row["task_type"],
            model=row["model"],
            account_id=row["account_id"],
            run_id=row["run_id"],
            prompt_json=_load(row["prompt_json"]),
            response_json=_load(row["response_json"]),
            tool_call_json=_load(row["tool_call_json"]),
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            duration_ms=row["duration_ms"],
            error=row["error"],
        )
