"""SQLite database schema and initialization for InboxJanitor.

This module defines the database schema with 8 tables:
- users: Owners of mailbox accounts (identity comes from the session layer)
- mailbox_accounts: Connected Gmail accounts and their auto-include senders
- messages: Mirrored Gmail message metadata plus classification/deletion state
- sender_stats: Per (account, sender) counters feeding the penalty engine
- sync_progress: Resumable sync runs (one active run per account)
- delete_batches: Audit record of one confirmed deletion
- delete_batch_items: Per-message outcome of a delete batch
- llm_request_log: Claude API call logging for debugging

The schema version is tracked with ``PRAGMA user_version``.

Usage:
    from inbox_janitor.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/janitor.db")
"""

import stat
from pathlib import Path

import aiosqlite

from inbox_janitor.core.errors import DatabaseError
from inbox_janitor.core.logging import get_logger

logger = get_logger(__name__)

# Schema version stored in PRAGMA user_version (increment when schema changes)
SCHEMA_VERSION = 1

REQUIRED_TABLES = (
    "users",
    "mailbox_accounts",
    "messages",
    "sender_stats",
    "sync_progress",
    "delete_batches",
    "delete_batch_items",
    "llm_request_log",
)

# SQL schema definition
SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS mailbox_accounts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    email_address TEXT NOT NULL,
    auto_include_senders TEXT DEFAULT '[]',  -- JSON array of sender addresses
    created_at DATETIME,
    updated_at DATETIME,
    UNIQUE (user_id, email_address)
);

CREATE INDEX IF NOT EXISTS idx_mailbox_accounts_user ON mailbox_accounts(user_id);

-- One row per (account, Gmail message id)
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    account_id TEXT NOT NULL REFERENCES mailbox_accounts(id) ON DELETE CASCADE,
    gmail_message_id TEXT NOT NULL,
    gmail_thread_id TEXT,
    sender TEXT NOT NULL,                   -- Lowercased address parsed from From
    sender_name TEXT,
    subject TEXT,
    snippet TEXT,
    internal_date DATETIME,                 -- Gmail internalDate (ISO 8601, UTC)
    labels TEXT DEFAULT '[]',               -- JSON array of Gmail label ids
    has_user_replied INTEGER DEFAULT 0,
    ai_category TEXT DEFAULT 'unknown',     -- unknown/personal/work/receipt/promo/notification/spamLike
    ai_delete_score REAL,                   -- 0.0-1.0 after penalty, NULL until classified
    ai_delete_reason TEXT,
    is_delete_candidate INTEGER DEFAULT 0,
    is_deleted_by_app INTEGER DEFAULT 0,
    is_manually_kept INTEGER DEFAULT 0,
    is_manually_deleted INTEGER DEFAULT 0,
    last_synced_at DATETIME,
    created_at DATETIME,
    updated_at DATETIME,
    UNIQUE (account_id, gmail_message_id)
);

-- Candidate selection (oldest first, excluding deleted/kept)
CREATE INDEX IF NOT EXISTS idx_messages_account_date
    ON messages(account_id, internal_date);

-- Candidate listing ordered by score
CREATE INDEX IF NOT EXISTS idx_messages_candidates
    ON messages(account_id, is_delete_candidate, ai_delete_score DESC);

CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(account_id, sender);

-- Counters are monotonically non-decreasing except on teardown
CREATE TABLE IF NOT EXISTS sender_stats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    account_id TEXT NOT NULL REFERENCES mailbox_accounts(id) ON DELETE CASCADE,
    sender TEXT NOT NULL,
    total_count INTEGER DEFAULT 0,
    deleted_by_app_count INTEGER DEFAULT 0,
    manually_deleted_count INTEGER DEFAULT 0,
    manually_kept_count INTEGER DEFAULT 0,
    last_email_at DATETIME,
    created_at DATETIME,
    updated_at DATETIME,
    UNIQUE (account_id, sender)
);

CREATE TABLE IF NOT EXISTS sync_progress (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    account_id TEXT NOT NULL REFERENCES mailbox_accounts(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'pending', -- pending/in_progress/completed/failed/timeout
    total_messages INTEGER DEFAULT 0,       -- Best-effort estimate
    processed_messages INTEGER DEFAULT 0,
    created_messages INTEGER DEFAULT 0,
    updated_messages INTEGER DEFAULT 0,
    error_count INTEGER DEFAULT 0,
    next_page_token TEXT,                   -- Token of the page being worked on (NULL = first page)
    page_offset INTEGER DEFAULT 0,          -- Index of the next id to process inside that page
    error_message TEXT,
    started_at DATETIME,
    updated_at DATETIME,
    completed_at DATETIME
);

-- At most one active (in_progress or timeout) run per account
CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_progress_one_active
    ON sync_progress(account_id) WHERE status IN ('in_progress', 'timeout');

CREATE INDEX IF NOT EXISTS idx_sync_progress_account_started
    ON sync_progress(account_id, started_at DESC);

CREATE TABLE IF NOT EXISTS delete_batches (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    account_id TEXT NOT NULL REFERENCES mailbox_accounts(id) ON DELETE CASCADE,
    total_candidates INTEGER DEFAULT 0,
    total_deleted INTEGER DEFAULT 0,
    started_at DATETIME,
    finished_at DATETIME,
    status TEXT DEFAULT 'pending',          -- pending/completed/failed
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_delete_batches_account ON delete_batches(account_id);

CREATE TABLE IF NOT EXISTS delete_batch_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    delete_batch_id TEXT NOT NULL REFERENCES delete_batches(id) ON DELETE CASCADE,
    message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    gmail_message_id TEXT,
    decision TEXT NOT NULL,                 -- deleted/skipped/error
    reason TEXT,
    created_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_delete_batch_items_batch ON delete_batch_items(delete_batch_id);

-- LLM request/response log for debugging classification issues
CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME,
    task_type TEXT,                         -- 'deletion_classification'
    model TEXT,
    account_id TEXT,
    run_id TEXT,                            -- Correlation ID of the classification run
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT                              -- NULL on success, error message on failure
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_run ON llm_request_log(run_id);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode for
    concurrent access, creates all tables and indexes, and stamps the schema
    version. A database stamped with a newer version is refused.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA user_version")
            current_version = (await cursor.fetchone())[0]
            if current_version > SCHEMA_VERSION:
                raise DatabaseError(
                    f"Database at {db_path} has schema version {current_version}, "
                    f"but this release supports up to {SCHEMA_VERSION}. "
                    "Upgrade inbox-janitor or point database.path at a new file."
                )

            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Mailbox metadata is PII: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Verify that the database has every required table.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning("missing_database_tables", missing=sorted(missing))
                return False
            return True

    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False
