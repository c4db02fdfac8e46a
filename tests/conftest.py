"""Pytest fixtures and configuration for InboxJanitor tests.

Provides common fixtures for configuration, database, and a fake Gmail
mailbox adapter.
"""

import os
from collections.abc import Callable, Generator, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from cryptography.fernet import Fernet

from inbox_janitor.auth.google_auth import TOKEN_KEY_ENV
from inbox_janitor.config import reset_config
from inbox_janitor.config_schema import AppConfig
from inbox_janitor.db.store import DatabaseStore, MailboxAccount
from inbox_janitor.gmail.messages import MessageMetadata, MessagePage

USER_ID = "user-1"
OWNER_ADDRESS = "owner@example.com"


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def token_key(monkeypatch: pytest.MonkeyPatch) -> str:
    """A fresh refresh-token encryption key in the environment."""
    key = Fernet.generate_key().decode()
    monkeypatch.setenv(TOKEN_KEY_ENV, key)
    return key


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

gmail:
  client_id: "test-client-id"
  client_secret: "test-secret"

sync:
  lookback_days: 90
  chunk_size: 10

classification:
  chunk_size: 50
  delete_threshold: 0.7
"""


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "database": {"path": str(data_dir / "janitor.db")},
        "gmail": {
            "client_id": "test-client-id",
            "client_secret": "test-secret",
            "token_dir": str(data_dir / "tokens"),
        },
        "sync": {"lookback_days": 90, "chunk_size": 10},
        "classification": {"chunk_size": 50, "delete_threshold": 0.7},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the JANITOR_CONFIG_PATH environment variable."""
    old_value = os.environ.get("JANITOR_CONFIG_PATH")
    os.environ["JANITOR_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["JANITOR_CONFIG_PATH"]
    else:
        os.environ["JANITOR_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Create and initialize a DatabaseStore."""
    store = DatabaseStore(data_dir / "test.db")
    await store.initialize()
    return store


@pytest.fixture
async def account(store: DatabaseStore) -> MailboxAccount:
    """A connected mailbox account owned by USER_ID."""
    return await store.create_account(USER_ID, OWNER_ADDRESS)


# ---------------------------------------------------------------------------
# Fake mailbox adapter
# ---------------------------------------------------------------------------


def make_metadata(
    index: int,
    sender: str = "news@shop.example",
    days_old: int = 30,
    thread_id: str | None = None,
    labels: list[str] | None = None,
) -> MessageMetadata:
    """Metadata for a fake Gmail message with id ``gm-<index>``."""
    internal_date = datetime.now(UTC) - timedelta(days=days_old)
    return MessageMetadata(
        id=f"gm-{index}",
        thread_id=thread_id or f"th-{index}",
        from_header=f"Sender {index} <{sender}>",
        subject=f"Subject {index}",
        snippet=f"Snippet for message {index}",
        internal_date_ms=int(internal_date.timestamp() * 1000),
        labels=labels if labels is not None else ["INBOX", "UNREAD"],
    )


class FakeMailbox:
    """In-memory stand-in for MessageManager.

    Messages are served in list order (put the newest first, as Gmail
    does) after applying the ``after:``/``before:`` terms of the query.
    Pages are served ``page_size`` ids at a time; page tokens are the
    offset of the next page as a string.
    """

    def __init__(
        self,
        messages: list[MessageMetadata],
        page_size: int = 500,
        replied_threads: set[str] | None = None,
    ):
        self.messages = messages
        self.by_id = {message.id: message for message in messages}
        self.page_size = page_size
        self.replied_threads = replied_threads or set()
        self.list_error: Exception | None = None
        self.metadata_errors: dict[str, Exception] = {}
        self.trash_errors: dict[str, Exception] = {}
        self.list_calls: list[tuple[str, str | None]] = []
        self.fetched: list[str] = []
        self.trashed: list[str] = []
        self.time_limits: list[float] = []
        self.on_fetch: Callable[[str], None] | None = None

    def add_message(self, message: MessageMetadata) -> None:
        """A new arrival, listed ahead of everything already in the mailbox."""
        self.messages.insert(0, message)
        self.by_id[message.id] = message

    @contextmanager
    def time_limit(self, seconds: float) -> Iterator[None]:
        self.time_limits.append(seconds)
        yield

    @staticmethod
    def _matches(message: MessageMetadata, query: str) -> bool:
        seconds = message.internal_date_ms / 1000
        for term in query.split():
            name, _, value = term.partition(":")
            if name == "after" and not seconds > int(value):
                return False
            if name == "before" and not seconds < int(value):
                return False
        return True

    def list_message_ids(
        self,
        query: str,
        page_size: int = 500,
        page_token: str | None = None,
    ) -> MessagePage:
        self.list_calls.append((query, page_token))
        if self.list_error is not None:
            raise self.list_error
        matching = [message for message in self.messages if self._matches(message, query)]
        start = int(page_token) if page_token else 0
        end = start + min(page_size, self.page_size)
        ids = [message.id for message in matching[start:end]]
        return MessagePage(
            ids=ids,
            next_page_token=str(end) if end < len(matching) else None,
            result_size_estimate=len(matching),
        )

    def get_message_metadata(self, message_id: str) -> MessageMetadata:
        self.fetched.append(message_id)
        if self.on_fetch is not None:
            self.on_fetch(message_id)
        if message_id in self.metadata_errors:
            raise self.metadata_errors[message_id]
        return self.by_id[message_id]

    def get_thread_reply_status(self, thread_id: str, owner_address: str) -> bool:
        return thread_id in self.replied_threads

    def trash(self, message_id: str) -> None:
        if message_id in self.trash_errors:
            raise self.trash_errors[message_id]
        self.trashed.append(message_id)


@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    """Mailbox with 25 messages from three senders."""
    senders = ["news@shop.example", "friend@mail.example", "alerts@bank.example"]
    return FakeMailbox([make_metadata(i, sender=senders[i % 3]) for i in range(25)])
