"""Mailbox processing engines.

This package provides the core processing engines:
- Sync engine for resumable, time-budgeted Gmail ingestion
- Suggest engine for deletion classification passes
- Deletion executor for confirmed and manual deletions
"""

from inbox_janitor.engine.deletion import (
    DeletionComplete,
    DeletionEvent,
    DeletionExecutor,
    DeletionProgress,
)
from inbox_janitor.engine.suggest import SuggestEngine, SuggestResult
from inbox_janitor.engine.sync import MailboxFactory, SyncEngine, SyncStepResult

__all__ = [
    # Deletion
    "DeletionComplete",
    "DeletionEvent",
    "DeletionExecutor",
    "DeletionProgress",
    # Suggest
    "SuggestEngine",
    "SuggestResult",
    # Sync
    "MailboxFactory",
    "SyncEngine",
    "SyncStepResult",
]
