"""Deletion executor: trashes confirmed messages and records decisions.

``iter_confirm_delete`` works over the account's full candidate set:
selected ids are trashed, every other current candidate is an implicit
keep. Each step is appended to a DeleteBatch audit record, and a progress
event is yielded after every selected id so the web layer can stream it.

Per-item failures never abort the batch. The batch ends ``failed`` only
when there were errors and nothing was deleted.

Usage:
    from inbox_janitor.engine.deletion import DeletionExecutor

    executor = DeletionExecutor(store, learning, mailbox_factory)
    async for event in executor.iter_confirm_delete(user_id, account_id, ids):
        print(event.to_dict())

    # Non-streaming callers
    summary = await executor.confirm_delete(user_id, account_id, ids)
"""

from __future__ import annotations

import dataclasses
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from inbox_janitor.core.errors import AccountNotFoundError, MailboxError
from inbox_janitor.core.logging import bind_run, get_logger

if TYPE_CHECKING:
    from inbox_janitor.classifier.sender_learning import SenderLearning
    from inbox_janitor.db.store import DatabaseStore, MailboxAccount, Message
    from inbox_janitor.engine.sync import MailboxFactory
    from inbox_janitor.gmail.messages import MessageManager

logger = get_logger(__name__)

KEEP_REASON = "User deselected"
ALREADY_DELETED_REASON = "Already deleted"


@dataclass
class DeletionProgress:
    """Counters after one processed message."""

    deleted: int
    total: int
    remaining: int
    errors: int

    event = "progress"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event, **dataclasses.asdict(self)}


@dataclass
class DeletionComplete:
    """Final outcome of a deletion operation."""

    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)
    batch_id: str | None = None

    event = "complete"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event, **dataclasses.asdict(self)}


DeletionEvent = DeletionProgress | DeletionComplete


class DeletionExecutor:
    """Runs confirmed and manual deletions for mailbox accounts.

    Attributes:
        _store: DatabaseStore for messages and delete batches
        _learning: SenderLearning that records each decision
        _mailbox_factory: Builds the mailbox adapter for an account
    """

    def __init__(
        self,
        store: DatabaseStore,
        learning: SenderLearning,
        mailbox_factory: MailboxFactory,
    ):
        self._store = store
        self._learning = learning
        self._mailbox_factory = mailbox_factory

    async def iter_confirm_delete(
        self,
        user_id: str,
        account_id: str,
        message_ids: list[str],
    ) -> AsyncIterator[DeletionEvent]:
        """Trash the selected candidates and keep the rest.

        Yields a DeletionProgress after every selected id, then one
        DeletionComplete.

        Raises:
            AccountNotFoundError: If the account does not belong to the user
        """
        account = await self._get_account(user_id, account_id)
        selected = list(dict.fromkeys(message_ids))
        selected_set = set(selected)

        candidates = await self._store.get_delete_candidates(account_id)
        batch = await self._store.create_delete_batch(user_id, account_id, len(candidates))
        bind_run(batch.id, account_id=account_id)
        logger.info(
            "delete_batch_started",
            account_id=account_id,
            selected=len(selected),
            candidates=len(candidates),
        )

        summary = DeletionComplete(batch_id=batch.id)
        try:
            messages = await self._store.get_messages_batch(account_id, selected)
            mailbox = self._mailbox_factory(account)

            for message_id in selected:
                await self._delete_one(
                    user_id,
                    mailbox,
                    message_id,
                    messages.get(message_id),
                    summary,
                    batch_id=batch.id,
                    manual=False,
                )
                yield _progress(summary, len(selected))

            for candidate in candidates:
                if candidate.id in selected_set:
                    continue
                await self._store.mark_message_kept(candidate.id)
                await self._learning.record_keep(user_id, candidate.id, candidate.sender)
                await self._store.add_delete_batch_item(
                    batch.id,
                    candidate.id,
                    candidate.gmail_message_id,
                    "skipped",
                    KEEP_REASON,
                )
                summary.skipped += 1
        except Exception as e:
            logger.error("delete_batch_failed", error=str(e), error_type=type(e).__name__)
            await self._store.finalize_delete_batch(
                batch.id, "failed", summary.deleted, error_message=str(e)
            )
            raise

        status = "failed" if summary.errors > 0 and summary.deleted == 0 else "completed"
        await self._store.finalize_delete_batch(
            batch.id,
            status,
            summary.deleted,
            error_message="; ".join(summary.error_messages) or None,
        )
        logger.info(
            "delete_batch_complete",
            status=status,
            deleted=summary.deleted,
            skipped=summary.skipped,
            errors=summary.errors,
        )
        yield summary

    async def confirm_delete(
        self,
        user_id: str,
        account_id: str,
        message_ids: list[str],
    ) -> DeletionComplete:
        return await _drain(self.iter_confirm_delete(user_id, account_id, message_ids))

    async def iter_manual_delete(
        self,
        user_id: str,
        account_id: str,
        message_ids: list[str],
    ) -> AsyncIterator[DeletionEvent]:
        """Trash arbitrary messages picked by the user.

        No delete batch and no keep bookkeeping; each deletion counts as
        a manual deletion for the sender.
        """
        account = await self._get_account(user_id, account_id)
        selected = list(dict.fromkeys(message_ids))
        messages = await self._store.get_messages_batch(account_id, selected)
        mailbox = self._mailbox_factory(account)

        summary = DeletionComplete()
        for message_id in selected:
            await self._delete_one(
                user_id,
                mailbox,
                message_id,
                messages.get(message_id),
                summary,
                manual=True,
            )
            yield _progress(summary, len(selected))

        logger.info(
            "manual_delete_complete",
            account_id=account_id,
            deleted=summary.deleted,
            skipped=summary.skipped,
            errors=summary.errors,
        )
        yield summary

    async def manual_delete(
        self,
        user_id: str,
        account_id: str,
        message_ids: list[str],
    ) -> DeletionComplete:
        return await _drain(self.iter_manual_delete(user_id, account_id, message_ids))

    async def _get_account(self, user_id: str, account_id: str) -> MailboxAccount:
        account = await self._store.get_account(account_id, user_id=user_id)
        if account is None:
            raise AccountNotFoundError(f"Mailbox account {account_id} not found for this user")
        return account

    async def _delete_one(
        self,
        user_id: str,
        mailbox: MessageManager,
        message_id: str,
        message: Message | None,
        summary: DeletionComplete,
        batch_id: str | None = None,
        manual: bool = False,
    ) -> None:
        """Trash one message and record the outcome on the summary."""
        if message is None:
            # Not in this account: no batch item, it must reference a message
            summary.errors += 1
            summary.error_messages.append(f"Message {message_id} not found")
            logger.warning("delete_message_not_found", message_id=message_id)
            return

        if message.is_deleted_by_app:
            summary.skipped += 1
            if batch_id:
                await self._store.add_delete_batch_item(
                    batch_id, message.id, message.gmail_message_id, "skipped", ALREADY_DELETED_REASON
                )
            return

        try:
            mailbox.trash(message.gmail_message_id)
        except MailboxError as e:
            summary.errors += 1
            summary.error_messages.append(f"{message.gmail_message_id}: {e}")
            logger.warning(
                "delete_item_failed",
                message_id=message.id,
                gmail_message_id=message.gmail_message_id,
                kind=e.kind,
                error=str(e),
            )
            if batch_id:
                await self._store.add_delete_batch_item(
                    batch_id, message.id, message.gmail_message_id, "error", str(e)
                )
            return

        await self._store.mark_message_deleted(message.id)
        if manual:
            await self._learning.record_manual_deletion(user_id, message.id, message.sender)
        else:
            await self._learning.record_deletion(user_id, message.id, message.sender)
        if batch_id:
            await self._store.add_delete_batch_item(
                batch_id, message.id, message.gmail_message_id, "deleted"
            )
        summary.deleted += 1


def _progress(summary: DeletionComplete, total: int) -> DeletionProgress:
    done = summary.deleted + summary.skipped + summary.errors
    return DeletionProgress(
        deleted=summary.deleted,
        total=total,
        remaining=max(0, total - done),
        errors=summary.errors,
    )


async def _drain(events: AsyncIterator[DeletionEvent]) -> DeletionComplete:
    summary = DeletionComplete()
    async for event in events:
        if isinstance(event, DeletionComplete):
            summary = event
    return summary
