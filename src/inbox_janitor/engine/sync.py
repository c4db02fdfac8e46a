"""Resumable, time-budgeted Gmail sync engine.

One call to ``run_sync`` performs a single bounded step of a sync run:
it works on at most one page of message ids, checkpoints after every
sub-chunk, and returns before the working budget runs out. Callers (the
CLI loop, the web client, or the optional scheduler) call again while
``has_more`` is True.

Run state machine:
    (none) -> in_progress -> completed
    in_progress -> timeout -> in_progress (resumed) -> completed
    in_progress -> failed   (terminal)

Resumption point: ``next_page_token`` is the token of the page being
worked on and ``page_offset`` the index of the next id inside it, so no
message is processed twice and none is skipped across calls.

Usage:
    from inbox_janitor.engine.sync import SyncEngine

    engine = SyncEngine(store, mailbox_factory, config)
    result = await engine.run_sync(user_id, account_id)
    while result.has_more:
        result = await engine.run_sync(user_id, account_id)
"""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from inbox_janitor.core.errors import (
    AccountNotFoundError,
    DatabaseError,
    DeadlineExceededError,
    JanitorError,
    MailboxAuthError,
    MailboxError,
    MailboxFeatureDisabledError,
    MailboxQuotaError,
    MailboxTimeoutError,
    SyncError,
)
from inbox_janitor.core.logging import bind_run, get_logger
from inbox_janitor.db.store import SyncCheckpoint, SyncedMessage
from inbox_janitor.gmail.messages import parse_sender

if TYPE_CHECKING:
    from inbox_janitor.config_schema import AppConfig
    from inbox_janitor.db.store import DatabaseStore, MailboxAccount, SyncProgress, SyncStatus
    from inbox_janitor.gmail.messages import MessageManager

logger = get_logger(__name__)

MailboxFactory = Callable[["MailboxAccount"], "MessageManager"]

# Errors the user or a later retry must resolve; the run stays resumable
RESUMABLE_MAILBOX_ERRORS = (MailboxAuthError, MailboxFeatureDisabledError, MailboxQuotaError)

RESTART_MESSAGE = "Superseded by a restart"


@dataclass
class SyncStepResult:
    """Outcome of one sync step."""

    run_id: str
    status: SyncStatus
    has_more: bool
    processed: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    total: int = 0
    error_kind: str | None = None
    error_message: str | None = None

    @property
    def progress_percent(self) -> int:
        if self.status == "completed":
            return 100
        if self.total <= 0:
            return 0
        return min(99, int(self.processed * 100 / self.total))


class SyncEngine:
    """Drives sync runs for mailbox accounts.

    Attributes:
        _store: DatabaseStore for messages, sender stats and run state
        _mailbox_factory: Builds the mailbox adapter for an account
        _config: Application configuration
        _clock: Monotonic clock used for the time budget
    """

    def __init__(
        self,
        store: DatabaseStore,
        mailbox_factory: MailboxFactory,
        config: AppConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._mailbox_factory = mailbox_factory
        self._config = config
        self._clock = clock

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def run_sync(
        self,
        user_id: str,
        account_id: str,
        restart: bool = False,
        time_budget_seconds: float | None = None,
    ) -> SyncStepResult:
        """Run one bounded sync step for an account.

        Args:
            user_id: Owner of the account
            account_id: Mailbox account to sync
            restart: Fail the active run (if any) and start a fresh one
            time_budget_seconds: Working budget override (defaults to
                time_budget_seconds - safety_margin_seconds from config)

        Returns:
            SyncStepResult; status "timeout" when the budget or the
            transport ran out (call again to resume)

        Raises:
            MailboxAuthError, MailboxFeatureDisabledError, MailboxQuotaError:
                Run left resumable, user action or a later retry needed
            AccountNotFoundError: If the account does not belong to the user
            DatabaseError: Progress checkpointed where possible, run left resumable
            SyncError: Unexpected failure, run marked failed
        """
        start = self._clock()
        budget = (
            time_budget_seconds
            if time_budget_seconds is not None
            else self._config.sync.effective_budget_seconds
        )

        account = await self._store.get_account(account_id, user_id=user_id)
        if account is None:
            raise AccountNotFoundError(f"Mailbox account {account_id} not found for this user")

        if restart:
            active = await self._store.get_active_sync(account_id)
            if active is not None:
                await self._store.fail_sync_run(active.id, RESTART_MESSAGE)
                logger.info("sync_run_superseded", run_id=active.id, account_id=account_id)

        run, created = await self._store.start_sync_run(user_id, account_id)
        bind_run(run.id, account_id=account_id)
        logger.info(
            "sync_step_started",
            account_id=account_id,
            resumed=not created,
            processed=run.processed_messages,
            page_offset=run.page_offset,
        )

        state = dataclasses.replace(run)
        try:
            mailbox = self._mailbox_factory(account)
            result = await self._step(state, account, mailbox, start, budget)
        except RESUMABLE_MAILBOX_ERRORS as e:
            logger.warning("sync_step_interrupted", kind=e.kind, error=str(e))
            await self._checkpoint(state, "in_progress", error_message=str(e))
            raise
        except DeadlineExceededError as e:
            logger.info(
                "sync_budget_exhausted", processed=state.processed_messages, error=str(e)
            )
            await self._checkpoint(state, "timeout")
            return self._result(state, "timeout", has_more=True)
        except MailboxTimeoutError as e:
            logger.warning("sync_step_transport_timeout", error=str(e))
            await self._checkpoint(state, "timeout", error_message=str(e))
            return self._result(state, "timeout", has_more=True, error_kind=e.kind, error_message=str(e))
        except DatabaseError as e:
            logger.error("sync_step_database_error", error=str(e))
            try:
                await self._checkpoint(state, "in_progress", error_message=str(e))
            except DatabaseError as checkpoint_error:
                logger.warning("sync_checkpoint_failed", error=str(checkpoint_error))
            raise
        except Exception as e:
            logger.error("sync_run_failed", error=str(e), error_type=type(e).__name__)
            message = f"Sync failed: {e}"
            await self._store.fail_sync_run(run.id, message)
            raise SyncError(message, run_id=run.id) from e

        logger.info(
            "sync_step_complete",
            status=result.status,
            has_more=result.has_more,
            processed=result.processed,
            created=result.created,
            updated=result.updated,
            errors=result.errors,
            duration_ms=int((self._clock() - start) * 1000),
        )
        return result

    async def resume_active_runs(self) -> list[SyncStepResult]:
        """Step every account that has an active run once.

        Failures are logged per account so one broken mailbox does not
        stop the others.
        """
        results = []
        for run in await self._store.list_active_syncs():
            try:
                results.append(await self.run_sync(run.user_id, run.account_id))
            except JanitorError as e:
                logger.warning(
                    "sync_resume_failed",
                    account_id=run.account_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return results

    async def _step(
        self,
        state: SyncProgress,
        account: MailboxAccount,
        mailbox: MessageManager,
        start: float,
        budget: float,
    ) -> SyncStepResult:
        sync_config = self._config.sync
        started_at = state.started_at or datetime.now(UTC)
        cutoff = started_at - timedelta(days=sync_config.lookback_days)
        # The upper bound freezes the listing at run start so new arrivals do
        # not shift page_offset between calls
        query = f"after:{int(cutoff.timestamp())} before:{int(started_at.timestamp())}"

        page = mailbox.list_message_ids(
            query,
            page_size=sync_config.page_size,
            page_token=state.next_page_token,
        )
        remaining = max(0, len(page.ids) - state.page_offset)
        state.total_messages = max(
            state.total_messages,
            state.processed_messages + remaining,
            page.result_size_estimate,
        )

        since_checkpoint = 0
        while state.page_offset < len(page.ids):
            time_left = budget - (self._clock() - start)
            if time_left <= 0:
                logger.info("sync_budget_exhausted", processed=state.processed_messages)
                await self._checkpoint(state, "timeout")
                return self._result(state, "timeout", has_more=True)

            with mailbox.time_limit(time_left):
                await self._process_item(
                    state, account, mailbox, page.ids[state.page_offset], start, budget
                )
            state.page_offset += 1
            since_checkpoint += 1

            if since_checkpoint >= sync_config.chunk_size:
                await self._checkpoint(state, "in_progress")
                since_checkpoint = 0

        if page.next_page_token:
            state.next_page_token = page.next_page_token
            state.page_offset = 0
            await self._checkpoint(state, "in_progress")
            return self._result(state, "in_progress", has_more=True)

        state.next_page_token = None
        state.page_offset = 0
        state.total_messages = state.processed_messages
        await self._checkpoint(state, "completed", completed=True)
        return self._result(state, "completed", has_more=False)

    async def _process_item(
        self,
        state: SyncProgress,
        account: MailboxAccount,
        mailbox: MessageManager,
        message_id: str,
        start: float,
        budget: float,
    ) -> None:
        """Fetch and upsert one message; failures count as errors.

        An item the budget cannot finish is abandoned uncounted and
        fetched again by the next step.
        """
        state.processed_messages += 1
        try:
            metadata = mailbox.get_message_metadata(message_id)
            if self._clock() - start >= budget:
                raise DeadlineExceededError(
                    f"Sync step budget of {budget:.0f}s ran out while reading {message_id}."
                )
            has_replied = False
            if metadata.thread_id:
                has_replied = mailbox.get_thread_reply_status(
                    metadata.thread_id, account.email_address
                )

            sender, sender_name = parse_sender(metadata.from_header)
            internal_date = (
                datetime.fromtimestamp(metadata.internal_date_ms / 1000, UTC)
                if metadata.internal_date_ms
                else None
            )
            created = await self._store.upsert_message(
                SyncedMessage(
                    user_id=account.user_id,
                    account_id=account.id,
                    gmail_message_id=message_id,
                    sender=sender,
                    gmail_thread_id=metadata.thread_id,
                    sender_name=sender_name,
                    subject=metadata.subject,
                    snippet=metadata.snippet,
                    internal_date=internal_date,
                    labels=metadata.labels,
                    has_user_replied=has_replied,
                )
            )
        except (*RESUMABLE_MAILBOX_ERRORS, MailboxTimeoutError, DatabaseError):
            state.processed_messages -= 1
            raise
        except MailboxError as e:
            state.error_count += 1
            logger.warning(
                "sync_item_failed", gmail_message_id=message_id, kind=e.kind, error=str(e)
            )
            return
        except Exception as e:
            state.error_count += 1
            logger.warning(
                "sync_item_failed",
                gmail_message_id=message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        if created:
            state.created_messages += 1
        else:
            state.updated_messages += 1

    async def _checkpoint(
        self,
        state: SyncProgress,
        status: SyncStatus,
        error_message: str | None = None,
        completed: bool = False,
    ) -> None:
        state.status = status
        await self._store.save_sync_checkpoint(
            state.id,
            SyncCheckpoint(
                status=status,
                total_messages=state.total_messages,
                processed_messages=state.processed_messages,
                created_messages=state.created_messages,
                updated_messages=state.updated_messages,
                error_count=state.error_count,
                next_page_token=state.next_page_token,
                page_offset=state.page_offset,
                error_message=error_message,
                completed=completed,
            ),
        )

    def _result(
        self,
        state: SyncProgress,
        status: SyncStatus,
        has_more: bool,
        error_kind: str | None = None,
        error_message: str | None = None,
    ) -> SyncStepResult:
        return SyncStepResult(
            run_id=state.id,
            status=status,
            has_more=has_more,
            processed=state.processed_messages,
            created=state.created_messages,
            updated=state.updated_messages,
            errors=state.error_count,
            total=state.total_messages,
            error_kind=error_kind,
            error_message=error_message,
        )
