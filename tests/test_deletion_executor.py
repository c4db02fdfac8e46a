"""Tests for the deletion executor.

Covers candidate/keep symmetry, the DeleteBatch audit trail, per-item
error handling and the progress event stream.
"""

import pytest
from conftest import USER_ID, FakeMailbox, make_metadata

from inbox_janitor.classifier.sender_learning import SenderLearning
from inbox_janitor.core.errors import AccountNotFoundError, MailboxNotFoundError
from inbox_janitor.db.store import (
    ClassificationUpdate,
    DatabaseStore,
    MailboxAccount,
    Message,
    SyncedMessage,
)
from inbox_janitor.engine.deletion import (
    ALREADY_DELETED_REASON,
    KEEP_REASON,
    DeletionComplete,
    DeletionExecutor,
    DeletionProgress,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox([make_metadata(i) for i in range(5)])


@pytest.fixture
def executor(store: DatabaseStore, mailbox: FakeMailbox) -> DeletionExecutor:
    return DeletionExecutor(store, SenderLearning(store), lambda account: mailbox)


@pytest.fixture
async def candidates(store: DatabaseStore, account: MailboxAccount) -> list[Message]:
    """Five synced messages; gm-0..gm-3 flagged as delete candidates."""
    for i in range(5):
        await store.upsert_message(
            SyncedMessage(
                user_id=USER_ID,
                account_id=account.id,
                gmail_message_id=f"gm-{i}",
                sender="news@shop.example" if i % 2 == 0 else "deals@shop.example",
            )
        )
    messages = {m.gmail_message_id: m for m in await store.list_messages(account.id)}
    await store.save_classifications(
        [
            ClassificationUpdate(
                message_id=messages[f"gm-{i}"].id,
                ai_category="promo",
                ai_delete_score=0.9 - i * 0.1,
                ai_delete_reason="Promo",
                is_delete_candidate=i < 4,
            )
            for i in range(5)
        ]
    )
    return await store.get_delete_candidates(account.id)


def _ids(messages: list[Message], *gmail_ids: str) -> list[str]:
    by_gmail = {m.gmail_message_id: m.id for m in messages}
    return [by_gmail[g] for g in gmail_ids]


# ---------------------------------------------------------------------------
# Confirm delete
# ---------------------------------------------------------------------------


class TestConfirmDelete:
    async def test_selected_deleted_rest_kept(
        self,
        store: DatabaseStore,
        account: MailboxAccount,
        executor: DeletionExecutor,
        mailbox: FakeMailbox,
        candidates: list[Message],
    ) -> None:
        selected = _ids(candidates, "gm-0", "gm-1")

        summary = await executor.confirm_delete(USER_ID, account.id, selected)

        assert summary.deleted == 2
        assert summary.skipped == 2
        assert summary.errors == 0
        assert mailbox.trashed == ["gm-0", "gm-1"]

        for message_id in selected:
            message = await store.get_message(message_id)
            assert message.is_deleted_by_app is True
        for message_id in _ids(candidates, "gm-2", "gm-3"):
            message = await store.get_message(message_id)
            assert message.is_manually_kept is True
            assert message.is_delete_candidate is False

        assert await store.get_delete_candidates(account.id) == []

    async def test_batch_audit_trail(
        self,
        store: DatabaseStore,
        account: MailboxAccount,
        executor: DeletionExecutor,
        candidates: list[Message],
    ) -> None:
        summary = await executor.confirm_delete(USER_ID, account.id, _ids(candidates, "gm-0"))

        batch = await store.get_delete_batch(summary.batch_id)
        assert batch.status == "completed"
        assert batch.total_candidates == 4
        assert batch.total_deleted == 1
        assert batch.finished_at is not None

        items = await store.get_delete_batch_items(summary.batch_id)
        decisions = sorted((item.gmail_message_id, item.decision, item.reason) for item in items)
        assert decisions == [
            ("gm-0", "deleted", None),
            ("gm-1", "skipped", KEEP_REASON),
            ("gm-2", "skipped", KEEP_REASON),
            ("gm-3", "skipped", KEEP_REASON),
        ]

    async def test_decisions_feed_sender_learning(
        self,
        store: DatabaseStore,
        account: MailboxAccount,
        executor: DeletionExecutor,
        candidates: list[Message],
    ) -> None:
        await executor.confirm_delete(USER_ID, account.id, _ids(candidates, "gm-0"))

        news = await store.get_sender_stats(account.id, "news@shop.example")
        deals = await store.get_sender_stats(account.id, "deals@shop.example")
        assert news.deleted_by_app_count == 1
        assert news.manually_kept_count == 1  # gm-2
        assert deals.manually_kept_count == 2  # gm-1, gm-3

    async def test_trash_error_recorded_and_batch_continues(
        self,
        store: DatabaseStore,
        account: MailboxAccount,
        executor: DeletionExecutor,
        mailbox: FakeMailbox,
        candidates: list[Message],
    ) -> None:
        mailbox.trash_errors["gm-1"] = MailboxNotFoundError("gone", status_code=404)
        selected = _ids(candidates, "gm-0", "gm-1", "gm-2", "gm-3")

        summary = await executor.confirm_delete(USER_ID, account.id, selected)

        assert summary.deleted == 3
        assert summary.errors == 1
        assert summary.error_messages == ["gm-1: gone"]
        message = await store.get_message(_ids(candidates, "gm-1")[0])
        assert message.is_deleted_by_app is False

        batch = await store.get_delete_batch(summary.batch_id)
        assert batch.status == "completed"
        assert batch.error_message == "gm-1: gone"
        items = {item.gmail_message_id: item for item in await store.get_delete_batch_items(batch.id)}
        assert items["gm-1"].decision == "error"

    async def test_all_errors_fail_batch(
        self,
        store: DatabaseStore,
        account: MailboxAccount,
        executor: DeletionExecutor,
        mailbox: FakeMailbox,
        candidates: list[Message],
    ) -> None:
        for gmail_id in ("gm-0", "gm-1", "gm-2", "gm-3"):
            mailbox.trash_errors[gmail_id] = MailboxNotFoundError("gone", status_code=404)

        summary = await executor.confirm_delete(
            USER_ID, account.id, _ids(candidates, "gm-0", "gm-1", "gm-2", "gm-3")
        )

        assert summary.deleted == 0
        assert summary.errors == 4
        batch = await store.get_delete_batch(summary.batch_id)
        assert batch.status == "failed"

    async def test_unknown_and_duplicate_ids(
        self,
        store: DatabaseStore,
        account: MailboxAccount,
        executor: DeletionExecutor,
        mailbox: FakeMailbox,
        candidates: list[Message],
    ) -> None:
        [first] = _ids(candidates, "gm-0")

        summary = await executor.confirm_delete(USER_ID, account.id, [first, first, "missing"])

        assert summary.deleted == 1
        assert summary.errors == 1
        assert summary.error_messages == ["Message missing not found"]
        assert mailbox.trashed == ["gm-0"]

    async def test_already_deleted_is_skipped(
        self,
        store: DatabaseStore,
        account: MailboxAccount,
        executor: DeletionExecutor,
        mailbox: FakeMailbox,
        candidates: list[Message],
    ) -> None:
        [first] = _ids(candidates, "gm-0")
        await store.mark_message_deleted(first)

        summary = await executor.confirm_delete(USER_ID, account.id, [first])

        assert summary.deleted == 0
        assert mailbox.trashed == []
        items = await store.get_delete_batch_items(summary.batch_id)
        assert ("gm-0", "skipped", ALREADY_DELETED_REASON) in [
            (item.gmail_message_id, item.decision, item.reason) for item in items
        ]

    async def test_foreign_account_rejected(
        self, account: MailboxAccount, executor: DeletionExecutor
    ) -> None:
        with pytest.raises(AccountNotFoundError):
            await executor.confirm_delete("someone-else", account.id, [])


class TestProgressStream:
    async def test_progress_after_every_selected_id(
        self,
        account: MailboxAccount,
        executor: DeletionExecutor,
        mailbox: FakeMailbox,
        candidates: list[Message],
    ) -> None:
        mailbox.trash_errors["gm-1"] = MailboxNotFoundError("gone", status_code=404)
        selected = _ids(candidates, "gm-0", "gm-1", "gm-2")

        events = [e async for e in executor.iter_confirm_delete(USER_ID, account.id, selected)]

        progress = events[:-1]
        assert all(isinstance(e, DeletionProgress) for e in progress)
        assert [(p.deleted, p.errors, p.remaining) for p in progress] == [
            (1, 0, 2),
            (1, 1, 1),
            (2, 1, 0),
        ]
        assert all(p.total == 3 for p in progress)

        final = events[-1]
        assert isinstance(final, DeletionComplete)
        assert final.to_dict()["type"] == "complete"
        assert progress[0].to_dict() == {
            "type": "progress",
            "deleted": 1,
            "total": 3,
            "remaining": 2,
            "errors": 0,
        }


class TestManualDelete:
    async def test_manual_delete_records_manual_counter(
        self,
        store: DatabaseStore,
        account: MailboxAccount,
        executor: DeletionExecutor,
        mailbox: FakeMailbox,
        candidates: list[Message],
    ) -> None:
        messages = await store.list_messages(account.id)
        [non_candidate] = [m.id for m in messages if m.gmail_message_id == "gm-4"]

        summary = await executor.manual_delete(USER_ID, account.id, [non_candidate])

        assert summary.deleted == 1
        assert summary.batch_id is None
        assert mailbox.trashed == ["gm-4"]
        stats = await store.get_sender_stats(account.id, "news@shop.example")
        assert stats.manually_deleted_count == 1
        assert stats.deleted_by_app_count == 0

        # Other candidates are untouched
        assert len(await store.get_delete_candidates(account.id)) == 4
