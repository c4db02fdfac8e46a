"""Sender learning: records user decisions and turns them into score penalties.

Every confirmed deletion, manual deletion and keep increments a counter on
the sender's stats row. When the classifier scores a message, the sender's
keep ratio decides a multiplier for the model's delete score:

    keep_ratio = kept / (kept + deleted_by_app + manually_deleted)

    no actions          -> 1.0
    keep_ratio >= 0.8   -> 0.5
    keep_ratio >= 0.5   -> 0.75
    otherwise           -> 1.0

The steps are deliberate thresholds, not an interpolation.

Usage:
    from inbox_janitor.classifier.sender_learning import SenderLearning

    learning = SenderLearning(store)
    await learning.record_keep(user_id, message_id, "news@example.com")
    penalties = await learning.get_batch_penalties(account_id, senders)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from inbox_janitor.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_janitor.db.store import DatabaseStore, SenderCounter, SenderStats

logger = get_logger(__name__)

NO_PENALTY = 1.0
MOSTLY_KEPT_PENALTY = 0.5
OFTEN_KEPT_PENALTY = 0.75

MOSTLY_KEPT_RATIO = 0.8
OFTEN_KEPT_RATIO = 0.5


def calculate_penalty(
    manually_kept: int,
    deleted_by_app: int,
    manually_deleted: int,
) -> float:
    """Delete-score multiplier for a sender's recorded decisions."""
    total_actions = manually_kept + deleted_by_app + manually_deleted
    if total_actions == 0:
        return NO_PENALTY

    keep_ratio = manually_kept / total_actions
    if keep_ratio >= MOSTLY_KEPT_RATIO:
        return MOSTLY_KEPT_PENALTY
    if keep_ratio >= OFTEN_KEPT_RATIO:
        return OFTEN_KEPT_PENALTY
    return NO_PENALTY


def penalty_for_stats(stats: SenderStats | None) -> float:
    if stats is None:
        return NO_PENALTY
    return calculate_penalty(
        stats.manually_kept_count,
        stats.deleted_by_app_count,
        stats.manually_deleted_count,
    )


class SenderLearning:
    """Records user decisions per sender and computes penalties."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def record_deletion(self, user_id: str, message_id: str, sender: str) -> None:
        """User confirmed deletion of a suggested message."""
        await self._record(user_id, message_id, sender, "deleted_by_app_count")

    async def record_manual_deletion(self, user_id: str, message_id: str, sender: str) -> None:
        """User deleted a message on their own (messages page)."""
        await self._record(user_id, message_id, sender, "manually_deleted_count")

    async def record_keep(self, user_id: str, message_id: str, sender: str) -> None:
        """User deselected a suggested message, keeping it."""
        await self._record(user_id, message_id, sender, "manually_kept_count")

    async def _record(
        self,
        user_id: str,
        message_id: str,
        sender: str,
        counter: SenderCounter,
    ) -> None:
        # The message row tells us which account the decision belongs to
        message = await self._store.get_message(message_id)
        if message is None:
            logger.warning("learning_message_missing", message_id=message_id, counter=counter)
            return

        await self._store.increment_sender_counter(user_id, message.account_id, sender, counter)
        logger.debug("sender_decision_recorded", sender=sender, counter=counter)

    async def get_penalty(self, account_id: str, sender: str) -> float:
        stats = await self._store.get_sender_stats(account_id, sender)
        return penalty_for_stats(stats)

    async def get_batch_penalties(self, account_id: str, senders: list[str]) -> dict[str, float]:
        """Penalties for many senders with one query.

        Every requested sender is present in the result; senders without
        stats get 1.0, same as ``get_penalty``.
        """
        stats = await self._store.get_sender_stats_batch(account_id, senders)
        return {sender: penalty_for_stats(stats.get(sender)) for sender in senders}
