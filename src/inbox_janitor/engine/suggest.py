"""Suggest engine: one deletion classification pass for an account.

Selects eligible messages, classifies them through the DeletionClassifier
and writes the results back in one transaction. Writes are last-write-wins
per message, so an interrupted pass is safe to run again.

Selection: not deleted by the app, not manually kept, and either older
than ``min_age_days`` or from an auto-include sender; oldest first, capped
at ``batch_limit``.

Usage:
    from inbox_janitor.engine.suggest import SuggestEngine

    engine = SuggestEngine(store, classifier, config)
    result = await engine.run_classification(user_id, account_id)
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from inbox_janitor.classifier.prompts import ClassificationInput
from inbox_janitor.core.errors import AccountNotFoundError, ClassificationError
from inbox_janitor.core.logging import bind_run, get_logger
from inbox_janitor.db.store import ClassificationUpdate

if TYPE_CHECKING:
    from inbox_janitor.classifier.deletion_classifier import DeletionClassifier
    from inbox_janitor.config_schema import AppConfig
    from inbox_janitor.db.store import DatabaseStore, Message

logger = get_logger(__name__)


@dataclass
class SuggestResult:
    """Result of one classification pass."""

    run_id: str
    evaluated: int = 0
    candidates: int = 0
    updated: int = 0
    failed: int = 0
    duration_ms: int = 0


class SuggestEngine:
    """Runs classification passes and persists their results."""

    def __init__(
        self,
        store: DatabaseStore,
        classifier: DeletionClassifier,
        config: AppConfig,
    ):
        self._store = store
        self._classifier = classifier
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def run_classification(self, user_id: str, account_id: str) -> SuggestResult:
        """Classify the eligible messages of one account.

        Raises:
            ClassificationError: If every classifier chunk failed (nothing written)
            AccountNotFoundError: If the account does not belong to the user
        """
        run_id = str(uuid.uuid4())
        bind_run(run_id, account_id=account_id)
        start_time = time.monotonic()
        settings = self._config.classification

        account = await self._store.get_account(account_id, user_id=user_id)
        if account is None:
            raise AccountNotFoundError(f"Mailbox account {account_id} not found for this user")

        cutoff = datetime.now(UTC) - timedelta(days=settings.min_age_days)
        messages = await self._store.select_for_classification(
            account_id,
            older_than=cutoff,
            auto_include_senders=account.auto_include_senders,
            limit=settings.batch_limit,
        )
        result = SuggestResult(run_id=run_id, evaluated=len(messages))
        if not messages:
            logger.info("classification_nothing_eligible", account_id=account_id)
            return result

        inputs = await self._build_inputs(account_id, messages)
        try:
            classifications = await self._classifier.classify(account_id, inputs)
        except ClassificationError as e:
            logger.error(
                "classification_run_failed",
                account_id=account_id,
                chunks_failed=e.chunks_failed,
                error=str(e),
            )
            raise

        updates = [
            ClassificationUpdate(
                message_id=item.id,
                ai_category=item.category,
                ai_delete_score=item.score,
                ai_delete_reason=item.reason,
                is_delete_candidate=item.score >= settings.delete_threshold,
            )
            for item in classifications
        ]
        result.updated = await self._store.save_classifications(updates)
        result.candidates = sum(1 for update in updates if update.is_delete_candidate)
        result.failed = sum(1 for item in classifications if item.failed)

        if self._config.llm_logging.enabled:
            pruned = await self._store.prune_llm_logs(self._config.llm_logging.retention_days)
            if pruned:
                logger.debug("llm_logs_pruned", count=pruned)

        result.duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "classification_run_complete",
            account_id=account_id,
            evaluated=result.evaluated,
            candidates=result.candidates,
            failed=result.failed,
            duration_ms=result.duration_ms,
        )
        return result

    async def _build_inputs(self, account_id: str, messages: list[Message]) -> list[ClassificationInput]:
        senders = list(dict.fromkeys(message.sender for message in messages))
        stats = await self._store.get_sender_stats_batch(account_id, senders)

        inputs = []
        for message in messages:
            sender_stats = stats.get(message.sender)
            inputs.append(
                ClassificationInput(
                    id=message.id,
                    sender=message.sender,
                    subject=message.subject or "",
                    snippet=message.snippet or "",
                    labels=message.labels,
                    has_user_replied=message.has_user_replied,
                    sender_frequency=sender_stats.total_count if sender_stats else 1,
                )
            )
        return inputs
