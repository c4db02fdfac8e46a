"""Deletion classifier: chunking, concurrent dispatch and penalty merge.

Splits the selected messages into chunks, sends every chunk to the
provider at once, and merges each raw model score with the sender's
learned penalty. Every input message gets exactly one result: a failed
chunk degrades to the default "unknown / 0 / Classification failed"
result for its messages instead of failing the run.

Usage:
    from inbox_janitor.classifier.deletion_classifier import DeletionClassifier

    classifier = DeletionClassifier(provider, learning, config)
    results = await classifier.classify(account_id, inputs)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from inbox_janitor.classifier.categories import Category
from inbox_janitor.classifier.prompts import (
    ClassificationInput,
    build_message_payload,
    build_user_message,
)
from inbox_janitor.core.errors import ClassificationError
from inbox_janitor.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_janitor.classifier.provider import ClaudeDeletionProvider, RawClassification
    from inbox_janitor.classifier.sender_learning import SenderLearning
    from inbox_janitor.config_schema import AppConfig

logger = get_logger(__name__)

FAILED_REASON = "Classification failed"
ADJUSTED_NOTE = " (Adjusted based on user's keep pattern for this sender)"


@dataclass(frozen=True, slots=True)
class DeletionClassification:
    """Final classification for one message."""

    id: str
    category: Category
    score: float
    reason: str
    failed: bool = False


def failed_result(message_id: str) -> DeletionClassification:
    return DeletionClassification(
        id=message_id,
        category="unknown",
        score=0.0,
        reason=FAILED_REASON,
        failed=True,
    )


def adjust_score(raw_score: float, penalty: float) -> float:
    """Apply the sender penalty and clamp into [0, 1]."""
    return max(0.0, min(1.0, raw_score * penalty))


T = TypeVar("T")


def chunked(items: list[T], size: int) -> list[list[T]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class DeletionClassifier:
    """Scores messages for deletion with concurrent per-chunk requests."""

    def __init__(
        self,
        provider: ClaudeDeletionProvider,
        learning: SenderLearning,
        config: AppConfig,
    ):
        self._provider = provider
        self._learning = learning
        self._config = config

    async def classify(
        self,
        account_id: str,
        inputs: list[ClassificationInput],
    ) -> list[DeletionClassification]:
        """Classify all inputs, one result per input, in input order.

        Raises:
            ClassificationError: If every chunk failed
        """
        if not inputs:
            return []

        chunks = chunked(inputs, self._config.classification.chunk_size)
        outcomes = await asyncio.gather(
            *(self._classify_chunk(account_id, chunk) for chunk in chunks),
            return_exceptions=True,
        )

        results: list[DeletionClassification] = []
        chunks_failed = 0
        for index, (chunk, outcome) in enumerate(zip(chunks, outcomes, strict=True)):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                chunks_failed += 1
                logger.warning(
                    "classification_chunk_failed",
                    chunk=index,
                    size=len(chunk),
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                results.extend(failed_result(item.id) for item in chunk)
            else:
                results.extend(outcome)

        if chunks_failed == len(chunks):
            raise ClassificationError(
                f"All {chunks_failed} classification chunks failed",
                chunks_failed=chunks_failed,
            )

        logger.info(
            "classification_chunks_complete",
            chunks=len(chunks),
            chunks_failed=chunks_failed,
            messages=len(inputs),
        )
        return results

    async def _classify_chunk(
        self,
        account_id: str,
        chunk: list[ClassificationInput],
    ) -> list[DeletionClassification]:
        senders = list(dict.fromkeys(item.sender for item in chunk))
        penalties = await self._learning.get_batch_penalties(account_id, senders)

        snippet_max_chars = self._config.classification.snippet_max_chars
        payloads = [
            build_message_payload(item, penalties[item.sender], snippet_max_chars)
            for item in chunk
        ]
        raw_results = await self._provider.classify(
            build_user_message(payloads), account_id=account_id
        )
        return _merge(chunk, raw_results, penalties)


def _merge(
    chunk: list[ClassificationInput],
    raw_results: list[RawClassification],
    penalties: dict[str, float],
) -> list[DeletionClassification]:
    """Pair model answers with chunk items and apply penalties.

    Answers for ids outside the chunk are dropped; the first answer per id
    wins; chunk items the model skipped get the failed result.
    """
    by_id: dict[str, RawClassification] = {}
    for raw in raw_results:
        by_id.setdefault(raw.id, raw)

    unexpected = set(by_id) - {item.id for item in chunk}
    if unexpected:
        logger.warning("classification_unexpected_ids", count=len(unexpected))

    merged = []
    for item in chunk:
        raw = by_id.get(item.id)
        if raw is None:
            logger.warning("classification_missing_result", message_id=item.id)
            merged.append(failed_result(item.id))
            continue

        penalty = penalties.get(item.sender, 1.0)
        reason = raw.reason
        if penalty < 1.0:
            reason += ADJUSTED_NOTE
        merged.append(
            DeletionClassification(
                id=item.id,
                category=raw.category,
                score=adjust_score(raw.score, penalty),
                reason=reason,
            )
        )
    return merged
