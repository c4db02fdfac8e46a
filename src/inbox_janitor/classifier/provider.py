"""Claude provider for deletion classification.

Sends one chunk of messages to Claude with a forced ``classify_emails``
tool call and returns one raw (unpenalized) result per item the model
answered for.

Error handling strategy:
- Transient errors (429, 5xx, network): handled by the Anthropic SDK (max_retries=3)
- No tool call in the response: text blocks are parsed as JSON instead
- Schema violations: items are recovered leniently (category normalized,
  score coerced and clamped, default reason)
- Anything unrecoverable raises ClassificationError for the chunk

Usage:
    from inbox_janitor.classifier.provider import ClaudeDeletionProvider

    provider = ClaudeDeletionProvider(anthropic.AsyncAnthropic(max_retries=3), store, config)
    results = await provider.classify(user_message, account_id=account.id)
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import anthropic
from pydantic import BaseModel, Field, ValidationError

from inbox_janitor.classifier.categories import Category, normalize_category
from inbox_janitor.classifier.prompts import CLASSIFY_EMAILS_TOOL, SYSTEM_PROMPT
from inbox_janitor.core.errors import ClassificationError
from inbox_janitor.core.logging import get_logger
from inbox_janitor.core.rate_limiter import get_bucket

if TYPE_CHECKING:
    from inbox_janitor.config_schema import AppConfig
    from inbox_janitor.db.store import DatabaseStore

logger = get_logger(__name__)

TASK_TYPE = "deletion_classification"
DEFAULT_REASON = "Classification completed"


@dataclass(frozen=True, slots=True)
class RawClassification:
    """Model answer for one message, before the sender penalty."""

    id: str
    category: Category
    score: float
    reason: str


class _ClassificationItem(BaseModel):
    id: str
    category: Category
    deleteScore: float = Field(ge=0.0, le=1.0)
    reason: str


class _ClassificationBatch(BaseModel):
    classifications: list[_ClassificationItem]


class ClaudeDeletionProvider:
    """Calls Claude with forced tool use and validates the answer.

    Attributes:
        _client: AsyncAnthropic client (configured with max_retries=3)
        _store: Database store for LLM request logging
        _config: Application configuration
    """

    def __init__(
        self,
        anthropic_client: anthropic.AsyncAnthropic,
        store: DatabaseStore,
        config: AppConfig,
    ):
        self._client = anthropic_client
        self._store = store
        self._config = config
        self._bucket = get_bucket(name="anthropic_api", rate=4.0, capacity=4)

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def classify(self, user_message: str, account_id: str | None = None) -> list[RawClassification]:
        """Classify one chunk.

        Args:
            user_message: Rendered chunk prompt
            account_id: Account being classified (for the request log)

        Returns:
            Raw results for every well-formed item in the answer

        Raises:
            ClassificationError: If the request fails or the answer is unusable
        """
        model = self._config.classification.model
        messages = [{"role": "user", "content": user_message}]

        await self._bucket.consume()
        start_time = time.monotonic()
        try:
            response = await self._client.messages.create(
                model=model,
                max_tokens=self._config.classification.max_tokens,
                system=SYSTEM_PROMPT,
                messages=messages,
                tools=[CLASSIFY_EMAILS_TOOL],
                tool_choice={"type": "tool", "name": CLASSIFY_EMAILS_TOOL["name"]},
            )
        except anthropic.APIError as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            error = f"{type(e).__name__}: {e}"
            logger.error("classification_api_error", model=model, error=error)
            await self._log_request(model, messages, None, None, duration_ms, account_id, error)
            raise ClassificationError(f"Claude request failed: {error}") from e

        duration_ms = int((time.monotonic() - start_time) * 1000)

        payload = _extract_tool_call(response)
        if payload is None:
            logger.warning("classification_no_tool_call", model=model)
            payload = _parse_text_payload(response)

        if payload is None:
            error = "Response contained neither a tool call nor parseable JSON"
            await self._log_request(model, messages, response, None, duration_ms, account_id, error)
            raise ClassificationError(error)

        try:
            results = _validate_strict(payload)
        except ValidationError as e:
            logger.warning(
                "classification_schema_violation",
                model=model,
                errors=e.error_count(),
            )
            results = _recover_lenient(payload)

        await self._log_request(model, messages, response, payload, duration_ms, account_id)
        return results

    async def _log_request(
        self,
        model: str,
        messages: list[dict[str, Any]],
        response: anthropic.types.Message | None,
        tool_call: dict[str, Any] | None,
        duration_ms: int,
        account_id: str | None,
        error: str | None = None,
    ) -> None:
        """Write the request to llm_request_log when logging is enabled."""
        logging_config = self._config.llm_logging
        if not logging_config.enabled:
            return

        try:
            prompt_data: dict[str, Any] | None = None
            if logging_config.log_prompts:
                prompt_data = {"system": SYSTEM_PROMPT, "messages": messages}

            response_data: dict[str, Any] | None = None
            input_tokens: int | None = None
            output_tokens: int | None = None
            if response is not None:
                input_tokens = response.usage.input_tokens
                output_tokens = response.usage.output_tokens
                if logging_config.log_responses:
                    response_data = {
                        "id": response.id,
                        "model": response.model,
                        "stop_reason": response.stop_reason,
                        "content": [_content_block_to_dict(block) for block in response.content],
                    }

            await self._store.log_llm_request(
                task_type=TASK_TYPE,
                model=model,
                prompt=prompt_data,
                response=response_data,
                tool_call=tool_call,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
                account_id=account_id,
                error=error,
            )
        except Exception as e:
            # Logging failures never block classification
            logger.warning("llm_log_failed", error=str(e))


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_tool_call(response: anthropic.types.Message) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == CLASSIFY_EMAILS_TOOL["name"]:
            return block.input if isinstance(block.input, dict) else None
    return None


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def _parse_text_payload(response: anthropic.types.Message) -> dict[str, Any] | None:
    """Fallback: read the answer from text blocks as JSON.

    Accepts either {"classifications": [...]} or a bare list.
    """
    text = "".join(block.text for block in response.content if block.type == "text")
    if not text.strip():
        return None

    try:
        data = json.loads(_strip_code_fence(text))
    except json.JSONDecodeError:
        return None

    if isinstance(data, list):
        return {"classifications": data}
    if isinstance(data, dict) and isinstance(data.get("classifications"), list):
        return data
    return None


def _validate_strict(payload: dict[str, Any]) -> list[RawClassification]:
    batch = _ClassificationBatch.model_validate(payload)
    return [
        RawClassification(
            id=item.id,
            category=item.category,
            score=item.deleteScore,
            reason=item.reason,
        )
        for item in batch.classifications
    ]


def _coerce_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if score != score:  # NaN
        return 0.0
    return max(0.0, min(1.0, score))


def _recover_lenient(payload: dict[str, Any]) -> list[RawClassification]:
    """Salvage what can be used from an answer that failed validation."""
    items = payload.get("classifications")
    if not isinstance(items, list):
        raise ClassificationError("Classifier answer has no classifications list")

    results = []
    for item in items:
        if not isinstance(item, dict):
            continue
        item_id = item.get("id")
        if not isinstance(item_id, str) or not item_id:
            continue
        reason = item.get("reason")
        results.append(
            RawClassification(
                id=item_id,
                category=normalize_category(item.get("category")),
                score=_coerce_score(item.get("deleteScore")),
                reason=reason if isinstance(reason, str) and reason.strip() else DEFAULT_REASON,
            )
        )
    return results


def _content_block_to_dict(block: Any) -> dict[str, Any]:
    if block.type == "text":
        return {"type": "text", "text": block.text}
    if block.type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {"type": block.type}
