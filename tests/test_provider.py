"""Tests for the Claude deletion provider.

The Anthropic client is mocked; responses are MagicMock messages with
tool_use or text content blocks.
"""

from collections.abc import Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import pytest

from inbox_janitor.classifier.prompts import CLASSIFY_EMAILS_TOOL
from inbox_janitor.classifier.provider import (
    DEFAULT_REASON,
    TASK_TYPE,
    ClaudeDeletionProvider,
    RawClassification,
)
from inbox_janitor.config_schema import AppConfig
from inbox_janitor.core.errors import ClassificationError
from inbox_janitor.db.store import DatabaseStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _tool_block(payload: dict[str, Any]) -> MagicMock:
    block = MagicMock()
    block.type = "tool_use"
    block.id = "toolu_1"
    block.name = CLASSIFY_EMAILS_TOOL["name"]
    block.input = payload
    return block


def _text_block(text: str) -> MagicMock:
    block = MagicMock()
    block.type = "text"
    block.text = text
    return block


def _response(*blocks: MagicMock) -> MagicMock:
    response = MagicMock()
    response.id = "msg_1"
    response.model = "claude-test"
    response.stop_reason = "tool_use"
    response.content = list(blocks)
    response.usage.input_tokens = 120
    response.usage.output_tokens = 40
    return response


def _item(item_id: str, category: Any = "promo", score: Any = 0.9, reason: Any = "Promo") -> dict:
    return {"id": item_id, "category": category, "deleteScore": score, "reason": reason}


@pytest.fixture(autouse=True)
def no_rate_limit() -> Generator[None, None, None]:
    bucket = MagicMock()
    bucket.consume = AsyncMock(return_value=True)
    with patch("inbox_janitor.classifier.provider.get_bucket", return_value=bucket):
        yield


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock()
    return client


@pytest.fixture
def provider(client: MagicMock, store: DatabaseStore, sample_config: AppConfig) -> ClaudeDeletionProvider:
    return ClaudeDeletionProvider(client, store, sample_config)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestToolCall:
    async def test_parses_forced_tool_call(
        self, provider: ClaudeDeletionProvider, client: MagicMock
    ) -> None:
        client.messages.create.return_value = _response(
            _tool_block({"classifications": [_item("m1"), _item("m2", "receipt", 0.1, "Invoice")]})
        )

        results = await provider.classify("classify", account_id="acc-1")

        assert results == [
            RawClassification(id="m1", category="promo", score=0.9, reason="Promo"),
            RawClassification(id="m2", category="receipt", score=0.1, reason="Invoice"),
        ]
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": "classify_emails"}
        assert kwargs["tools"] == [CLASSIFY_EMAILS_TOOL]
        assert kwargs["model"] == "claude-haiku-4-5-20251001"

    async def test_text_fallback_with_code_fence(
        self, provider: ClaudeDeletionProvider, client: MagicMock
    ) -> None:
        client.messages.create.return_value = _response(
            _text_block('```json\n{"classifications": [{"id": "m1", "category": "promo", '
                        '"deleteScore": 0.8, "reason": "Sale"}]}\n```')
        )

        results = await provider.classify("classify")

        assert results == [RawClassification(id="m1", category="promo", score=0.8, reason="Sale")]

    async def test_text_fallback_accepts_bare_list(
        self, provider: ClaudeDeletionProvider, client: MagicMock
    ) -> None:
        client.messages.create.return_value = _response(
            _text_block('[{"id": "m1", "category": "work", "deleteScore": 0.0, "reason": "Boss"}]')
        )

        results = await provider.classify("classify")

        assert [r.id for r in results] == ["m1"]

    async def test_unparseable_answer_raises(
        self, provider: ClaudeDeletionProvider, client: MagicMock
    ) -> None:
        client.messages.create.return_value = _response(_text_block("I cannot help with that"))

        with pytest.raises(ClassificationError):
            await provider.classify("classify")


class TestLenientRecovery:
    async def test_invalid_items_are_repaired(
        self, provider: ClaudeDeletionProvider, client: MagicMock
    ) -> None:
        client.messages.create.return_value = _response(
            _tool_block(
                {
                    "classifications": [
                        _item("m1", category="Newsletter", score=1.7),
                        _item("m2", category="SPAMLIKE", score="0.4", reason=""),
                        _item("m3", score=-2),
                        _item("m4", score="lots"),
                        {"category": "promo", "deleteScore": 1.0, "reason": "no id"},
                        "garbage",
                    ]
                }
            )
        )

        results = await provider.classify("classify")

        assert results == [
            RawClassification(id="m1", category="promo", score=1.0, reason="Promo"),
            RawClassification(id="m2", category="spamLike", score=0.4, reason=DEFAULT_REASON),
            RawClassification(id="m3", category="promo", score=0.0, reason="Promo"),
            RawClassification(id="m4", category="promo", score=0.0, reason="Promo"),
        ]

    async def test_missing_list_raises(
        self, provider: ClaudeDeletionProvider, client: MagicMock
    ) -> None:
        client.messages.create.return_value = _response(_tool_block({"results": []}))

        with pytest.raises(ClassificationError):
            await provider.classify("classify")


class TestErrorsAndLogging:
    async def test_api_error_becomes_classification_error(
        self, provider: ClaudeDeletionProvider, client: MagicMock, store: DatabaseStore
    ) -> None:
        client.messages.create.side_effect = anthropic.APIConnectionError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        )

        with pytest.raises(ClassificationError):
            await provider.classify("classify", account_id="acc-1")

        [entry] = await store.get_llm_logs()
        assert entry.error.startswith("APIConnectionError")
        assert entry.account_id == "acc-1"

    async def test_successful_request_is_logged(
        self, provider: ClaudeDeletionProvider, client: MagicMock, store: DatabaseStore
    ) -> None:
        client.messages.create.return_value = _response(
            _tool_block({"classifications": [_item("m1")]})
        )

        await provider.classify("classify", account_id="acc-1")

        [entry] = await store.get_llm_logs()
        assert entry.task_type == TASK_TYPE
        assert entry.input_tokens == 120
        assert entry.output_tokens == 40
        assert entry.tool_call_json == {"classifications": [_item("m1")]}
        assert entry.prompt_json["messages"] == [{"role": "user", "content": "classify"}]

    async def test_logging_disabled(
        self, client: MagicMock, store: DatabaseStore, sample_config: AppConfig
    ) -> None:
        sample_config.llm_logging.enabled = False
        provider = ClaudeDeletionProvider(client, store, sample_config)
        client.messages.create.return_value = _response(
            _tool_block({"classifications": [_item("m1")]})
        )

        await provider.classify("classify")

        assert await store.get_llm_logs() == []

    async def test_log_failure_does_not_block(
        self, client: MagicMock, sample_config: AppConfig
    ) -> None:
        broken_store = MagicMock()
        broken_store.log_llm_request = AsyncMock(side_effect=RuntimeError("disk full"))
        provider = ClaudeDeletionProvider(client, broken_store, sample_config)
        client.messages.create.return_value = _response(
            _tool_block({"classifications": [_item("m1")]})
        )

        results = await provider.classify("classify")

        assert len(results) == 1
