"""Tests for category normalization and classifier prompt building."""

import json

import pytest

from inbox_janitor.classifier.categories import CATEGORIES, normalize_category
from inbox_janitor.classifier.prompts import (
    CLASSIFY_EMAILS_TOOL,
    ClassificationInput,
    build_message_payload,
    build_user_message,
    describe_user_behavior,
)


class TestNormalizeCategory:
    @pytest.mark.parametrize("category", CATEGORIES)
    def test_exact_names_pass_through(self, category: str) -> None:
        assert normalize_category(category) == category

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("SPAMLIKE", "spamLike"),
            ("spamlike", "spamLike"),
            (" Promo ", "promo"),
            ("Urgent request", "work"),
            ("IMPORTANT", "work"),
            ("critical outage", "work"),
            ("Weekly Newsletter", "promo"),
            ("marketing", "promo"),
            ("Security alert", "notification"),
            ("reminder", "notification"),
            ("travel", "unknown"),
            ("", "unknown"),
        ],
    )
    def test_free_text_maps_into_closed_set(self, raw: str, expected: str) -> None:
        assert normalize_category(raw) == expected

    @pytest.mark.parametrize("raw", [None, 42, ["promo"], {"category": "promo"}])
    def test_non_strings_are_unknown(self, raw: object) -> None:
        assert normalize_category(raw) == "unknown"

    def test_output_always_in_closed_set(self) -> None:
        for raw in ["x", "newsletter alert", "Receipt", "PERSONAL", "??"]:
            assert normalize_category(raw) in CATEGORIES


class TestPrompts:
    def test_tool_schema_enumerates_categories(self) -> None:
        item_schema = CLASSIFY_EMAILS_TOOL["input_schema"]["properties"]["classifications"]["items"]
        assert item_schema["properties"]["category"]["enum"] == list(CATEGORIES)
        assert item_schema["required"] == ["id", "category", "deleteScore", "reason"]

    def test_user_behavior_hint(self) -> None:
        assert describe_user_behavior(1.0) == "No previous user actions"
        assert describe_user_behavior(0.75) == "User keeps 25% of emails from this sender"
        assert describe_user_behavior(0.5) == "User keeps 50% of emails from this sender"

    def test_payload_truncates_snippet_and_joins_labels(self) -> None:
        item = ClassificationInput(
            id="m1",
            sender="news@shop.example",
            subject="Sale",
            snippet="x" * 500,
            labels=["INBOX", "CATEGORY_PROMOTIONS"],
            has_user_replied=True,
            sender_frequency=12,
        )

        payload = build_message_payload(item, 1.0, snippet_max_chars=200)

        assert payload["id"] == "m1"
        assert len(payload["snippet"]) == 200
        assert payload["labels"] == "INBOX, CATEGORY_PROMOTIONS"
        assert payload["hasUserReplied"] is True
        assert payload["senderFrequency"] == 12
        assert payload["userBehavior"] == "No previous user actions"

    def test_user_message_embeds_payloads_as_json(self) -> None:
        payloads = [
            build_message_payload(ClassificationInput(id=f"m{i}", sender="a@b.example"), 1.0)
            for i in range(3)
        ]

        message = build_user_message(payloads)

        assert json.loads(message.split("\n\n")[1]) == payloads
        assert "spamLike" in message
