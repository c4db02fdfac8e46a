"""Deletion classification components.

This package provides the AI side of deletion suggestions:
- Closed category set and normalization of free-text categories
- Prompt and tool definition for the classify_emails contract
- Claude provider with forced tool use and lenient recovery
- Deletion classifier that chunks, dispatches concurrently and applies penalties
- Sender learning that turns user decisions into score penalties
"""

from inbox_janitor.classifier.categories import CATEGORIES, Category, normalize_category
from inbox_janitor.classifier.deletion_classifier import (
    DeletionClassification,
    DeletionClassifier,
    adjust_score,
)
from inbox_janitor.classifier.prompts import (
    CLASSIFY_EMAILS_TOOL,
    SYSTEM_PROMPT,
    ClassificationInput,
    build_message_payload,
    build_user_message,
)
from inbox_janitor.classifier.provider import ClaudeDeletionProvider, RawClassification
from inbox_janitor.classifier.sender_learning import SenderLearning, calculate_penalty

__all__ = [
    # Categories
    "CATEGORIES",
    "Category",
    "normalize_category",
    # Deletion classifier
    "DeletionClassification",
    "DeletionClassifier",
    "adjust_score",
    # Prompts
    "CLASSIFY_EMAILS_TOOL",
    "SYSTEM_PROMPT",
    "ClassificationInput",
    "build_message_payload",
    "build_user_message",
    # Provider
    "ClaudeDeletionProvider",
    "RawClassification",
    # Sender learning
    "SenderLearning",
    "calculate_penalty",
]
