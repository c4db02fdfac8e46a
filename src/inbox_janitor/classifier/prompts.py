"""Prompt and tool definition for deletion classification.

Builds the system prompt, the per-chunk user message, and the
``classify_emails`` tool whose input schema is the output contract:
an array of {id, category, deleteScore, reason}.

Usage:
    from inbox_janitor.classifier.prompts import (
        CLASSIFY_EMAILS_TOOL,
        SYSTEM_PROMPT,
        build_user_message,
    )

    message = build_user_message(payloads)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from inbox_janitor.classifier.categories import CATEGORIES

# ---------------------------------------------------------------------------
# Tool definition
# ---------------------------------------------------------------------------

CLASSIFY_EMAILS_TOOL: dict[str, Any] = {
    "name": "classify_emails",
    "description": "Record a deletion classification for every email in the request",
    "input_schema": {
        "type": "object",
        "properties": {
            "classifications": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {
                            "type": "string",
                            "description": "The email's id exactly as given",
                        },
                        "category": {"type": "string", "enum": list(CATEGORIES)},
                        "deleteScore": {
                            "type": "number",
                            "minimum": 0.0,
                            "maximum": 1.0,
                            "description": "0 = keep, 1 = definitely safe to delete",
                        },
                        "reason": {
                            "type": "string",
                            "description": "One short sentence explaining the score",
                        },
                    },
                    "required": ["id", "category", "deleteScore", "reason"],
                },
            }
        },
        "required": ["classifications"],
    },
}

SYSTEM_PROMPT = f"""You are an email triage assistant that helps decide which emails are safe to delete.

For every email you receive:
1. Categorize it using ONLY these exact categories: {", ".join(CATEGORIES)}
   - unknown: cannot determine the category
   - personal: personal emails from friends or family
   - work: work-related emails, important notifications, support tickets
   - receipt: receipts, invoices, financial documents
   - promo: promotional emails, newsletters, marketing
   - notification: alerts, reminders, system notifications
   - spamLike: spam or suspicious emails
2. Assign a deleteScore from 0 to 1 (0 = keep, 1 = definitely delete)
3. Give a brief reason for the score

Consider:
- Promotional emails, newsletters and spam-like content should get a high deleteScore
- Receipts, personal conversations and work emails should get a low deleteScore
- If the user has replied in the thread, the email is likely important
- A high sender frequency often indicates newsletters or promotions
- Gmail labels such as CATEGORY_PROMOTIONS or CATEGORY_SOCIAL suggest deletable content
- If "userBehavior" says the user keeps most emails from a sender, lower the deleteScore

Be conservative: only suggest deletion for clearly safe-to-delete emails.
Return exactly one classification per email, using the email's id unchanged.
Always answer by calling the classify_emails tool."""


@dataclass
class ClassificationInput:
    """One message as handed to the classifier."""

    id: str
    sender: str
    subject: str = ""
    snippet: str = ""
    labels: list[str] = field(default_factory=list)
    has_user_replied: bool = False
    sender_frequency: int = 1


def describe_user_behavior(penalty: float) -> str:
    """Human-readable hint derived from the sender penalty."""
    if penalty < 1.0:
        return f"User keeps {round((1 - penalty) * 100)}% of emails from this sender"
    return "No previous user actions"


def build_message_payload(
    item: ClassificationInput,
    penalty: float,
    snippet_max_chars: int = 200,
) -> dict[str, Any]:
    """Per-message object placed in the request."""
    return {
        "id": item.id,
        "sender": item.sender,
        "subject": item.subject,
        "snippet": (item.snippet or "")[:snippet_max_chars],
        "labels": ", ".join(item.labels),
        "hasUserReplied": item.has_user_replied,
        "senderFrequency": item.sender_frequency,
        "userBehavior": describe_user_behavior(penalty),
    }


def build_user_message(payloads: list[dict[str, Any]]) -> str:
    """User message for one chunk."""
    return (
        "Classify these emails for deletion:\n\n"
        f"{json.dumps(payloads, indent=2)}\n\n"
        f"Use ONLY these categories: {', '.join(CATEGORIES)}"
    )
