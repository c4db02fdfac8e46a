"""Closed category set for deletion classification.

The model is told to use exactly these categories, but free-text answers
("Newsletter", "urgent") still happen. ``normalize_category`` folds any
string back into the closed set.
"""

from typing import Literal, get_args

Category = Literal[
    "unknown",
    "personal",
    "work",
    "receipt",
    "promo",
    "notification",
    "spamLike",
]

CATEGORIES: tuple[str, ...] = get_args(Category)

_BY_LOWER = {category.lower(): category for category in CATEGORIES}

# Keyword -> category, checked in order
_KEYWORD_MAP: tuple[tuple[tuple[str, ...], Category], ...] = (
    (("important", "urgent", "critical"), "work"),
    (("newsletter", "marketing"), "promo"),
    (("alert", "reminder"), "notification"),
)


def normalize_category(value: object) -> Category:
    """Map any model output onto the closed category set.

    Exact names match case-insensitively ("SpamLike" -> "spamLike").
    Otherwise keywords decide, and anything unrecognized is "unknown".

    Example:
        >>> normalize_category("Weekly Newsletter")
        'promo'
        >>> normalize_category("travel")
        'unknown'
    """
    if not isinstance(value, str):
        return "unknown"

    lower = value.strip().lower()
    if lower in _BY_LOWER:
        return _BY_LOWER[lower]  # type: ignore[return-value]

    for keywords, category in _KEYWORD_MAP:
        if any(keyword in lower for keyword in keywords):
            return category
    return "unknown"
