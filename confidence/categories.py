"""Keyword classification of discovered fields into requirement categories."""

from __future__ import annotations

import re

from core.models import FieldDescriptor

# Checked in order; the first matching category wins.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("emergency", ("emergency", "ice")),
    (
        "medical",
        (
            "medical",
            "allerg",
            "medication",
            "insurance",
            "physician",
            "doctor",
            "health",
            "condition",
            "dietary",
            "special",
        ),
    ),
    ("guardian", ("guardian", "parent", "mother", "father")),
    (
        "participant",
        (
            "child",
            "participant",
            "camper",
            "student",
            "player",
            "athlete",
            "birth",
            "dob",
            "age",
            "grade",
            "gender",
            "shirt",
        ),
    ),
    (
        "contact",
        ("email", "phone", "mobile", "tel", "address", "city", "zip", "postal", "street"),
    ),
    ("documents", ("waiver", "consent", "upload", "document", "certificate", "release")),
    ("payment", ("card", "payment", "billing", "cvv", "expiry")),
)

_TYPE_FALLBACK = {
    "email": "contact",
    "tel": "contact",
    "file": "documents",
}


def _token_matches(token: str, keyword: str) -> bool:
    # Short keywords ("dob", "age", "tel") only match whole tokens.
    if len(keyword) <= 3:
        return token == keyword
    return token.startswith(keyword) or token.endswith(keyword)


def classify_name(name: str) -> str | None:
    """Return the category a field name or label belongs to, or None."""
    tokens = [item for item in re.split(r"[^a-z0-9]+", name.lower()) if item]
    for category, keywords in CATEGORY_KEYWORDS:
        if any(_token_matches(token, keyword) for token in tokens for keyword in keywords):
            return category
    return None


def classify_field(field: FieldDescriptor) -> str | None:
    """Category for a field: explicit category, then name/label keywords, then type."""
    if field.category:
        return field.category.strip().lower() or None
    category = classify_name(field.name)
    if category is None and field.label:
        category = classify_name(field.label)
    if category is None:
        category = _TYPE_FALLBACK.get(field.type)
    return category
