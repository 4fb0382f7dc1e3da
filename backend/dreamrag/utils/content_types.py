"""
Content type definitions and metadata helpers for knowledge fragments.
"""

import json
from typing import Any, Iterable, Optional

DREAM_EXAMPLE = "dream_example"
SYMBOL = "symbol"
THEORY = "theory"
CASE_STUDY = "case_study"

CONTENT_TYPES = [DREAM_EXAMPLE, SYMBOL, THEORY, CASE_STUDY]

# Worked examples ground an interpretation better than abstract theory
CONTENT_TYPE_MULTIPLIERS = {
    DREAM_EXAMPLE: 1.1,
    SYMBOL: 1.05,
}

CONTENT_TYPE_LABELS = {
    DREAM_EXAMPLE: "Dream example",
    SYMBOL: "Symbol discussion",
    THEORY: "Theory",
    CASE_STUDY: "Case study",
}

LEGACY_TO_NEW = {
    "example": DREAM_EXAMPLE,
    "dream": DREAM_EXAMPLE,
    "symbolism": SYMBOL,
    "theoretical": THEORY,
}


def split_codes(value: Any) -> list[str]:
    """Multi-valued metadata stored either as a list or a comma-separated string."""
    if not value:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


def passes_theme_filter(
    fragment_id: str,
    metadata: dict,
    theme_filter: Iterable[str],
    associated_ids: Optional[set[str]] = None,
) -> bool:
    """True if the fragment is tagged with a filter code or associated with one."""
    if associated_ids and fragment_id in associated_ids:
        return True
    return bool(set(theme_filter).intersection(split_codes(metadata.get("theme_codes"))))


def normalize_content_type(value: str) -> str:
    value = (value or "").strip().lower()
    return LEGACY_TO_NEW.get(value, value)


def content_type_of(metadata: dict) -> str:
    """
    Resolve a fragment's content type.

    Prefers an explicit ``content_type``; falls back to the ingestion
    classifier's ``classification.primary_type`` (stored as a dict or a JSON
    string).
    """
    explicit = metadata.get("content_type")
    if explicit:
        return normalize_content_type(str(explicit))

    classification = metadata.get("classification")
    if isinstance(classification, str):
        try:
            classification = json.loads(classification)
        except ValueError:
            classification = None
    if isinstance(classification, dict):
        return normalize_content_type(str(classification.get("primary_type") or ""))
    return ""


def content_type_multiplier(metadata: dict) -> float:
    return CONTENT_TYPE_MULTIPLIERS.get(content_type_of(metadata), 1.0)
