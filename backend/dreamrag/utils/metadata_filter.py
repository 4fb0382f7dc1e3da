"""
Metadata filter validation and matching.

Filters are plain dicts:
    {"topic": "dreams"}                          equality
    {"topic": {"$in": ["dreams", "symbols"]}}    membership
    {"source": {"$ne": "Man and His Symbols"}}   negation
List-valued (or comma-separated) metadata matches when any element matches.
"""

from typing import Any, Optional

from dreamrag.exceptions import MalformedMetadataFilterError
from dreamrag.utils.content_types import split_codes

_SCALAR_TYPES = (str, int, float, bool)
_LIST_OPERATORS = ("$in", "$nin")
_SCALAR_OPERATORS = ("$eq", "$ne")


def validate_metadata_filter(metadata_filter: Optional[dict]) -> None:
    """
    Reject filters the matcher cannot interpret.

    Raises:
        MalformedMetadataFilterError
    """
    if metadata_filter is None:
        return
    if not isinstance(metadata_filter, dict):
        raise MalformedMetadataFilterError(
            "Metadata filter must be a mapping", {"filter": repr(metadata_filter)}
        )

    for key, condition in metadata_filter.items():
        if not isinstance(key, str) or not key or key.startswith("$"):
            raise MalformedMetadataFilterError(f"Invalid filter key {key!r}", {"key": repr(key)})

        if isinstance(condition, _SCALAR_TYPES):
            continue
        if not isinstance(condition, dict) or len(condition) != 1:
            raise MalformedMetadataFilterError(
                f"Filter for {key!r} must be a scalar or a single-operator mapping",
                {"key": key},
            )

        operator, operand = next(iter(condition.items()))
        if operator in _SCALAR_OPERATORS:
            if not isinstance(operand, _SCALAR_TYPES):
                raise MalformedMetadataFilterError(
                    f"{operator} for {key!r} needs a scalar operand", {"key": key}
                )
        elif operator in _LIST_OPERATORS:
            if not isinstance(operand, (list, tuple)) or not all(
                isinstance(v, _SCALAR_TYPES) for v in operand
            ):
                raise MalformedMetadataFilterError(
                    f"{operator} for {key!r} needs a list of scalars", {"key": key}
                )
        else:
            raise MalformedMetadataFilterError(
                f"Unsupported operator {operator!r} for {key!r}", {"key": key}
            )


def _values(metadata: dict, key: str) -> list[Any]:
    value = metadata.get(key)
    if value is None:
        return []
    if isinstance(value, str) and "," in value:
        return split_codes(value)
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def matches_metadata_filter(metadata: dict, metadata_filter: Optional[dict]) -> bool:
    """Check a validated filter against fragment metadata."""
    if not metadata_filter:
        return True

    for key, condition in metadata_filter.items():
        values = _values(metadata, key)
        if isinstance(condition, dict):
            operator, operand = next(iter(condition.items()))
        else:
            operator, operand = "$eq", condition

        if operator == "$eq" and operand not in values:
            return False
        if operator == "$ne" and operand in values:
            return False
        if operator == "$in" and not any(v in operand for v in values):
            return False
        if operator == "$nin" and any(v in operand for v in values):
            return False
    return True
