"""
Lightweight in-process counters for retrieval calls.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from typing import Any, Iterable

_counters = Counter()
_per_interpreter = defaultdict(Counter)
_backend_failures = Counter()


def record_rag_search(
    interpreter: str,
    passage_count: int,
    symbol_count: int,
    degraded_arms: Iterable[str] = (),
) -> None:
    _counters["rag_search_total"] += 1
    _per_interpreter[interpreter or "unknown"]["searches"] += 1
    if passage_count <= 0:
        _counters["rag_search_empty"] += 1
        _per_interpreter[interpreter or "unknown"]["empty"] += 1
    if symbol_count > 0:
        _counters["rag_search_with_symbols"] += 1
    for arm in degraded_arms:
        _counters[f"rag_search_degraded_{arm}"] += 1

    if passage_count <= 0:
        bucket = "0"
    elif passage_count <= 2:
        bucket = "1_2"
    elif passage_count <= 5:
        bucket = "3_5"
    else:
        bucket = "gte_6"
    _counters[f"rag_passages_{bucket}"] += 1


def record_backend_failure(arm: str, reason: str | None = None) -> None:
    _counters["backend_failure_total"] += 1
    if reason:
        _backend_failures[f"{arm}:{reason[:120]}"] += 1
    else:
        _backend_failures[arm] += 1


def snapshot() -> dict[str, Any]:
    return {
        "counters": dict(_counters),
        "per_interpreter": {k: dict(v) for k, v in _per_interpreter.items()},
        "backend_failures": dict(_backend_failures),
    }


def reset() -> None:
    _counters.clear()
    _per_interpreter.clear()
    _backend_failures.clear()
