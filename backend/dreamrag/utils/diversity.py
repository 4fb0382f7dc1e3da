"""
Diversity selection for fused search results.

Four selection policies pick the final top-k from a score-sorted candidate
pool. Every policy keeps the single best candidate unconditionally.

DiversityTracker keeps a bounded per-persona record of recently returned
fragments, sources and chapters. It is owned by the search engine and
injected, so each test can start from a fresh history.
"""

import math
import random
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from cachetools import LRUCache

from dreamrag.config import settings
from dreamrag.models import SearchResult

# Persona-greedy adjustments
UNSEEN_SOURCE_BONUS = 0.15
UNSEEN_CHAPTER_BONUS = 0.10
UNSEEN_TOPIC_BONUS = 0.05
SAME_SOURCE_AND_CHAPTER_PENALTY = 0.20
RECENTLY_USED_PENALTY = 0.10
MAX_PICKS_PER_SOURCE = 2

# Random-weighted mode always keeps this many leaders
RANDOM_WEIGHTED_KEEP_TOP = 2


class DiversityMode(str, Enum):
    SIMILARITY = "similarity"
    DIVERSE = "diverse"
    RANDOM_WEIGHTED = "random-weighted"
    PERSONA_GREEDY = "persona-greedy"


@dataclass(frozen=True)
class RecentUsage:
    fragment_ids: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    chapters: list[str] = field(default_factory=list)


class _PersonaHistory:
    def __init__(self, id_cap: int, source_cap: int, chapter_cap: int):
        self.fragment_ids = LRUCache(maxsize=id_cap) if id_cap > 0 else None
        self.sources = LRUCache(maxsize=source_cap) if source_cap > 0 else None
        self.chapters = LRUCache(maxsize=chapter_cap) if chapter_cap > 0 else None

    @staticmethod
    def _touch(cache: Optional[LRUCache], key: str) -> None:
        # Re-inserting refreshes recency; LRUCache evicts the oldest past maxsize
        if cache is not None and key:
            cache[key] = True


class DiversityTracker:
    """
    Bounded rolling history of what each persona has recently cited.

    record() after a retrieval, recent() before one. Concurrent calls for the
    same persona may interleave; every insert enforces the cap, so the
    history never grows past it.
    """

    def __init__(
        self,
        id_cap: Optional[int] = None,
        source_cap: Optional[int] = None,
        chapter_cap: Optional[int] = None,
        id_cap_overrides: Optional[dict[str, int]] = None,
    ):
        self.id_cap = settings.rag_history_id_cap if id_cap is None else id_cap
        self.source_cap = settings.rag_history_source_cap if source_cap is None else source_cap
        self.chapter_cap = settings.rag_history_chapter_cap if chapter_cap is None else chapter_cap
        self.id_cap_overrides = (
            dict(settings.rag_history_id_cap_overrides)
            if id_cap_overrides is None
            else dict(id_cap_overrides)
        )
        self._histories: dict[str, _PersonaHistory] = {}

    def _history(self, persona: str) -> _PersonaHistory:
        history = self._histories.get(persona)
        if history is None:
            history = _PersonaHistory(
                self.id_cap_overrides.get(persona, self.id_cap),
                self.source_cap,
                self.chapter_cap,
            )
            self._histories[persona] = history
        return history

    def record(self, persona: str, picks: Iterable[SearchResult]) -> None:
        history = self._history(persona)
        for pick in picks:
            history._touch(history.fragment_ids, pick.fragment_id)
            history._touch(history.sources, pick.source)
            if pick.chapter:
                history._touch(history.chapters, f"{pick.source}-{pick.chapter}")

    def recent(self, persona: str) -> RecentUsage:
        history = self._histories.get(persona)
        if history is None:
            return RecentUsage()
        return RecentUsage(
            fragment_ids=list(history.fragment_ids or []),
            sources=list(history.sources or []),
            chapters=list(history.chapters or []),
        )

    def clear(self, persona: Optional[str] = None) -> None:
        if persona is None:
            self._histories.clear()
        else:
            self._histories.pop(persona, None)


def _source_key(result: SearchResult) -> str:
    return result.source or f"fragment:{result.fragment_id}"


def _by_score(results: Iterable[SearchResult]) -> list[SearchResult]:
    return sorted(results, key=lambda r: r.hybrid_score, reverse=True)


def _select_balanced(candidates: list[SearchResult], k: int) -> list[SearchResult]:
    reserved = max(1, math.ceil(k / 3))
    selected = candidates[:reserved]

    buckets: dict[tuple[str, str], list[SearchResult]] = {}
    for result in candidates[reserved:]:
        buckets.setdefault((_source_key(result), result.chapter), []).append(result)

    while len(selected) < k and buckets:
        used_sources = {_source_key(r) for r in selected}
        # One pick per bucket per round; buckets from unrepresented sources go first
        order = sorted(buckets, key=lambda key: key[0] in used_sources)
        for key in order:
            if len(selected) >= k:
                break
            selected.append(buckets[key].pop(0))
            if not buckets[key]:
                del buckets[key]

    return selected


def _select_random_weighted(
    candidates: list[SearchResult], k: int, rng: random.Random
) -> list[SearchResult]:
    selected = candidates[: min(RANDOM_WEIGHTED_KEEP_TOP, k)]
    pool = candidates[len(selected):]

    while len(selected) < k and pool:
        weights = [max(r.hybrid_score, 0.0) ** 2 for r in pool]
        if sum(weights) > 0:
            idx = rng.choices(range(len(pool)), weights=weights, k=1)[0]
        else:
            idx = rng.randrange(len(pool))
        selected.append(pool.pop(idx))

    return selected


def _select_persona_greedy(
    candidates: list[SearchResult],
    k: int,
    recent: Optional[RecentUsage],
    require_different_chapters: bool,
) -> list[SearchResult]:
    recent_ids = set(recent.fragment_ids) if recent else set()

    selected = [candidates[0]]
    source_counts = Counter([_source_key(candidates[0])])
    seen_pairs: set[tuple[str, str]] = set()
    if candidates[0].chapter:
        seen_pairs.add((_source_key(candidates[0]), candidates[0].chapter))
    seen_topics = {candidates[0].metadata.get("topic")}
    remaining = candidates[1:]

    while remaining and len(selected) < k:
        best: Optional[SearchResult] = None
        best_score = -math.inf
        for result in remaining:
            source = _source_key(result)
            if source_counts[source] >= MAX_PICKS_PER_SOURCE:
                continue

            adjusted = result.hybrid_score
            if source not in source_counts:
                adjusted += UNSEEN_SOURCE_BONUS
            if result.chapter:
                if (source, result.chapter) in seen_pairs:
                    adjusted -= SAME_SOURCE_AND_CHAPTER_PENALTY
                elif require_different_chapters:
                    adjusted += UNSEEN_CHAPTER_BONUS
            topic = result.metadata.get("topic")
            if topic and topic not in seen_topics:
                adjusted += UNSEEN_TOPIC_BONUS
            if result.fragment_id in recent_ids:
                adjusted -= RECENTLY_USED_PENALTY

            if adjusted > best_score:
                best, best_score = result, adjusted

        if best is None:
            break

        selected.append(best)
        remaining.remove(best)
        source_counts[_source_key(best)] += 1
        if best.chapter:
            seen_pairs.add((_source_key(best), best.chapter))
        seen_topics.add(best.metadata.get("topic"))

    return selected


def select_diverse(
    candidates: list[SearchResult],
    k: int,
    mode: DiversityMode = DiversityMode.DIVERSE,
    rng: Optional[random.Random] = None,
    recent: Optional[RecentUsage] = None,
    require_different_chapters: bool = True,
) -> list[SearchResult]:
    """
    Pick at most k results from the candidate pool.

    Args:
        candidates: Fused candidates (any order)
        k: Maximum number of results
        mode: Selection policy
        rng: Random source for RANDOM_WEIGHTED
        recent: Persona history, read by PERSONA_GREEDY only
        require_different_chapters: PERSONA_GREEDY rewards unseen chapters

    Returns:
        Selected results, best hybrid score first
    """
    if k <= 0 or not candidates:
        return []

    ordered = _by_score(candidates)
    if len(ordered) <= k:
        return ordered

    mode = DiversityMode(mode)
    if mode == DiversityMode.SIMILARITY:
        selected = ordered[:k]
    elif mode == DiversityMode.DIVERSE:
        selected = _select_balanced(ordered, k)
    elif mode == DiversityMode.RANDOM_WEIGHTED:
        selected = _select_random_weighted(ordered, k, rng or random.Random())
    else:
        # PERSONA_GREEDY can return fewer than k when the per-source cap binds
        selected = _select_persona_greedy(ordered, k, recent, require_different_chapters)

    return _by_score(selected)
