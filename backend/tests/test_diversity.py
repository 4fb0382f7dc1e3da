"""
Diversity selection and persona history tests

Usage:
    pytest backend/tests/test_diversity.py -v
"""

import random

import pytest

from dreamrag.models import SearchResult
from dreamrag.utils.diversity import DiversityMode, DiversityTracker, RecentUsage, select_diverse


def _result(fragment_id, score, source, chapter="", topic=None) -> SearchResult:
    metadata = {"source": source, "chapter": chapter}
    if topic:
        metadata["topic"] = topic
    return SearchResult(
        fragment_id=fragment_id, text=f"text {fragment_id}", metadata=metadata, hybrid_score=score
    )


@pytest.fixture
def clustered_pool() -> list[SearchResult]:
    """Top four candidates all come from one book."""
    return [
        _result("a1", 0.95, "Book A", "Ch1"),
        _result("a2", 0.93, "Book A", "Ch1"),
        _result("a3", 0.91, "Book A", "Ch2"),
        _result("a4", 0.90, "Book A", "Ch2"),
        _result("b1", 0.60, "Book B", "Ch1"),
        _result("c1", 0.55, "Book C", "Ch1"),
    ]


ALL_MODES = list(DiversityMode)


# 1. Properties shared by every mode
class TestSelectDiverseCommon:
    @pytest.mark.parametrize("mode", ALL_MODES)
    def test_top_candidate_always_kept(self, clustered_pool, mode):
        selected = select_diverse(clustered_pool, 3, mode=mode, rng=random.Random(1))
        assert selected[0].fragment_id == "a1"

    @pytest.mark.parametrize("mode", ALL_MODES)
    def test_at_most_k(self, clustered_pool, mode):
        selected = select_diverse(clustered_pool, 3, mode=mode, rng=random.Random(1))
        assert 1 <= len(selected) <= 3
        assert len({r.fragment_id for r in selected}) == len(selected)

    @pytest.mark.parametrize("mode", ALL_MODES)
    def test_sorted_by_score(self, clustered_pool, mode):
        selected = select_diverse(clustered_pool, 4, mode=mode, rng=random.Random(3))
        scores = [r.hybrid_score for r in selected]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.parametrize("k", [0, -1])
    def test_non_positive_k(self, clustered_pool, k):
        assert select_diverse(clustered_pool, k) == []

    def test_empty_pool(self):
        assert select_diverse([], 5) == []

    def test_small_pool_returned_whole(self, clustered_pool):
        selected = select_diverse(list(reversed(clustered_pool[:2])), 5)
        assert [r.fragment_id for r in selected] == ["a1", "a2"]

    def test_mode_accepts_string(self, clustered_pool):
        selected = select_diverse(clustered_pool, 2, mode="similarity")
        assert [r.fragment_id for r in selected] == ["a1", "a2"]


# 2. Individual policies
class TestPolicies:
    def test_similarity_is_plain_top_k(self, clustered_pool):
        selected = select_diverse(clustered_pool, 3, mode=DiversityMode.SIMILARITY)
        assert [r.fragment_id for r in selected] == ["a1", "a2", "a3"]

    def test_diverse_reaches_other_sources(self, clustered_pool):
        selected = select_diverse(clustered_pool, 3, mode=DiversityMode.DIVERSE)
        assert len({r.source for r in selected}) >= 2
        assert selected[0].fragment_id == "a1"

    def test_diverse_prefers_unrepresented_sources(self, clustered_pool):
        selected = select_diverse(clustered_pool, 3, mode=DiversityMode.DIVERSE)
        assert {r.fragment_id for r in selected} == {"a1", "b1", "c1"}

    def test_random_weighted_keeps_two_leaders(self, clustered_pool):
        for seed in range(5):
            selected = select_diverse(
                clustered_pool, 3, mode=DiversityMode.RANDOM_WEIGHTED, rng=random.Random(seed)
            )
            ids = [r.fragment_id for r in selected]
            assert ids[:2] == ["a1", "a2"]
            assert len(ids) == 3
            assert len(set(ids)) == len(ids)

    def test_random_weighted_is_reproducible_with_seed(self, clustered_pool):
        first = select_diverse(
            clustered_pool, 4, mode=DiversityMode.RANDOM_WEIGHTED, rng=random.Random(42)
        )
        second = select_diverse(
            clustered_pool, 4, mode=DiversityMode.RANDOM_WEIGHTED, rng=random.Random(42)
        )
        assert [r.fragment_id for r in first] == [r.fragment_id for r in second]

    def test_random_weighted_with_zero_scores(self):
        pool = [_result(f"z{i}", 0.0, f"Book {i}") for i in range(5)]
        selected = select_diverse(
            pool, 3, mode=DiversityMode.RANDOM_WEIGHTED, rng=random.Random(0)
        )
        assert len(selected) == 3
        assert len({r.fragment_id for r in selected}) == 3

    @pytest.mark.parametrize("seed", range(10))
    def test_random_weighted_never_repeats_a_fragment(self, clustered_pool, seed):
        selected = select_diverse(
            clustered_pool, 5, mode=DiversityMode.RANDOM_WEIGHTED, rng=random.Random(seed)
        )
        ids = [r.fragment_id for r in selected]
        assert len(ids) == 5
        assert len(set(ids)) == len(ids)

    def test_persona_greedy_caps_picks_per_source(self, clustered_pool):
        selected = select_diverse(clustered_pool, 4, mode=DiversityMode.PERSONA_GREEDY)
        book_a = [r for r in selected if r.source == "Book A"]
        assert len(book_a) <= 2
        assert {"b1", "c1"} <= {r.fragment_id for r in selected}

    def test_persona_greedy_may_return_fewer_than_k(self):
        pool = [_result(f"a{i}", 0.9 - i * 0.01, "Book A", f"Ch{i}") for i in range(5)]
        selected = select_diverse(pool, 4, mode=DiversityMode.PERSONA_GREEDY)
        assert len(selected) == 2

    def test_persona_greedy_penalizes_recent_fragments(self):
        pool = [
            _result("top", 0.90, "Book A", "Ch1"),
            _result("recent", 0.60, "Book B", "Ch1"),
            _result("fresh", 0.58, "Book C", "Ch1"),
        ]
        recent = RecentUsage(fragment_ids=["recent"])

        without_history = select_diverse(pool, 2, mode=DiversityMode.PERSONA_GREEDY)
        with_history = select_diverse(pool, 2, mode=DiversityMode.PERSONA_GREEDY, recent=recent)

        assert [r.fragment_id for r in without_history] == ["top", "recent"]
        assert [r.fragment_id for r in with_history] == ["top", "fresh"]

    def test_persona_greedy_prefers_new_chapter(self):
        pool = [
            _result("top", 0.90, "Book A", "Ch1"),
            _result("same-chapter", 0.80, "Book A", "Ch1"),
            _result("new-chapter", 0.75, "Book A", "Ch2"),
        ]
        selected = select_diverse(pool, 2, mode=DiversityMode.PERSONA_GREEDY)
        assert [r.fragment_id for r in selected] == ["top", "new-chapter"]

    def test_persona_greedy_ignores_chapters_when_missing(self):
        pool = [
            _result("top", 0.90, "Book A"),
            _result("untitled", 0.80, "Book A"),
            _result("chaptered", 0.65, "Book A", "Ch2"),
        ]
        selected = select_diverse(pool, 2, mode=DiversityMode.PERSONA_GREEDY)
        # A missing chapter draws neither the same-chapter penalty nor the new-chapter bonus
        assert [r.fragment_id for r in selected] == ["top", "untitled"]

    def test_results_without_source_are_distinct(self):
        pool = [_result(f"n{i}", 0.9 - i * 0.1, "") for i in range(4)]
        selected = select_diverse(pool, 3, mode=DiversityMode.PERSONA_GREEDY)
        assert len(selected) == 3


# 3. Persona history
class TestDiversityTracker:
    def test_unknown_persona_has_empty_history(self, tracker):
        assert tracker.recent("jung") == RecentUsage()

    def test_record_and_recent(self, tracker):
        tracker.record("jung", [_result("a1", 0.9, "Book A", "Ch1"), _result("b1", 0.8, "Book B")])
        recent = tracker.recent("jung")
        assert recent.fragment_ids == ["a1", "b1"]
        assert recent.sources == ["Book A", "Book B"]
        assert recent.chapters == ["Book A-Ch1"]

    def test_histories_are_per_persona(self, tracker):
        tracker.record("jung", [_result("a1", 0.9, "Book A")])
        assert tracker.recent("freud").fragment_ids == []

    def test_fragment_id_cap(self, tracker):
        tracker.record("jung", [_result(f"f{i}", 0.5, "Book A") for i in range(60)])
        ids = tracker.recent("jung").fragment_ids
        assert len(ids) == 50
        assert "f0" not in ids
        assert "f59" in ids

    def test_persona_cap_override(self, tracker):
        tracker.record("freud", [_result(f"f{i}", 0.5, "Book A") for i in range(120)])
        assert len(tracker.recent("freud").fragment_ids) == 100

    def test_source_and_chapter_caps(self, tracker):
        tracker.record(
            "jung", [_result(f"f{i}", 0.5, f"Book {i}", f"Ch{i}") for i in range(40)]
        )
        recent = tracker.recent("jung")
        assert len(recent.sources) == 20
        assert len(recent.chapters) == 30

    def test_clear(self, tracker):
        tracker.record("jung", [_result("a1", 0.9, "Book A")])
        tracker.record("freud", [_result("f1", 0.9, "Book F")])

        tracker.clear("jung")
        assert tracker.recent("jung").fragment_ids == []
        assert tracker.recent("freud").fragment_ids == ["f1"]

        tracker.clear()
        assert tracker.recent("freud").fragment_ids == []

    def test_zero_cap_disables_history(self):
        tracker = DiversityTracker(id_cap=0, source_cap=0, chapter_cap=0, id_cap_overrides={})
        tracker.record("jung", [_result("a1", 0.9, "Book A", "Ch1")])
        assert tracker.recent("jung") == RecentUsage()
