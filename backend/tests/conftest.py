"""
Backend Tests - Shared Fixtures and Utilities

pytest conftest.py with shared fixtures for all test files.
"""

import random
import sys
from pathlib import Path
from typing import Optional

import pytest

# Add backend to path for imports (before other local imports)
sys.path.insert(0, str(Path(__file__).parent.parent))

from dreamrag.config import settings
from dreamrag.models import KnowledgeFragment
from dreamrag.utils import telemetry
from dreamrag.utils.bm25_store import clear_index_cache
from dreamrag.utils.diversity import DiversityTracker
from dreamrag.utils.hybrid_search import HybridSearchEngine
from dreamrag.utils.query_analyzer import QueryAnalyzer
from dreamrag.utils.symbol_extractor import SymbolLexicon
from dreamrag.utils.theme_associations import ThemeAssociationIndex
from dreamrag.utils.theme_vocabulary import ThemeVocabulary
from tests.fixtures.backends import (
    FALLING_TEXT,
    FOOTBALL_TEXT,
    MAN_AND_SYMBOLS,
    MEMORIES,
    SERPENT_TEXT,
    SPORTS_ALMANAC,
    TRANSFORMATION,
    WATER_ONE_TEXT,
    WATER_TWO_TEXT,
    FakeEmbeddingProvider,
    FakeLexicalBackend,
    FakeVectorBackend,
    lexical_row,
    semantic_row,
)


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    """Keep persisted indexes and counters per-test."""
    monkeypatch.setattr(settings, "bm25_persist_dir", str(tmp_path / "bm25"))
    clear_index_cache()
    telemetry.reset()
    yield
    clear_index_cache()
    telemetry.reset()


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def vocabulary() -> ThemeVocabulary:
    """Bundled theme vocabulary (shared across the session)"""
    return ThemeVocabulary.load(settings.themes_path, settings.theme_concepts_path)


@pytest.fixture(scope="session")
def lexicon() -> SymbolLexicon:
    """Bundled symbol lexicon"""
    return SymbolLexicon.load(settings.symbol_lexicon_path)


@pytest.fixture
def analyzer(vocabulary) -> QueryAnalyzer:
    return QueryAnalyzer(vocabulary)


@pytest.fixture
def tracker() -> DiversityTracker:
    """Fresh diversity history for every test"""
    return DiversityTracker(
        id_cap=50, source_cap=20, chapter_cap=30, id_cap_overrides={"freud": 100}
    )


@pytest.fixture
def fragment_pool() -> list[KnowledgeFragment]:
    """Small mixed-persona corpus for index-level tests"""
    return [
        KnowledgeFragment(
            id="jung-water",
            text=WATER_ONE_TEXT,
            source=MAN_AND_SYMBOLS,
            chapter="Approaching the Unconscious",
            theme_codes=("water",),
            metadata={"topic": "symbols", "content_type": "symbol"},
        ),
        KnowledgeFragment(
            id="jung-serpent",
            text=SERPENT_TEXT,
            source=TRANSFORMATION,
            chapter="The Sacrifice",
            theme_codes=("snake", "transformation"),
            metadata={"topic": "symbols"},
        ),
        KnowledgeFragment(
            id="jung-falling",
            text=FALLING_TEXT,
            source=MEMORIES,
            chapter="Confrontation with the Unconscious",
            theme_codes=("falling",),
            metadata={"topic": "dreams", "content_type": "dream_example"},
        ),
        KnowledgeFragment(
            id="jung-football",
            text=FOOTBALL_TEXT,
            source=SPORTS_ALMANAC,
            chapter="Rules",
        ),
        KnowledgeFragment(
            id="freud-water",
            text="Dreams of water are frequently birth dreams; the child is rescued from the water.",
            source="The Interpretation of Dreams",
            chapter="Typical Dreams",
            interpreter="freud",
            theme_codes=("water",),
        ),
    ]


@pytest.fixture
def scenario_semantic_rows() -> list[dict]:
    return [
        semantic_row("water1", WATER_ONE_TEXT, 0.62, MAN_AND_SYMBOLS, "Approaching the Unconscious"),
        semantic_row("water2", WATER_TWO_TEXT, 0.55, MAN_AND_SYMBOLS, "The Archetype in Dream Symbolism"),
        semantic_row("serpent", SERPENT_TEXT, 0.58, TRANSFORMATION, "The Sacrifice", theme_codes="snake"),
    ]


@pytest.fixture
def scenario_lexical_rows() -> list[dict]:
    return [
        lexical_row("water1", WATER_ONE_TEXT, 6.0, MAN_AND_SYMBOLS, "Approaching the Unconscious"),
        lexical_row("football", FOOTBALL_TEXT, 2.0, SPORTS_ALMANAC, "Rules"),
    ]


@pytest.fixture
def make_engine(tracker, analyzer, lexicon):
    """Engine factory wired to in-memory fakes."""

    def _make(
        semantic_rows: Optional[list[dict]] = None,
        lexical_rows: Optional[list[dict]] = None,
        embedder: Optional[FakeEmbeddingProvider] = None,
        vector: Optional[FakeVectorBackend] = None,
        lexical: Optional[FakeLexicalBackend] = None,
        associations: Optional[ThemeAssociationIndex] = None,
        seed: int = 7,
    ) -> HybridSearchEngine:
        return HybridSearchEngine(
            embedder=embedder or FakeEmbeddingProvider(),
            vector_backend=vector or FakeVectorBackend(semantic_rows),
            lexical_backend=lexical or FakeLexicalBackend(lexical_rows),
            analyzer=analyzer,
            tracker=tracker,
            associations=associations if associations is not None else ThemeAssociationIndex(),
            lexicon=lexicon,
            rng=random.Random(seed),
        )

    return _make


# =============================================================================
# Pytest Markers and Hooks
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests that need a real embedding model or network"
    )
