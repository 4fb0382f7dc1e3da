"""
RAG context prompt rendering tests

Usage:
    pytest backend/tests/test_prompt_context.py -v
"""

from dreamrag.models import RAGContext, SearchResult, SymbolInterpretation
from dreamrag.prompts.rag_context import (
    CONTEXT_INSTRUCTION,
    DREAM_CONTENT_MARKER,
    KNOWLEDGE_HEADER,
    SYMBOLS_HEADER,
    THEMES_HEADER,
    enrich_prompt_with_context,
    format_rag_context,
)
from tests.fixtures.backends import MAN_AND_SYMBOLS, SERPENT_TEXT, TRANSFORMATION, WATER_ONE_TEXT


def _context(**kwargs) -> RAGContext:
    passages = [
        SearchResult(
            fragment_id="water1",
            text=WATER_ONE_TEXT,
            metadata={"source": MAN_AND_SYMBOLS, "chapter": "Approaching the Unconscious"},
            semantic_score=0.62,
            hybrid_score=0.7,
        ),
        SearchResult(
            fragment_id="serpent",
            text=SERPENT_TEXT,
            metadata={"source": TRANSFORMATION},
            hybrid_score=1.4,
        ),
    ]
    defaults = {
        "relevant_passages": passages,
        "symbols": [SymbolInterpretation("serpent", ["renewal", "transformation"])],
        "themes": ["collective unconscious"],
    }
    defaults.update(kwargs)
    return RAGContext(**defaults)


class TestFormatRagContext:
    def test_empty_context_renders_nothing(self):
        assert format_rag_context(RAGContext.empty()) == ""

    def test_sections(self):
        text = format_rag_context(_context())

        assert text.startswith(KNOWLEDGE_HEADER)
        assert f'1. From "{MAN_AND_SYMBOLS}" - Approaching the Unconscious:' in text
        assert f'2. From "{TRANSFORMATION}":' in text
        assert "[Relevance: 62.0%]" in text
        # Hybrid scores above 1 are clamped
        assert "[Relevance: 100.0%]" in text
        assert f"{SYMBOLS_HEADER}\n- serpent: renewal | transformation" in text
        assert text.endswith(f"{THEMES_HEADER}\n- collective unconscious")

    def test_passages_dropped_from_end_to_fit(self):
        full = format_rag_context(_context(symbols=[], themes=[]), max_chars=10_000)
        limited = format_rag_context(_context(symbols=[], themes=[]), max_chars=len(full) - 10)

        assert "1. From" in limited
        assert "2. From" not in limited
        assert len(limited) <= len(full) - 10

    def test_first_passage_truncated_when_alone_too_long(self):
        text = format_rag_context(_context(symbols=[], themes=[]), max_chars=150)

        assert "1. From" in text
        assert '..."' in text
        assert len(text) <= 150

    def test_unknown_source_label(self):
        context = RAGContext(
            relevant_passages=[SearchResult(fragment_id="x", text="Some passage text.", hybrid_score=0.5)]
        )
        assert '1. From "Unknown source":' in format_rag_context(context)


class TestEnrichPrompt:
    def test_inserted_before_dream_content(self):
        base = f"You are a Jungian analyst.\n\n{DREAM_CONTENT_MARKER}\nI was falling."
        prompt = enrich_prompt_with_context(base, _context())

        assert prompt.startswith("You are a Jungian analyst.")
        assert prompt.index(KNOWLEDGE_HEADER) < prompt.index(CONTEXT_INSTRUCTION)
        assert prompt.index(CONTEXT_INSTRUCTION) < prompt.index(DREAM_CONTENT_MARKER)
        assert prompt.count(DREAM_CONTENT_MARKER) == 1
        assert prompt.endswith("I was falling.")

    def test_appended_without_marker(self):
        prompt = enrich_prompt_with_context("Interpret the dream.", _context())
        assert prompt.startswith("Interpret the dream.\n\n" + KNOWLEDGE_HEADER)
        assert prompt.rstrip().endswith(CONTEXT_INSTRUCTION)

    def test_empty_context_leaves_prompt_unchanged(self):
        base = f"Interpret.\n{DREAM_CONTENT_MARKER}\nI was falling."
        assert enrich_prompt_with_context(base, RAGContext.empty()) == base
