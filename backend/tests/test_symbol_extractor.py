"""
Symbol/theme post-processing tests

Usage:
    pytest backend/tests/test_symbol_extractor.py -v
"""

import pytest

from dreamrag.exceptions import LexiconError
from dreamrag.models import SearchResult
from dreamrag.utils.symbol_extractor import SymbolLexicon, extract_symbols_and_themes
from tests.fixtures.backends import (
    SCENARIO_DREAM,
    SERPENT_TEXT,
    WATER_ONE_TEXT,
    WATER_TWO_TEXT,
)


def _passage(fragment_id: str, text: str) -> SearchResult:
    return SearchResult(fragment_id=fragment_id, text=text, metadata={"source": "Book"})


@pytest.fixture
def scenario_passages() -> list[SearchResult]:
    return [
        _passage("water1", WATER_ONE_TEXT),
        _passage("water2", WATER_TWO_TEXT),
        _passage("serpent", SERPENT_TEXT),
    ]


def _small_lexicon(**overrides) -> SymbolLexicon:
    data = {
        "version": 1,
        "symbols": [
            {"symbol": "water", "pattern": r"\b(water|sea)\b", "variations": ["water", "sea"]},
        ],
        "theme_terms": {"default": ["unconscious", "psyche", "symbol"]},
        "max_interpretations": {"default": 1},
        "max_themes": {"default": 2},
    }
    data.update(overrides)
    return SymbolLexicon.from_dict(data)


# 1. Lexicon
class TestSymbolLexicon:
    def test_bundled_lexicon(self, lexicon):
        assert lexicon.version == 1
        assert lexicon.entry("serpent") is not None
        assert lexicon.entry("unicorn") is None
        assert lexicon.interpretation_limit("jung") == 3
        assert lexicon.interpretation_limit("freud") == 4
        assert lexicon.theme_limit("jung") == 5
        assert lexicon.theme_limit("freud") == 7

    def test_match_symbols_in_lexicon_order(self, lexicon):
        assert lexicon.match_symbols(SCENARIO_DREAM) == ["water", "falling", "serpent"]
        assert lexicon.match_symbols("") == []

    def test_unknown_persona_uses_default_vocabulary(self, lexicon):
        terms = [term for term, _ in lexicon.theme_patterns("adler")]
        assert "collective unconscious" in terms
        assert "libido" not in terms

    def test_unsupported_version(self):
        with pytest.raises(LexiconError, match="version"):
            _small_lexicon(version=2)

    def test_invalid_pattern(self):
        with pytest.raises(LexiconError) as exc_info:
            _small_lexicon(symbols=[{"symbol": "water", "pattern": "(unclosed"}])
        assert exc_info.value.context == {"symbol": "water"}

    def test_entry_without_pattern(self):
        with pytest.raises(LexiconError):
            _small_lexicon(symbols=[{"symbol": "water"}])

    def test_table_without_default(self):
        with pytest.raises(LexiconError, match="max_themes"):
            _small_lexicon(max_themes={"freud": 3})

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(LexiconError):
            SymbolLexicon.load(tmp_path / "missing.json")

    def test_load_invalid_json(self, tmp_path):
        path = tmp_path / "lexicon.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(LexiconError):
            SymbolLexicon.load(path)


# 2. Extraction
class TestExtractSymbolsAndThemes:
    def test_scenario(self, lexicon, scenario_passages):
        symbols, themes = extract_symbols_and_themes(
            SCENARIO_DREAM, scenario_passages, "jung", lexicon=lexicon
        )
        by_symbol = {s.symbol: s.interpretations for s in symbols}

        assert [s.symbol for s in symbols] == ["water", "falling", "serpent"]
        assert by_symbol["serpent"] == [
            "The serpent is an ancient symbol of transformation and renewal",
            "In many myths the snake guards the treasure hidden in the unconscious",
        ]
        assert by_symbol["falling"] == [
            "A descent into the water is a descent into the depths of the psyche"
        ]
        assert themes == ["collective unconscious"]

    def test_interpretations_capped_per_persona(self, lexicon, scenario_passages):
        jung, _ = extract_symbols_and_themes(SCENARIO_DREAM, scenario_passages, "jung", lexicon=lexicon)
        freud, _ = extract_symbols_and_themes(SCENARIO_DREAM, scenario_passages, "freud", lexicon=lexicon)
        assert len(jung[0].interpretations) == 3
        assert len(freud[0].interpretations) == 4

    def test_persona_vocabulary(self, lexicon, scenario_passages):
        _, themes = extract_symbols_and_themes(SCENARIO_DREAM, scenario_passages, "freud", lexicon=lexicon)
        assert themes == ["unconscious"]

    def test_unsupported_symbol_is_omitted(self, lexicon):
        symbols, _ = extract_symbols_and_themes(
            "A fire burned near the water",
            [_passage("water1", WATER_ONE_TEXT)],
            "jung",
            lexicon=lexicon,
        )
        assert [s.symbol for s in symbols] == ["water"]

    def test_focus_symbols_come_first(self, lexicon, scenario_passages):
        symbols, _ = extract_symbols_and_themes(
            SCENARIO_DREAM,
            scenario_passages,
            "jung",
            focus_symbols=["serpent", "serpent"],
            lexicon=lexicon,
        )
        assert [s.symbol for s in symbols] == ["serpent", "water", "falling"]

    def test_focus_symbol_outside_lexicon(self, lexicon):
        symbols, _ = extract_symbols_and_themes(
            "",
            [_passage("maze", "The labyrinth is the path toward the hidden centre of the self.")],
            "jung",
            focus_symbols=["labyrinth"],
            lexicon=lexicon,
        )
        assert [s.symbol for s in symbols] == ["labyrinth"]

    def test_short_and_long_sentences_skipped(self, lexicon):
        text = "Water. " + "The water " + "flows on and on " * 30 + "."
        symbols, _ = extract_symbols_and_themes("water", [_passage("p", text)], "jung", lexicon=lexicon)
        assert symbols == []

    def test_sentences_not_repeated(self, lexicon):
        passages = [_passage("a", WATER_ONE_TEXT), _passage("b", WATER_ONE_TEXT)]
        symbols, _ = extract_symbols_and_themes("water", passages, "jung", lexicon=lexicon)
        assert len(symbols[0].interpretations) == 2

    def test_theme_limit(self):
        lexicon = _small_lexicon()
        passages = [_passage("a", WATER_ONE_TEXT), _passage("b", WATER_TWO_TEXT)]
        symbols, themes = extract_symbols_and_themes("the sea", passages, "jung", lexicon=lexicon)
        assert themes == ["unconscious", "symbol"]
        assert len(symbols[0].interpretations) == 1

    def test_no_passages(self, lexicon):
        assert extract_symbols_and_themes(SCENARIO_DREAM, [], "jung", lexicon=lexicon) == ([], [])
