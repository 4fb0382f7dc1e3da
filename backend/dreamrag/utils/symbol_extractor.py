"""
Symbol/Theme Post-Processor

Pairs the dream's symbols with supporting sentences from the selected
passages and collects the theoretical terms those passages use. The symbol
patterns, variations and per-persona vocabularies come from a versioned
lexicon asset (data/symbol_lexicon.json) so they can be swapped without
touching the fusion code.
"""

import json
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

from dreamrag.config import settings
from dreamrag.exceptions import LexiconError
from dreamrag.models import SearchResult, SymbolInterpretation
from dreamrag.utils.secure_logger import get_logger

logger = get_logger(__name__)

SUPPORTED_LEXICON_VERSION = 1

SENTENCE_SPLIT = re.compile(r"[.!?]+")
MIN_SENTENCE_CHARS = 20
MAX_SENTENCE_CHARS = 300
MAX_SENTENCES_PER_PASSAGE = 3


@dataclass(frozen=True)
class SymbolEntry:
    symbol: str
    pattern: re.Pattern
    variations: re.Pattern


def _word_start_pattern(words: Iterable[str]) -> re.Pattern:
    alternatives = sorted({w.lower() for w in words if w}, key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in alternatives) + r")", re.IGNORECASE)


def _per_persona(table: dict, interpreter: str, name: str):
    if "default" not in table:
        raise LexiconError(f"Lexicon table {name!r} has no default entry")
    return table.get(interpreter, table["default"])


class SymbolLexicon:
    def __init__(
        self,
        version: int,
        symbols: list[SymbolEntry],
        theme_terms: dict[str, list[str]],
        max_interpretations: dict[str, int],
        max_themes: dict[str, int],
    ):
        self.version = version
        self.symbols = symbols
        self.theme_terms = theme_terms
        self.max_interpretations = max_interpretations
        self.max_themes = max_themes
        self._theme_patterns: dict[str, list[tuple[str, re.Pattern]]] = {}
        # Validate the per-persona tables eagerly
        for name, table in (
            ("theme_terms", theme_terms),
            ("max_interpretations", max_interpretations),
            ("max_themes", max_themes),
        ):
            _per_persona(table, "default", name)

    @classmethod
    def from_dict(cls, data: dict) -> "SymbolLexicon":
        version = data.get("version")
        if version != SUPPORTED_LEXICON_VERSION:
            raise LexiconError(f"Unsupported lexicon version {version!r}")

        entries: list[SymbolEntry] = []
        for raw in data.get("symbols", []):
            symbol = raw.get("symbol")
            if not symbol or not raw.get("pattern"):
                raise LexiconError("Lexicon symbol entry needs 'symbol' and 'pattern'", {"entry": raw})
            try:
                pattern = re.compile(raw["pattern"], re.IGNORECASE)
            except re.error as e:
                raise LexiconError(f"Invalid pattern for {symbol!r}: {e}", {"symbol": symbol}) from e
            entries.append(
                SymbolEntry(
                    symbol=symbol,
                    pattern=pattern,
                    variations=_word_start_pattern(raw.get("variations") or [symbol]),
                )
            )

        return cls(
            version=version,
            symbols=entries,
            theme_terms={k: list(v) for k, v in data.get("theme_terms", {}).items()},
            max_interpretations=dict(data.get("max_interpretations", {})),
            max_themes=dict(data.get("max_themes", {})),
        )

    @classmethod
    def load(cls, path: str | Path) -> "SymbolLexicon":
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise LexiconError(f"Could not read lexicon {path}", {"path": str(path)}) from e
        lexicon = cls.from_dict(data)
        logger.info("Loaded symbol lexicon v%s (%d symbols)", lexicon.version, len(lexicon.symbols))
        return lexicon

    def entry(self, symbol: str) -> Optional[SymbolEntry]:
        for entry in self.symbols:
            if entry.symbol == symbol:
                return entry
        return None

    def match_symbols(self, text: str) -> list[str]:
        if not text:
            return []
        return [entry.symbol for entry in self.symbols if entry.pattern.search(text)]

    def theme_patterns(self, interpreter: str) -> list[tuple[str, re.Pattern]]:
        key = interpreter if interpreter in self.theme_terms else "default"
        if key not in self._theme_patterns:
            self._theme_patterns[key] = [
                (term, re.compile(r"\b" + re.escape(term) + r"\b", re.IGNORECASE))
                for term in self.theme_terms[key]
            ]
        return self._theme_patterns[key]

    def interpretation_limit(self, interpreter: str) -> int:
        return int(_per_persona(self.max_interpretations, interpreter, "max_interpretations"))

    def theme_limit(self, interpreter: str) -> int:
        return int(_per_persona(self.max_themes, interpreter, "max_themes"))


@lru_cache(maxsize=1)
def get_symbol_lexicon() -> SymbolLexicon:
    return SymbolLexicon.load(settings.symbol_lexicon_path)


def _supporting_sentences(content: str, variations: re.Pattern) -> list[str]:
    sentences: list[str] = []
    for raw in SENTENCE_SPLIT.split(content):
        if len(sentences) >= MAX_SENTENCES_PER_PASSAGE:
            break
        if not variations.search(raw):
            continue
        sentence = raw.strip()
        if MIN_SENTENCE_CHARS < len(sentence) < MAX_SENTENCE_CHARS:
            sentences.append(sentence)
    return sentences


def extract_symbols_and_themes(
    dream_text: str,
    passages: list[SearchResult],
    interpreter: str,
    focus_symbols: Optional[list[str]] = None,
    lexicon: Optional[SymbolLexicon] = None,
) -> tuple[list[SymbolInterpretation], list[str]]:
    """
    Extract symbol interpretations and theme labels from selected passages.

    Args:
        dream_text: The dream narrative
        passages: Final selected passages
        interpreter: Persona, selects vocabularies and limits
        focus_symbols: Symbols to look for regardless of the dream text
        lexicon: Lexicon override (defaults to the configured asset)

    Returns:
        (symbols, themes). A symbol no passage supports is omitted.
    """
    lexicon = lexicon or get_symbol_lexicon()

    symbols: list[str] = []
    for symbol in list(focus_symbols or []) + lexicon.match_symbols(dream_text):
        if symbol not in symbols:
            symbols.append(symbol)

    interpretations: dict[str, list[str]] = {}
    themes: list[str] = []
    theme_patterns = lexicon.theme_patterns(interpreter)

    for passage in passages:
        content = passage.text or ""
        for symbol in symbols:
            entry = lexicon.entry(symbol)
            variations = entry.variations if entry else _word_start_pattern([symbol])
            if not variations.search(content):
                continue
            bucket = interpretations.setdefault(symbol, [])
            for sentence in _supporting_sentences(content, variations):
                if sentence not in bucket:
                    bucket.append(sentence)

        for term, pattern in theme_patterns:
            if term not in themes and pattern.search(content):
                themes.append(term)

    limit = lexicon.interpretation_limit(interpreter)
    result = [
        SymbolInterpretation(symbol=symbol, interpretations=interpretations[symbol][:limit])
        for symbol in symbols
        if interpretations.get(symbol)
    ]
    if result:
        logger.debug("Symbols for %s: %s", interpreter, ", ".join(s.symbol for s in result))
    return result, themes[: lexicon.theme_limit(interpreter)]
