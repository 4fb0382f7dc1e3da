"""
Theme Vocabulary Module

Loads the static dream-theme vocabulary (theme code -> keywords and symbol
hints) and the theme -> concept table used to derive interpretive hints.
Both assets are versioned JSON files loaded once per process.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

from dreamrag.config import settings
from dreamrag.exceptions import LexiconError
from dreamrag.models import ThemeConcept, ThemeTag
from dreamrag.utils.secure_logger import get_logger

logger = get_logger(__name__)

SUPPORTED_VOCABULARY_VERSION = 1

# Keywords at or below this length are ignored when matching queries
MIN_KEYWORD_LENGTH = 3


def _read_asset(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise LexiconError(f"Could not read asset {path}", {"path": str(path)}) from e

    version = data.get("version") if isinstance(data, dict) else None
    if version != SUPPORTED_VOCABULARY_VERSION:
        raise LexiconError(
            f"Unsupported asset version {version!r}",
            {"path": str(path), "expected": SUPPORTED_VOCABULARY_VERSION},
        )
    return data


def _parse_theme(raw: dict) -> ThemeTag:
    code = (raw.get("code") or "").strip()
    if not code:
        raise LexiconError("Theme entry without a code", {"entry": raw})
    keywords = tuple(
        k.strip().lower() for k in raw.get("keywords", []) if isinstance(k, str) and k.strip()
    )
    hints = raw.get("symbolInterpretations") or raw.get("symbol_interpretations") or {}
    return ThemeTag(
        code=code,
        name=raw.get("name") or code,
        description=raw.get("description") or "",
        keywords=keywords,
        symbol_interpretations=dict(hints),
    )


class ThemeVocabulary:
    """
    Theme tags plus the theme -> concept mapping.

    ``match_keywords`` is what the query analyzer scans for: each theme's
    keyword list plus the names of its symbol hints, lowercased, with short
    keywords removed.
    """

    def __init__(
        self,
        themes: Iterable[ThemeTag],
        concepts: Optional[dict[str, ThemeConcept]] = None,
    ):
        self.themes: dict[str, ThemeTag] = {}
        for theme in themes:
            if theme.code in self.themes:
                raise LexiconError(f"Duplicate theme code {theme.code!r}")
            self.themes[theme.code] = theme
        self.concepts = concepts or {}

    @classmethod
    def load(cls, themes_path: str | Path, concepts_path: str | Path | None = None):
        data = _read_asset(Path(themes_path))
        themes = [_parse_theme(raw) for raw in data.get("themes", [])]

        concepts: dict[str, ThemeConcept] = {}
        if concepts_path:
            concept_data = _read_asset(Path(concepts_path))
            for code, raw in concept_data.get("concepts", {}).items():
                concepts[code] = ThemeConcept(
                    theme_code=code,
                    concepts=tuple(raw.get("concepts", [])),
                    interpretive_approach=raw.get("interpretiveApproach", ""),
                )

        vocabulary = cls(themes, concepts)
        logger.info(
            "Loaded %d themes and %d concept mappings",
            len(vocabulary.themes),
            len(vocabulary.concepts),
        )
        return vocabulary

    def __contains__(self, code: str) -> bool:
        return code in self.themes

    def get(self, code: str) -> Optional[ThemeTag]:
        return self.themes.get(code)

    def match_keywords(self, code: str) -> list[str]:
        theme = self.themes.get(code)
        if theme is None:
            return []
        keywords: list[str] = []
        for keyword in list(theme.keywords) + [s.lower() for s in theme.symbol_interpretations]:
            if len(keyword) > MIN_KEYWORD_LENGTH and keyword not in keywords:
                keywords.append(keyword)
        return keywords

    def concepts_for(self, codes: Iterable[str]) -> tuple[list[str], list[str]]:
        """
        Map theme codes to higher-level concepts and interpretive hints.

        Returns:
            (concepts, interpretive_hints), de-duplicated in first-seen order
        """
        concepts: list[str] = []
        hints: list[str] = []
        for code in codes:
            mapping = self.concepts.get(code)
            if mapping is None:
                continue
            for concept in mapping.concepts:
                if concept not in concepts:
                    concepts.append(concept)
            if mapping.interpretive_approach and mapping.interpretive_approach not in hints:
                hints.append(mapping.interpretive_approach)
        return concepts, hints


@lru_cache(maxsize=1)
def get_theme_vocabulary() -> ThemeVocabulary:
    return ThemeVocabulary.load(settings.themes_path, settings.theme_concepts_path)
