"""
Query Analyzer Module

Extracts theme codes, concepts, interpretive hints and keywords from a
dream narrative. Runs synchronously before any backend call.
"""

import re
from functools import lru_cache
from typing import Optional

from dreamrag.models import SearchQuery
from dreamrag.utils.secure_logger import get_logger
from dreamrag.utils.theme_vocabulary import ThemeVocabulary, get_theme_vocabulary

logger = get_logger(__name__)

# Theoretical terms that are worth keeping as keywords when a dreamer uses them
PHILOSOPHICAL_TERMS = (
    "archetype",
    "unconscious",
    "shadow",
    "anima",
    "animus",
    "ego",
    "self",
    "persona",
    "individuation",
)


@lru_cache(maxsize=2048)
def _keyword_pattern(keyword: str) -> re.Pattern:
    # Anchored at a word start so "snake" also matches "snakes"
    return re.compile(r"\b" + re.escape(keyword), re.IGNORECASE)


class QueryAnalyzer:
    def __init__(self, vocabulary: Optional[ThemeVocabulary] = None):
        self._vocabulary = vocabulary

    @property
    def vocabulary(self) -> ThemeVocabulary:
        if self._vocabulary is None:
            self._vocabulary = get_theme_vocabulary()
        return self._vocabulary

    def detect_themes(self, text: str) -> tuple[list[str], list[str]]:
        """
        Match the text against every theme's keyword list.

        Returns:
            (theme_codes, matched_keywords) in vocabulary order
        """
        if not text or not text.strip():
            return [], []

        codes: list[str] = []
        keywords: list[str] = []
        for code in self.vocabulary.themes:
            hit = False
            for keyword in self.vocabulary.match_keywords(code):
                if _keyword_pattern(keyword).search(text):
                    hit = True
                    if keyword not in keywords:
                        keywords.append(keyword)
            if hit:
                codes.append(code)
        return codes, keywords

    def analyze(self, text: str, interpreter: str) -> SearchQuery:
        """
        Analyze a dream narrative.

        Empty or very short text yields a query with no themes; callers then
        rely on lexical and semantic scores alone.
        """
        text = text or ""
        codes, keywords = self.detect_themes(text)
        concepts, hints = self.vocabulary.concepts_for(codes)

        lowered = text.lower()
        for term in PHILOSOPHICAL_TERMS:
            if term not in keywords and re.search(r"\b" + term + r"\b", lowered):
                keywords.append(term)

        if codes:
            logger.debug("Query themes for %s: %s", interpreter, ", ".join(codes))

        return SearchQuery(
            text=text,
            interpreter=interpreter,
            theme_codes=codes,
            concepts=concepts,
            interpretive_hints=hints,
            keywords=keywords,
        )
