"""
English Tokenizer Module

Shared preprocessing for BM25 indexing, query terms and the query-overlap
quality filter. Index-time and query-time text must go through the same
tokenizer or BM25 scores silently degrade.
"""

import re
from functools import lru_cache
from typing import Optional

_WORD_SPLIT = re.compile(r"[^\w]+", re.UNICODE)


class DreamTokenizer:
    """
    Lowercasing, punctuation-stripping whitespace tokenizer.

    Tokens of two characters or fewer and stopwords are dropped.
    """

    def __init__(self, extra_stopwords: Optional[set[str]] = None):
        self._extra_stopwords = frozenset(extra_stopwords or ())

    def tokenize(self, text: str) -> list[str]:
        """
        Tokenize text for BM25.

        Args:
            text: Text to tokenize

        Returns:
            List of tokens, in order, duplicates kept
        """
        if not text:
            return []
        return [
            token
            for token in self._split(text)
            if len(token) > 2 and token not in self.stopwords
        ]

    def significant_terms(self, text: str) -> set[str]:
        """Distinct content words longer than three characters."""
        return {
            token
            for token in self._split(text)
            if len(token) > 3 and token not in self.stopwords
        }

    def _split(self, text: str) -> list[str]:
        normalized = self._normalize(text)
        return [t for t in _WORD_SPLIT.split(normalized) if t and not t.isdigit()]

    def _normalize(self, text: str) -> str:
        text = text.lower().replace("’", "'")
        # Drop possessive/contraction tails so "mother's" indexes as "mother"
        text = re.sub(r"'(s|re|ve|ll|d|t|m)\b", " ", text)
        text = text.replace("_", " ")
        return re.sub(r"\s+", " ", text).strip()

    @property
    def stopwords(self) -> frozenset[str]:
        return _STOPWORDS | self._extra_stopwords


_STOPWORDS = frozenset(
    {
        # Function words
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
        "to", "was", "will", "with", "we", "i", "you", "me", "my", "our",
        "this", "they", "their", "them", "have", "had", "can", "could",
        "would", "should", "may", "might", "must", "shall", "do", "does",
        "did", "get", "got", "make", "made", "go", "went", "come", "came",
        "she", "her", "him", "his", "but", "not", "or", "so", "if", "then",
        "than", "there", "these", "those", "were", "been", "being", "into",
        "onto", "about", "while", "when", "where", "which", "who", "whom",
        "what", "through", "over", "under", "again", "some", "such", "very",
        "just", "also", "only", "all", "any", "each", "other", "more", "most",
        "one", "own", "same", "too", "out", "off", "up", "down",
        # Connectors common in philosophical prose
        "thus", "therefore", "hence", "moreover", "furthermore", "however",
        "nevertheless", "nonetheless", "whereas", "whereby", "wherein",
        "upon", "itself", "himself", "herself", "themselves",
    }
)


@lru_cache(maxsize=1)
def get_tokenizer() -> DreamTokenizer:
    return DreamTokenizer()


def tokenize(text: str) -> list[str]:
    """Convenience function using the shared tokenizer."""
    return get_tokenizer().tokenize(text)


def significant_terms(text: str) -> set[str]:
    return get_tokenizer().significant_terms(text)


def query_overlap_ratio(query_terms: set[str], content: str) -> Optional[float]:
    """
    Share of query terms present in content.

    Returns None when the query has no significant terms, so callers can
    skip the check instead of dividing by zero.
    """
    if not query_terms:
        return None
    content_terms = significant_terms(content)
    return len(query_terms & content_terms) / len(query_terms)
