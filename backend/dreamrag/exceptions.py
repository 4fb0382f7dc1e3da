"""
Error taxonomy for the retrieval engine.

Every error carries an optional ``context`` dict so callers can log the
failing interpreter, arm or filter without parsing messages.

There is no "no results" error: an empty RAGContext is a normal outcome.
"""

from typing import Any, Optional


class DreamRAGError(Exception):
    """Base exception for the retrieval engine."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.context = context or {}


class EmbeddingUnavailableError(DreamRAGError):
    """The query embedding could not be produced. Fatal to the call."""


class LexicalBackendUnavailableError(DreamRAGError):
    """The BM25 backend failed. The engine continues with semantic results."""


class SemanticBackendUnavailableError(DreamRAGError):
    """The vector index failed. The engine continues with lexical results."""


class RetrievalUnavailableError(DreamRAGError):
    """Every requested retrieval arm failed."""


class MalformedMetadataFilterError(DreamRAGError, ValueError):
    """A metadata filter could not be interpreted."""


class LexiconError(DreamRAGError):
    """A static vocabulary or lexicon asset is malformed."""
