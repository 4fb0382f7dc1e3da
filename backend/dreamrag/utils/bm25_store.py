"""
BM25 Index Store Module

Keyword search over knowledge fragments, one index per interpreter persona.
Scores come from bm25s (k1/b from settings); corpus statistics such as the
average document length are computed whenever the index is rebuilt.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import bm25s
from cachetools import LRUCache

from dreamrag.config import settings
from dreamrag.exceptions import LexicalBackendUnavailableError
from dreamrag.models import KnowledgeFragment
from dreamrag.utils.content_types import passes_theme_filter
from dreamrag.utils.secure_logger import get_logger
from dreamrag.utils.tokenizer import tokenize

logger = get_logger(__name__)

# Current JSON format version for schema validation
BM25_FORMAT_VERSION = 1


def _persist_dir() -> Path:
    return Path(settings.bm25_persist_dir)


@dataclass
class BM25Document:
    """A document in the BM25 index."""

    doc_id: str
    text: str
    tokens: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


class BM25Index:
    """
    BM25 index for a single interpreter persona.

    Documents are tokenized on insert; the bm25s index is rebuilt lazily on
    the next search after any change.
    """

    def __init__(self, interpreter: str):
        self.interpreter = interpreter
        self.documents: list[BM25Document] = []
        self._positions: dict[str, int] = {}
        self._vocabulary: set[str] = set()
        self._bm25: Optional[bm25s.BM25] = None

    def __len__(self) -> int:
        return len(self.documents)

    def add_document(self, doc_id: str, text: str, metadata: Optional[dict] = None):
        """
        Add or replace a document.

        Args:
            doc_id: Fragment id
            text: Fragment text
            metadata: Fragment metadata (source, chapter, theme_codes, ...)
        """
        tokens = tokenize(text)
        if not tokens:
            return

        doc = BM25Document(doc_id=doc_id, text=text, tokens=tokens, metadata=metadata or {})
        if doc_id in self._positions:
            self.documents[self._positions[doc_id]] = doc
            self._vocabulary = {t for d in self.documents for t in d.tokens}
        else:
            self._positions[doc_id] = len(self.documents)
            self.documents.append(doc)
            self._vocabulary.update(tokens)
        self._bm25 = None

    def add_fragments(self, fragments: Iterable[KnowledgeFragment]):
        for fragment in fragments:
            if fragment.interpreter != self.interpreter:
                continue
            self.add_document(fragment.id, fragment.text, fragment.to_metadata())

    def _build_index(self):
        if not self.documents:
            self._bm25 = None
            return

        corpus = [doc.tokens for doc in self.documents]
        self._bm25 = bm25s.BM25(k1=settings.rag_bm25_k1, b=settings.rag_bm25_b)
        self._bm25.index(corpus)

    def search(
        self,
        query_tokens: list[str],
        k: int = 10,
        theme_filter: Optional[set[str]] = None,
        associated_ids: Optional[set[str]] = None,
    ) -> list[tuple[str, float]]:
        """
        Search the index.

        Args:
            query_tokens: Preprocessed query terms
            k: Maximum number of results
            theme_filter: Keep only documents tagged with one of these codes
            associated_ids: Documents that pass the theme filter through a
                theme association rather than their own tags

        Returns:
            List of (doc_id, score) tuples with score > 0, best first
        """
        # Terms the corpus has never seen cannot contribute to any score
        known_tokens = [t for t in query_tokens if t in self._vocabulary]
        if not self.documents or not known_tokens or k <= 0:
            return []

        if self._bm25 is None:
            self._build_index()
        if self._bm25 is None:
            return []

        # Retrieve the whole corpus when filtering so the filter cannot starve k
        retrieve_k = len(self.documents) if theme_filter else min(k, len(self.documents))
        results, scores = self._bm25.retrieve([known_tokens], k=retrieve_k)
        if results is None or scores is None or len(results) == 0:
            return []

        output: list[tuple[str, float]] = []
        for rank, doc_idx in enumerate(results[0]):
            score_value = float(scores[0][rank])
            if score_value <= 0:
                continue
            doc = self.documents[int(doc_idx)]
            if theme_filter and not passes_theme_filter(
                doc.doc_id, doc.metadata, theme_filter, associated_ids
            ):
                continue
            output.append((doc.doc_id, score_value))
            if len(output) >= k:
                break

        return output

    def get_document(self, doc_id: str) -> Optional[BM25Document]:
        position = self._positions.get(doc_id)
        return self.documents[position] if position is not None else None

    def clear(self):
        self.documents = []
        self._positions = {}
        self._vocabulary = set()
        self._bm25 = None

    def save(self):
        """Save the index to disk as versioned JSON."""
        persist_dir = _persist_dir()
        persist_dir.mkdir(parents=True, exist_ok=True)
        json_path = persist_dir / f"{self.interpreter}.json"

        data = {
            "version": BM25_FORMAT_VERSION,
            "interpreter": self.interpreter,
            "documents": [
                {
                    "doc_id": doc.doc_id,
                    "text": doc.text,
                    "tokens": doc.tokens,
                    "metadata": doc.metadata,
                }
                for doc in self.documents
            ],
        }

        with open(json_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)

        logger.info("Saved BM25 index for %s (%d docs)", self.interpreter, len(self.documents))

    @classmethod
    def load(cls, interpreter: str) -> Optional["BM25Index"]:
        """
        Load an index from disk.

        Corrupted files are moved aside with a .corrupted suffix.

        Returns:
            BM25Index if found and readable, None otherwise
        """
        json_path = _persist_dir() / f"{interpreter}.json"
        if not json_path.exists():
            return None

        try:
            with open(json_path, encoding="utf-8") as f:
                data = json.load(f)

            version = data.get("version", 0)
            if version != BM25_FORMAT_VERSION:
                logger.warning("Unsupported BM25 index version %s for %s", version, interpreter)
                return None

            index = cls(interpreter)
            for doc_data in data.get("documents", []):
                doc = BM25Document(
                    doc_id=doc_data["doc_id"],
                    text=doc_data["text"],
                    tokens=doc_data["tokens"],
                    metadata=doc_data.get("metadata", {}),
                )
                index._positions[doc.doc_id] = len(index.documents)
                index.documents.append(doc)
                index._vocabulary.update(doc.tokens)

            logger.info("Loaded BM25 index for %s (%d docs)", interpreter, len(index.documents))
            return index

        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Error loading BM25 index for %s: %s", interpreter, e)
            corrupted_path = json_path.with_suffix(f".json.corrupted.{int(time.time())}")
            try:
                json_path.rename(corrupted_path)
                logger.warning("Moved corrupted index to %s", corrupted_path)
            except OSError as rename_error:
                logger.warning("Could not move corrupted index: %s", rename_error)
            return None

    @classmethod
    def delete(cls, interpreter: str) -> bool:
        json_path = _persist_dir() / f"{interpreter}.json"
        if not json_path.exists():
            return False
        json_path.unlink()
        logger.info("Deleted BM25 index for %s", interpreter)
        return True


# Bounded so a long-running process cannot accumulate every persona forever
_index_cache: LRUCache = LRUCache(maxsize=32)


def get_or_create_index(interpreter: str) -> BM25Index:
    """
    Get the cached index for a persona, loading it from disk on first use.
    """
    if interpreter in _index_cache:
        return _index_cache[interpreter]

    index = BM25Index.load(interpreter)
    if index is None:
        index = BM25Index(interpreter)

    _index_cache[interpreter] = index
    return index


def clear_index_cache(interpreter: Optional[str] = None):
    if interpreter:
        _index_cache.pop(interpreter, None)
    else:
        _index_cache.clear()


def _keyword_search(
    interpreter: str,
    query_terms: list[str],
    limit: int,
    theme_filter: Optional[set[str]] = None,
    associated_ids: Optional[set[str]] = None,
) -> list[dict]:
    index = get_or_create_index(interpreter)
    results: list[dict] = []
    hits = index.search(
        query_terms, k=limit, theme_filter=theme_filter, associated_ids=associated_ids
    )
    for doc_id, score in hits:
        doc = index.get_document(doc_id)
        if doc is None:
            continue
        results.append(
            {
                "id": doc_id,
                "text": doc.text,
                "metadata": doc.metadata,
                "bm25_score": score,
            }
        )
    return results


class BM25LexicalBackend:
    """
    Lexical search primitive backed by the per-persona BM25 indexes.

    Index access is synchronous, so it runs in a worker thread to keep the
    semantic arm free to proceed concurrently.
    """

    async def search(
        self,
        query_terms: list[str],
        interpreter: str,
        limit: int,
        theme_filter: Optional[list[str]] = None,
        associated_ids: Optional[set[str]] = None,
    ) -> list[dict]:
        if limit <= 0 or not query_terms:
            return []
        try:
            return await asyncio.to_thread(
                _keyword_search,
                interpreter,
                query_terms,
                limit,
                set(theme_filter) if theme_filter else None,
                associated_ids,
            )
        except Exception as e:
            raise LexicalBackendUnavailableError(
                f"BM25 search failed: {e}", {"interpreter": interpreter}
            ) from e

    def add_fragments(self, fragments: Iterable[KnowledgeFragment], persist: bool = False):
        """Index fragments into their persona's BM25 index."""
        by_interpreter: dict[str, list[KnowledgeFragment]] = {}
        for fragment in fragments:
            by_interpreter.setdefault(fragment.interpreter, []).append(fragment)
        for interpreter, items in by_interpreter.items():
            index = get_or_create_index(interpreter)
            index.add_fragments(items)
            if persist:
                index.save()
