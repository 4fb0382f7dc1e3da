"""
Vector Store Utility Module

Semantic search primitive over knowledge fragments using ChromaDB.

One collection per embedding backend (provider + model), in cosine space, so
fragments embedded by different models never share an index.
"""

import asyncio
import json
from pathlib import Path
from typing import Iterable, Optional

import chromadb
from chromadb.config import Settings as ChromaSettings

from dreamrag.config import settings
from dreamrag.exceptions import SemanticBackendUnavailableError
from dreamrag.models import KnowledgeFragment
from dreamrag.utils.content_types import passes_theme_filter, split_codes
from dreamrag.utils.embeddings import (
    EmbeddingBackend,
    QueryEmbedding,
    generate_embeddings_batch,
    generate_sparse_embedding,
    resolve_embedding_backend,
    sparse_similarity,
)
from dreamrag.utils.secure_logger import get_logger

logger = get_logger(__name__)

FRAGMENT_COLLECTION = "knowledge_fragments"

_chroma_client = None


def get_chroma_client():
    """Get or create the persistent ChromaDB client."""
    global _chroma_client
    if _chroma_client is None:
        persist_dir = Path(settings.chroma_persist_dir)
        persist_dir.mkdir(parents=True, exist_ok=True)
        _chroma_client = chromadb.PersistentClient(
            path=str(persist_dir),
            settings=ChromaSettings(anonymized_telemetry=False, allow_reset=True),
        )
        logger.info("ChromaDB initialized at %s", persist_dir)
    return _chroma_client


def collection_name_for_backend(backend: EmbeddingBackend) -> str:
    safe_model = backend.model.replace("/", "_").replace(":", "_")
    return f"{FRAGMENT_COLLECTION}__{backend.provider}__{safe_model}"


def _parse_sparse(meta: dict) -> Optional[dict[str, float]]:
    raw = meta.get("sparse_weights")
    if not raw:
        return None
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError:
        return None
    return {str(k): float(v) for k, v in data.items()} if isinstance(data, dict) else None


class ChromaVectorStore:
    """
    Vector similarity primitive:
    (query embedding, interpreter, threshold, limit) -> ranked fragment dicts.
    """

    def __init__(
        self,
        client=None,
        backend: Optional[EmbeddingBackend] = None,
        collection_name: Optional[str] = None,
    ):
        self._client = client
        self._backend = backend
        self._collection_name = collection_name
        self._collection = None

    @property
    def backend(self) -> Optional[EmbeddingBackend]:
        if self._backend is None:
            self._backend = resolve_embedding_backend()
        return self._backend

    def get_collection(self):
        if self._collection is None:
            client = self._client or get_chroma_client()
            name = self._collection_name
            metadata = {"hnsw:space": "cosine", "description": "Dream interpretation knowledge base"}
            backend = self.backend
            if name is None:
                if backend is None:
                    raise SemanticBackendUnavailableError("No embedding backend for collection")
                name = collection_name_for_backend(backend)
            if backend is not None:
                metadata.update(
                    {"embedding_provider": backend.provider, "embedding_model": backend.model}
                )
            self._collection = client.get_or_create_collection(name=name, metadata=metadata)
        return self._collection

    async def add_fragments(self, fragments: Iterable[KnowledgeFragment]) -> int:
        """
        Upsert fragments, embedding any that arrive without a vector.

        Returns:
            Number of fragments stored
        """
        fragments = list(fragments)
        missing = [f for f in fragments if not f.embedding]
        generated: dict[str, list[float]] = {}
        if missing:
            vectors = await generate_embeddings_batch([f.text for f in missing], backend=self.backend)
            generated = {f.id: v for f, v in zip(missing, vectors) if v}

        ids, documents, embeddings, metadatas = [], [], [], []
        for fragment in fragments:
            vector = fragment.embedding or generated.get(fragment.id)
            if not vector:
                logger.warning("Skipping fragment %s: no embedding", fragment.id)
                continue
            meta = fragment.to_metadata()
            if "sparse_weights" not in meta and self.backend and self.backend.supports_sparse:
                sparse = generate_sparse_embedding(fragment.text, self.backend)
                if sparse:
                    meta["sparse_weights"] = json.dumps(sparse)
            ids.append(fragment.id)
            documents.append(fragment.text)
            embeddings.append(vector)
            metadatas.append(meta)

        if ids:
            await asyncio.to_thread(
                self.get_collection().upsert,
                ids=ids,
                documents=documents,
                embeddings=embeddings,
                metadatas=metadatas,
            )
            logger.info("Stored %d fragments in %s", len(ids), self.get_collection().name)
        return len(ids)

    def _query_sync(
        self, dense: list[float], interpreter: str, n_results: Optional[int]
    ) -> dict:
        """Nearest rows for one interpreter; ``n_results=None`` returns all of them."""
        collection = self.get_collection()
        count = collection.count()
        if count == 0:
            return {}
        return collection.query(
            query_embeddings=[dense],
            where={"interpreter": interpreter},
            n_results=count if n_results is None else min(n_results, count),
            include=["documents", "metadatas", "distances"],
        )

    async def query(
        self,
        embedding: QueryEmbedding,
        interpreter: str,
        threshold: float,
        limit: int,
        theme_codes: Optional[list[str]] = None,
        theme_filter: Optional[list[str]] = None,
        associated_ids: Optional[set[str]] = None,
    ) -> list[dict]:
        """
        Cosine-similarity search filtered by interpreter.

        Rows below ``threshold`` are dropped; an empty list means nothing
        qualified. Index failures raise SemanticBackendUnavailableError.
        """
        if limit <= 0:
            return []

        filter_set = set(theme_filter or [])
        # Themes are filtered after the query, so a filtered query ranks every row
        fetch_n = None if filter_set else limit
        try:
            results = await asyncio.to_thread(self._query_sync, embedding.dense, interpreter, fetch_n)
        except SemanticBackendUnavailableError:
            raise
        except Exception as e:
            raise SemanticBackendUnavailableError(
                f"Vector query failed: {e}", {"interpreter": interpreter}
            ) from e

        if not results or not results.get("documents") or not results["documents"][0]:
            return []

        query_themes = set(theme_codes or [])
        hits: list[dict] = []
        for idx, doc in enumerate(results["documents"][0]):
            meta = dict(results["metadatas"][0][idx] or {}) if results.get("metadatas") else {}
            distance = results["distances"][0][idx]
            similarity = 1.0 - float(distance)
            if similarity < threshold:
                continue
            fragment_id = results["ids"][0][idx]
            if filter_set and not passes_theme_filter(fragment_id, meta, filter_set, associated_ids):
                continue
            fragment_themes = split_codes(meta.get("theme_codes"))
            hits.append(
                {
                    "id": fragment_id,
                    "text": doc,
                    "metadata": meta,
                    "similarity": similarity,
                    "sparse_score": (
                        sparse_similarity(embedding.sparse, _parse_sparse(meta))
                        if embedding.sparse
                        else None
                    ),
                    "matched_themes": [c for c in fragment_themes if c in query_themes],
                }
            )

        hits.sort(key=lambda h: h["similarity"], reverse=True)
        return hits[:limit]
