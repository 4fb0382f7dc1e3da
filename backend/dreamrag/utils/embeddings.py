"""
Embeddings Utility Module

Dense query/fragment embeddings via OpenAI with a local sentence-transformers
fallback, plus sparse term-frequency maps over the local model's tokenizer.
"""

import asyncio
import importlib.util
from collections import Counter
from dataclasses import dataclass
from typing import Literal, Optional

import openai

from dreamrag.config import settings
from dreamrag.exceptions import EmbeddingUnavailableError
from dreamrag.utils.cache import EmbeddingCache, get_embedding_cache
from dreamrag.utils.secure_logger import get_logger

logger = get_logger(__name__)

OPENAI_EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSION = 1536  # For text-embedding-3-small

# Batch processing limits for OpenAI API
OPENAI_BATCH_TOKEN_LIMIT = 250_000  # OpenAI max is 300K, use 250K for safety
ESTIMATED_TOKENS_PER_CHAR_EN = 0.3  # English prose: ~4 characters per token

_local_model = None


@dataclass(frozen=True)
class EmbeddingBackend:
    provider: Literal["openai", "local"]
    model: str
    dimension: Optional[int] = None

    @property
    def supports_sparse(self) -> bool:
        return self.provider == "local"


@dataclass(frozen=True)
class QueryEmbedding:
    dense: list[float]
    # token id -> weight; None when the backend has no tokenizer to offer
    sparse: Optional[dict[str, float]] = None


def _normalize_provider(value: Optional[str]) -> str:
    provider = (value or "auto").strip().lower()
    return provider if provider in ("auto", "openai", "local") else "auto"


def is_local_embedding_available() -> bool:
    return importlib.util.find_spec("sentence_transformers") is not None


def get_local_model():
    """Lazy load the local sentence-transformers model."""
    global _local_model
    if _local_model is None:
        try:
            from sentence_transformers import SentenceTransformer

            _local_model = SentenceTransformer(settings.local_embedding_model)
            logger.info("Loaded local embedding model %s", settings.local_embedding_model)
        except Exception as e:
            logger.error("Failed to load local embedding model: %s", e)
            _local_model = False  # Mark as failed
    return _local_model if _local_model else None


def _to_list_embedding(embedding) -> list[float] | None:
    """Convert an embedding tensor/array to a plain list."""
    if embedding is None:
        return None
    if hasattr(embedding, "detach"):
        embedding = embedding.detach()
    if hasattr(embedding, "cpu"):
        embedding = embedding.cpu()
    if hasattr(embedding, "tolist"):
        return embedding.tolist()
    if isinstance(embedding, list):
        return embedding
    return None


def get_available_backends(preferred: Optional[str] = None) -> list[EmbeddingBackend]:
    provider = _normalize_provider(preferred or settings.embeddings_provider)
    backends: list[EmbeddingBackend] = []

    if provider in ("openai", "auto"):
        if settings.openai_api_key:
            backends.append(
                EmbeddingBackend(
                    provider="openai",
                    model=settings.openai_embedding_model or OPENAI_EMBEDDING_MODEL,
                    dimension=EMBEDDING_DIMENSION,
                )
            )
        elif provider == "openai":
            logger.warning("OPENAI_API_KEY is not set; OpenAI embeddings unavailable")

    if provider in ("local", "auto"):
        if is_local_embedding_available():
            backends.append(
                EmbeddingBackend(
                    provider="local",
                    model=settings.local_embedding_model,
                    dimension=settings.local_embedding_dimension,
                )
            )
        elif provider == "local":
            logger.warning("sentence_transformers is not installed; local embeddings unavailable")

    return backends


def resolve_embedding_backend(preferred: Optional[str] = None) -> Optional[EmbeddingBackend]:
    provider = _normalize_provider(preferred or settings.embeddings_provider)
    backends = get_available_backends(provider)
    if not backends:
        return None
    # Prefer OpenAI when auto
    if provider == "auto":
        for backend in backends:
            if backend.provider == "openai":
                return backend
    return backends[0]


def _fallback_allowed() -> bool:
    return _normalize_provider(settings.embeddings_provider) == "auto"


def _is_openai_quota_error(exc: Exception) -> bool:
    status_code = getattr(exc, "status_code", None)
    if status_code == 429:
        return True
    message = str(exc).lower()
    if "insufficient_quota" in message or "quota" in message or "rate limit" in message:
        return True
    error = getattr(exc, "error", None)
    if isinstance(error, dict):
        code = str(error.get("code", "")).lower()
        if code in ("insufficient_quota", "rate_limit_exceeded"):
            return True
    return False


def _split_into_token_batches(
    valid_texts: list[tuple[int, str]],
    max_len: int,
    token_limit: int = OPENAI_BATCH_TOKEN_LIMIT,
) -> list[list[tuple[int, str]]]:
    """
    Split texts into batches based on estimated token count.

    Args:
        valid_texts: List of (original_index, text) tuples
        max_len: Maximum character length per text
        token_limit: Maximum tokens per batch

    Returns:
        List of batches of (original_index, text) tuples
    """
    batches: list[list[tuple[int, str]]] = []
    current_batch: list[tuple[int, str]] = []
    current_tokens = 0

    for item in valid_texts:
        estimated_tokens = int(min(len(item[1]), max_len) * ESTIMATED_TOKENS_PER_CHAR_EN)
        if current_tokens + estimated_tokens > token_limit and current_batch:
            batches.append(current_batch)
            current_batch = []
            current_tokens = 0
        current_batch.append(item)
        current_tokens += estimated_tokens

    if current_batch:
        batches.append(current_batch)
    return batches


async def generate_embedding(
    text: str,
    backend: Optional[EmbeddingBackend] = None,
    allow_fallback: Optional[bool] = None,
) -> Optional[list[float]]:
    """
    Generate a dense embedding for text.

    Args:
        text: Text to embed
        backend: Explicit backend selection
        allow_fallback: Allow OpenAI -> local fallback on quota/rate limit

    Returns:
        Embedding vector, or None on failure
    """
    if not text or not text.strip():
        return None

    backend_provided = backend is not None
    backend = backend or resolve_embedding_backend()
    if backend is None:
        logger.error("No embedding backend available")
        return None
    if allow_fallback is None:
        allow_fallback = (not backend_provided) and _fallback_allowed()

    max_len = settings.embedding_max_input_chars

    if backend.provider == "openai":
        try:
            client = openai.AsyncOpenAI(api_key=settings.openai_api_key)
            response = await client.embeddings.create(model=backend.model, input=text[:max_len])
            return response.data[0].embedding
        except Exception as e:
            logger.error("OpenAI embedding failed: %s", e)
            if allow_fallback and _is_openai_quota_error(e):
                local_backend = resolve_embedding_backend("local")
                if local_backend:
                    logger.warning("Falling back to local embeddings")
                    return await generate_embedding(text, backend=local_backend, allow_fallback=False)

    if backend.provider == "local":
        # Model load and encode are blocking; keep them off the event loop
        model = await asyncio.to_thread(get_local_model)
        if model:
            try:
                embedding = await asyncio.to_thread(
                    model.encode, text[:max_len], normalize_embeddings=True
                )
                return _to_list_embedding(embedding)
            except Exception as e:
                logger.error("Local embedding failed: %s", e)

    return None


async def generate_embeddings_batch(
    texts: list[str],
    backend: Optional[EmbeddingBackend] = None,
    allow_fallback: Optional[bool] = None,
) -> list[Optional[list[float]]]:
    """
    Generate dense embeddings for multiple texts, preserving input order.
    Empty texts map to None.
    """
    if not texts:
        return []

    valid_texts = [(i, t) for i, t in enumerate(texts) if t and t.strip()]
    if not valid_texts:
        return [None] * len(texts)

    backend_provided = backend is not None
    backend = backend or resolve_embedding_backend()
    if backend is None:
        logger.error("No embedding backend available")
        return [None] * len(texts)
    if allow_fallback is None:
        allow_fallback = (not backend_provided) and _fallback_allowed()

    max_len = settings.embedding_max_input_chars
    results: list[Optional[list[float]]] = [None] * len(texts)

    if backend.provider == "openai":
        try:
            client = openai.AsyncOpenAI(api_key=settings.openai_api_key)
            batches = _split_into_token_batches(valid_texts, max_len)
            if len(batches) > 1:
                logger.info("Embedding %d texts in %d batches", len(valid_texts), len(batches))

            all_embeddings: list = []
            for batch in batches:
                response = await client.embeddings.create(
                    model=backend.model,
                    input=[t[:max_len] for _, t in batch],
                )
                all_embeddings.extend(response.data)

            for idx, (orig_idx, _) in enumerate(valid_texts):
                results[orig_idx] = all_embeddings[idx].embedding
            return results
        except Exception as e:
            logger.error("OpenAI batch embedding failed: %s", e)
            if allow_fallback and _is_openai_quota_error(e):
                local_backend = resolve_embedding_backend("local")
                if local_backend:
                    logger.warning("Falling back to local embeddings")
                    return await generate_embeddings_batch(
                        texts, backend=local_backend, allow_fallback=False
                    )

    if backend.provider == "local":
        model = await asyncio.to_thread(get_local_model)
        if model:
            try:
                embeddings = await asyncio.to_thread(
                    model.encode, [t[:max_len] for _, t in valid_texts], normalize_embeddings=True
                )
                for idx, (orig_idx, _) in enumerate(valid_texts):
                    results[orig_idx] = _to_list_embedding(embeddings[idx])
            except Exception as e:
                logger.error("Local batch embedding failed: %s", e)

    return results


def sparse_from_token_ids(token_ids: list[int], skip_ids: set[int] | None = None) -> dict[str, float]:
    """
    Term-frequency weights over tokenizer ids.

    Ids below 4 are the usual [PAD]/[UNK]/[CLS]/[SEP] slots and are always
    skipped, as are any ids in ``skip_ids``.
    """
    if not token_ids:
        return {}
    skip = skip_ids or set()
    counts = Counter(t for t in token_ids if t >= 4 and t not in skip)
    total = len(token_ids)
    return {str(token_id): count / total for token_id, count in counts.items()}


def generate_sparse_embedding(text: str, backend: Optional[EmbeddingBackend] = None) -> Optional[dict[str, float]]:
    """Sparse weights from the local model's tokenizer, or None if unsupported."""
    if not text or not text.strip():
        return None
    if backend is not None and not backend.supports_sparse:
        return None
    model = get_local_model()
    tokenizer = getattr(model, "tokenizer", None) if model else None
    if tokenizer is None:
        return None
    try:
        encoded = tokenizer(text[: settings.embedding_max_input_chars], truncation=True)
    except Exception as e:
        logger.warning("Sparse tokenization failed: %s", e)
        return None
    skip_ids = set(getattr(tokenizer, "all_special_ids", []) or [])
    return sparse_from_token_ids(list(encoded["input_ids"]), skip_ids)


def sparse_similarity(query: Optional[dict[str, float]], document: Optional[dict[str, float]]) -> float:
    """Weighted Jaccard overlap between two sparse maps, in [0, 1]."""
    if not query or not document:
        return 0.0
    keys = set(query) | set(document)
    numerator = sum(min(query.get(k, 0.0), document.get(k, 0.0)) for k in keys)
    denominator = sum(max(query.get(k, 0.0), document.get(k, 0.0)) for k in keys)
    return numerator / denominator if denominator > 0 else 0.0


class DefaultEmbeddingProvider:
    """
    Query embedding provider for the search engine.

    Raises EmbeddingUnavailableError instead of returning None: no semantic
    search is possible without a vector.
    """

    def __init__(
        self,
        backend: Optional[EmbeddingBackend] = None,
        cache: Optional[EmbeddingCache] = None,
        include_sparse: Optional[bool] = None,
    ):
        self._backend = backend
        self._cache = cache if cache is not None else get_embedding_cache()
        self._include_sparse = (
            settings.enable_sparse_embeddings if include_sparse is None else include_sparse
        )

    @property
    def backend(self) -> Optional[EmbeddingBackend]:
        if self._backend is None:
            self._backend = resolve_embedding_backend()
        return self._backend

    async def embed_query(self, text: str) -> QueryEmbedding:
        backend = self.backend
        if backend is None:
            raise EmbeddingUnavailableError("No embedding backend available")

        if self._cache is not None:
            cached = await self._cache.get_embedding(backend.provider, backend.model, text)
            if cached:
                return QueryEmbedding(dense=cached["dense"], sparse=cached.get("sparse"))

        dense = await generate_embedding(text, backend=backend)
        if not dense:
            raise EmbeddingUnavailableError(
                "Query embedding generation failed",
                {"provider": backend.provider, "model": backend.model},
            )

        sparse = None
        if self._include_sparse and backend.supports_sparse:
            sparse = await asyncio.to_thread(generate_sparse_embedding, text, backend)

        if self._cache is not None:
            await self._cache.set_embedding(backend.provider, backend.model, text, dense, sparse)
        return QueryEmbedding(dense=dense, sparse=sparse)
