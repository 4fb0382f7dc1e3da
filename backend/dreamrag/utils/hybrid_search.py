"""
Hybrid Search Module

Retrieval pipeline for dream interpretation context:
1) Query analysis (themes, concepts, interpretive hints)
2) Lexical (BM25) and semantic (dense + sparse) search, run concurrently
3) Weighted score fusion with theme and content-type boosts
4) Quality filter
5) Diversity selection
6) Symbol/theme post-processing

Backends are injected through small Protocols; the defaults are
DefaultEmbeddingProvider, ChromaVectorStore and BM25LexicalBackend.
"""

import asyncio
import random
import re
from typing import Any, Iterable, Optional, Protocol, Union

from pydantic import BaseModel, Field

from dreamrag.config import settings
from dreamrag.exceptions import (
    DreamRAGError,
    EmbeddingUnavailableError,
    LexicalBackendUnavailableError,
    RetrievalUnavailableError,
    SemanticBackendUnavailableError,
)
from dreamrag.models import FusionWeights, RAGContext, SearchQuery, SearchResult
from dreamrag.utils import telemetry
from dreamrag.utils.bm25_store import BM25LexicalBackend
from dreamrag.utils.content_types import content_type_multiplier, split_codes
from dreamrag.utils.diversity import DiversityMode, DiversityTracker, select_diverse
from dreamrag.utils.embeddings import DefaultEmbeddingProvider, QueryEmbedding
from dreamrag.utils.metadata_filter import matches_metadata_filter, validate_metadata_filter
from dreamrag.utils.query_analyzer import QueryAnalyzer
from dreamrag.utils.secure_logger import get_logger, log_error
from dreamrag.utils.symbol_extractor import SymbolLexicon, extract_symbols_and_themes
from dreamrag.utils.theme_associations import ThemeAssociationIndex, get_theme_associations
from dreamrag.utils.tokenizer import query_overlap_ratio, significant_terms, tokenize
from dreamrag.utils.vector_store import ChromaVectorStore

logger = get_logger(__name__)

# Additive theme boosts
THEME_CODE_BOOST = 0.10
CONCEPT_BOOST = 0.05
HINT_BOOST = 0.05
PREFERRED_SOURCE_BOOST = 0.07
BOOST_MAP_AMOUNTS = {
    "topic": 0.10,
    "subtopic": 0.08,
    "source": 0.05,
}

# Hint words at or below this length are too generic to count
HINT_MIN_WORD_LENGTH = 4

# Adaptive weight table
SHORT_QUERY_WORDS = 5
LONG_QUERY_WORDS = 15
_CONCRETE_SYMBOLS = re.compile(r"\b(snake|water|mother|father|death|flying)\b", re.IGNORECASE)
_ABSTRACT_TERMS = re.compile(r"\b(meaning|significance|represents|symbolizes)\b", re.IGNORECASE)
_PHILOSOPHICAL_TERMS = re.compile(
    r"\b(archetype|unconscious|shadow|anima|ego|self)\b", re.IGNORECASE
)

SHORT_SYMBOL_WEIGHTS = FusionWeights(semantic=0.3, sparse=0.2, lexical=0.5)
ABSTRACT_WEIGHTS = FusionWeights(semantic=0.6, sparse=0.2, lexical=0.2)
LONG_QUERY_WEIGHTS = FusionWeights(semantic=0.4, sparse=0.3, lexical=0.3)
BALANCED_WEIGHTS = FusionWeights(semantic=0.5, sparse=0.2, lexical=0.3)

SEMANTIC_ARM = "semantic"
LEXICAL_ARM = "lexical"


class EmbeddingProvider(Protocol):
    async def embed_query(self, text: str) -> QueryEmbedding: ...


class VectorBackend(Protocol):
    async def query(
        self,
        embedding: QueryEmbedding,
        interpreter: str,
        threshold: float,
        limit: int,
        theme_codes: Optional[list[str]] = None,
        theme_filter: Optional[list[str]] = None,
        associated_ids: Optional[set[str]] = None,
    ) -> list[dict]: ...


class LexicalBackend(Protocol):
    async def search(
        self,
        query_terms: list[str],
        interpreter: str,
        limit: int,
        theme_filter: Optional[list[str]] = None,
        associated_ids: Optional[set[str]] = None,
    ) -> list[dict]: ...


class SearchOptions(BaseModel):
    max_results: int = Field(default_factory=lambda: settings.rag_max_results, ge=0)
    interpreter_type: str = Field(default_factory=lambda: settings.rag_default_interpreter)
    similarity_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    include_symbols: bool = True
    diversity_mode: Optional[DiversityMode] = None
    weights: Optional[FusionWeights] = None
    # Validated by validate_metadata_filter so callers get a typed error
    metadata_filter: Optional[Any] = None
    boost: Optional[dict[str, list[str]]] = None
    exclude_ids: list[str] = Field(default_factory=list)
    exclude_sources: list[str] = Field(default_factory=list)
    prefer_sources: list[str] = Field(default_factory=list)
    focus_symbols: list[str] = Field(default_factory=list)
    theme_filter: Optional[list[str]] = None
    require_different_chapters: bool = True
    adaptive_scoring: bool = True

    model_config = {"extra": "forbid"}


def resolve_weights(query_text: str, options: SearchOptions) -> FusionWeights:
    """
    Choose fusion weights for a query.

    With adaptive scoring the query's shape picks a row of the weight table;
    otherwise the caller's weights (or the configured defaults) are used
    as given.
    """
    if not options.adaptive_scoring:
        if options.weights is not None:
            return options.weights
        return FusionWeights(
            semantic=settings.rag_semantic_weight,
            sparse=settings.rag_sparse_weight,
            lexical=settings.rag_lexical_weight,
        )

    word_count = len(query_text.split())
    if word_count < SHORT_QUERY_WORDS and _CONCRETE_SYMBOLS.search(query_text):
        weights = SHORT_SYMBOL_WEIGHTS
    elif _ABSTRACT_TERMS.search(query_text) or _PHILOSOPHICAL_TERMS.search(query_text):
        weights = ABSTRACT_WEIGHTS
    elif word_count > LONG_QUERY_WORDS:
        weights = LONG_QUERY_WEIGHTS
    else:
        weights = BALANCED_WEIGHTS

    logger.debug(
        "Adaptive weights: semantic=%.2f sparse=%.2f lexical=%.2f",
        weights.semantic,
        weights.sparse,
        weights.lexical,
    )
    return weights.model_copy()


def resolve_diversity_mode(options: SearchOptions, interpreter: str) -> DiversityMode:
    if options.diversity_mode is not None:
        return DiversityMode(options.diversity_mode)
    configured = settings.rag_persona_diversity_modes.get(interpreter)
    return DiversityMode(configured or settings.rag_default_diversity_mode)


def candidate_limit(max_results: int, interpreter: str) -> int:
    multiplier = settings.rag_candidate_multiplier_overrides.get(
        interpreter, settings.rag_candidate_multiplier
    )
    return max_results * multiplier


def _fragment_themes(
    fragment_id: str,
    metadata: dict,
    associations: Optional[ThemeAssociationIndex],
) -> list[str]:
    codes = split_codes(metadata.get("theme_codes"))
    if associations is not None:
        for code in associations.themes_for(fragment_id, settings.rag_theme_min_similarity):
            if code not in codes:
                codes.append(code)
    return codes


def _hint_matches(hint: str, content_lower: str) -> bool:
    words = [w.strip(".,;:!?()\"'") for w in hint.lower().split()]
    return any(len(w) > HINT_MIN_WORD_LENGTH and w in content_lower for w in words)


def _boost_map_bonus(metadata: dict, boost: Optional[dict[str, list[str]]]) -> float:
    if not boost:
        return 0.0
    bonus = 0.0
    for key, amount in BOOST_MAP_AMOUNTS.items():
        wanted = boost.get(key)
        value = metadata.get(key)
        # Whole value first: titles such as "Memories, Dreams, Reflections" contain commas
        values = {value} if isinstance(value, str) else set()
        values.update(split_codes(value))
        if wanted and values.intersection(wanted):
            bonus += amount
    return bonus


def compute_theme_boost(
    result: SearchResult,
    query: SearchQuery,
    fragment_themes: list[str],
    options: SearchOptions,
) -> float:
    """Sum of the additive boosts for one candidate."""
    boost = 0.0

    matched = [code for code in fragment_themes if code in query.theme_codes]
    boost += THEME_CODE_BOOST * len(matched)

    if query.concepts:
        fragment_concepts = {c.lower() for c in split_codes(result.metadata.get("concepts"))}
        boost += CONCEPT_BOOST * sum(1 for c in query.concepts if c.lower() in fragment_concepts)

    if query.interpretive_hints and result.text:
        content_lower = result.text.lower()
        boost += HINT_BOOST * sum(
            1 for hint in query.interpretive_hints if _hint_matches(hint, content_lower)
        )

    if options.prefer_sources and result.source in options.prefer_sources:
        boost += PREFERRED_SOURCE_BOOST

    boost += _boost_map_bonus(result.metadata, options.boost)
    return boost


def _passes_candidate_filters(
    fragment_id: str,
    metadata: dict,
    fragment_themes: list[str],
    options: SearchOptions,
) -> bool:
    if fragment_id in options.exclude_ids:
        return False
    if options.exclude_sources and metadata.get("source") in options.exclude_sources:
        return False
    if not matches_metadata_filter(metadata, options.metadata_filter):
        return False
    if options.theme_filter and not set(options.theme_filter).intersection(fragment_themes):
        return False
    return True


def fuse_results(
    lexical_results: list[dict],
    semantic_results: list[dict],
    query: SearchQuery,
    weights: FusionWeights,
    options: SearchOptions,
    associations: Optional[ThemeAssociationIndex] = None,
) -> list[SearchResult]:
    """
    Merge both arms by fragment id and compute hybrid scores.

    hybrid = (w_sem*semantic + w_sparse*sparse + w_lex*lexical_norm)
             * (1 + theme_boost) * content_multiplier

    Lexical scores are normalized by the best lexical score in this call;
    semantic and sparse scores are already in [0, 1]. Weights are applied
    as given, never renormalized.

    Returns:
        Candidates sorted by hybrid score, best first
    """
    merged: dict[str, SearchResult] = {}

    for row in semantic_results:
        merged[row["id"]] = SearchResult(
            fragment_id=row["id"],
            text=row.get("text") or "",
            metadata=dict(row.get("metadata") or {}),
            semantic_score=float(row["similarity"]),
            sparse_score=row.get("sparse_score"),
            matched_themes=list(row.get("matched_themes") or []),
        )

    max_lexical = max((float(r["bm25_score"]) for r in lexical_results), default=0.0)
    for row in lexical_results:
        raw = float(row["bm25_score"])
        result = merged.get(row["id"])
        if result is None:
            result = SearchResult(
                fragment_id=row["id"],
                text=row.get("text") or "",
                metadata=dict(row.get("metadata") or {}),
            )
            merged[row["id"]] = result
        result.lexical_score = raw
        result.lexical_norm = raw / max_lexical if max_lexical > 0 else 0.0

    fused: list[SearchResult] = []
    for result in merged.values():
        themes = _fragment_themes(result.fragment_id, result.metadata, associations)
        if not _passes_candidate_filters(result.fragment_id, result.metadata, themes, options):
            continue

        for code in themes:
            if code in query.theme_codes and code not in result.matched_themes:
                result.matched_themes.append(code)

        base = (
            weights.semantic * (result.semantic_score or 0.0)
            + weights.sparse * (result.sparse_score or 0.0)
            + weights.lexical * result.lexical_norm
        )
        result.theme_boost = compute_theme_boost(result, query, themes, options)
        result.content_multiplier = content_type_multiplier(result.metadata)
        result.hybrid_score = base * (1 + result.theme_boost) * result.content_multiplier
        fused.append(result)

    fused.sort(key=lambda r: r.hybrid_score, reverse=True)
    return fused


def apply_quality_filter(
    candidates: list[SearchResult],
    query_terms: set[str],
    floor: Optional[float] = None,
    min_overlap: Optional[float] = None,
) -> list[SearchResult]:
    """
    Drop weak candidates.

    Anything at or below the hybrid floor goes. Lexical-only candidates must
    also share enough significant terms with the query; the overlap check is
    skipped when the query has no significant terms.
    """
    floor = settings.rag_quality_floor if floor is None else floor
    min_overlap = settings.rag_min_query_overlap if min_overlap is None else min_overlap

    kept: list[SearchResult] = []
    for result in candidates:
        if result.hybrid_score <= floor:
            continue
        if not result.has_semantic_signal:
            overlap = query_overlap_ratio(query_terms, result.text)
            if overlap is not None and overlap < min_overlap:
                continue
        kept.append(result)

    dropped = len(candidates) - len(kept)
    if dropped:
        logger.debug("Quality filter dropped %d of %d candidates", dropped, len(candidates))
    return kept


def _query_terms(text: str) -> list[str]:
    terms: list[str] = []
    for token in tokenize(text):
        if token not in terms:
            terms.append(token)
    return terms


def _merge_themes(labels: Iterable[str], codes: Iterable[str]) -> list[str]:
    themes: list[str] = []
    for theme in list(labels) + list(codes):
        if theme not in themes:
            themes.append(theme)
    return themes


class HybridSearchEngine:
    """
    Hybrid retrieval engine.

    One instance serves every persona; per-persona behavior (candidate
    multiplier, diversity policy, history caps) comes from settings.
    """

    def __init__(
        self,
        embedder: Optional[EmbeddingProvider] = None,
        vector_backend: Optional[VectorBackend] = None,
        lexical_backend: Optional[LexicalBackend] = None,
        analyzer: Optional[QueryAnalyzer] = None,
        tracker: Optional[DiversityTracker] = None,
        associations: Optional[ThemeAssociationIndex] = None,
        lexicon: Optional[SymbolLexicon] = None,
        rng: Optional[random.Random] = None,
    ):
        self.embedder = embedder or DefaultEmbeddingProvider()
        self.vector_backend = vector_backend or ChromaVectorStore()
        self.lexical_backend = lexical_backend or BM25LexicalBackend()
        self.analyzer = analyzer or QueryAnalyzer()
        self.tracker = tracker or DiversityTracker()
        self.associations = associations
        self.lexicon = lexicon
        self.rng = rng or random.Random()

    async def search(
        self,
        query_text: str,
        options: Union[SearchOptions, dict, None] = None,
    ) -> RAGContext:
        """
        Retrieve grounded context for a dream narrative.

        Raises:
            MalformedMetadataFilterError: Invalid metadata filter (before any backend call)
            EmbeddingUnavailableError: Query embedding could not be produced
            RetrievalUnavailableError: Every requested retrieval arm failed
        """
        if options is None:
            options = SearchOptions()
        elif isinstance(options, dict):
            options = SearchOptions(**options)
        validate_metadata_filter(options.metadata_filter)

        if options.max_results == 0:
            return RAGContext.empty()

        query_text = query_text or ""
        interpreter = options.interpreter_type
        query = self.analyzer.analyze(query_text, interpreter)
        weights = resolve_weights(query_text, options)
        query.weights = weights

        limit = candidate_limit(options.max_results, interpreter)
        threshold = (
            settings.rag_similarity_threshold
            if options.similarity_threshold is None
            else options.similarity_threshold
        )
        terms = _query_terms(query_text)

        requested: set[str] = set()
        if weights.semantic > 0 or weights.sparse > 0:
            requested.add(SEMANTIC_ARM)
        if weights.lexical > 0:
            requested.add(LEXICAL_ARM)
        failed: list[str] = []

        associations = self.associations
        if associations is None:
            associations = get_theme_associations()
        # Fragments linked to a filtered theme only through an association
        associated_ids = None
        if options.theme_filter and associations is not None:
            associated_ids = associations.fragments_for(
                options.theme_filter, settings.rag_theme_min_similarity
            )

        # Lexical runs concurrently with embedding + vector search
        lexical_task = None
        if LEXICAL_ARM in requested and terms:
            lexical_task = asyncio.create_task(
                self.lexical_backend.search(
                    terms,
                    interpreter,
                    limit,
                    theme_filter=options.theme_filter,
                    associated_ids=associated_ids,
                )
            )

        semantic_rows: list[dict] = []
        if SEMANTIC_ARM in requested and query_text.strip():
            try:
                embedding = await self.embedder.embed_query(query_text)
            except EmbeddingUnavailableError:
                if lexical_task:
                    lexical_task.cancel()
                telemetry.record_backend_failure("embedding")
                raise

            try:
                semantic_rows = await self.vector_backend.query(
                    embedding,
                    interpreter,
                    threshold,
                    limit,
                    theme_codes=query.theme_codes,
                    theme_filter=options.theme_filter,
                    associated_ids=associated_ids,
                )
            except SemanticBackendUnavailableError as e:
                log_error(__name__, e, {"arm": SEMANTIC_ARM, "interpreter": interpreter})
                telemetry.record_backend_failure(SEMANTIC_ARM, str(e))
                failed.append(SEMANTIC_ARM)

        lexical_rows: list[dict] = []
        if lexical_task:
            try:
                lexical_rows = await lexical_task
            except LexicalBackendUnavailableError as e:
                log_error(__name__, e, {"arm": LEXICAL_ARM, "interpreter": interpreter})
                telemetry.record_backend_failure(LEXICAL_ARM, str(e))
                failed.append(LEXICAL_ARM)

        if requested and requested.issubset(failed):
            raise RetrievalUnavailableError(
                "All requested retrieval arms failed",
                {"interpreter": interpreter, "arms": sorted(failed)},
            )

        candidates = fuse_results(
            lexical_rows, semantic_rows, query, weights, options, associations
        )
        candidates = apply_quality_filter(candidates, significant_terms(query_text))

        mode = resolve_diversity_mode(options, interpreter)
        recent = self.tracker.recent(interpreter) if mode == DiversityMode.PERSONA_GREEDY else None
        selected = select_diverse(
            candidates,
            options.max_results,
            mode=mode,
            rng=self.rng,
            recent=recent,
            require_different_chapters=options.require_different_chapters,
        )
        for rank, result in enumerate(selected, start=1):
            result.rank = rank

        symbols, labels = [], []
        if options.include_symbols and selected:
            symbols, labels = extract_symbols_and_themes(
                query_text,
                selected,
                interpreter,
                focus_symbols=options.focus_symbols,
                lexicon=self.lexicon,
            )

        self.tracker.record(interpreter, selected)
        telemetry.record_rag_search(interpreter, len(selected), len(symbols), failed)
        logger.info(
            "RAG search for %s: %d candidates, %d selected (%s)",
            interpreter,
            len(candidates),
            len(selected),
            mode.value,
        )

        return RAGContext(
            relevant_passages=selected,
            symbols=symbols,
            themes=_merge_themes(labels, query.theme_codes),
            theme_codes=list(query.theme_codes),
        )

    async def search_or_empty(
        self,
        query_text: str,
        options: Union[SearchOptions, dict, None] = None,
    ) -> RAGContext:
        """search(), with any DreamRAGError logged and turned into an empty context."""
        try:
            return await self.search(query_text, options)
        except DreamRAGError as e:
            log_error(__name__, e, {"fallback": "empty_context"})
            return RAGContext.empty()


_engine: Optional[HybridSearchEngine] = None


def get_search_engine() -> HybridSearchEngine:
    """Get or create the default engine."""
    global _engine
    if _engine is None:
        _engine = HybridSearchEngine()
    return _engine
