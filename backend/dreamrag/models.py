"""
Data model for the retrieval engine.

Fragments, themes and associations are immutable inputs produced offline.
SearchQuery, SearchResult and RAGContext are per-call values and are never
persisted.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class KnowledgeFragment:
    """A passage of source text from a reference work."""

    id: str
    text: str
    source: str
    chapter: str = ""
    interpreter: str = "jung"
    embedding: Optional[list[float]] = None
    # token id -> weight
    sparse: Optional[dict[str, float]] = None
    theme_codes: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_metadata(self) -> dict[str, Any]:
        """Flatten to scalar metadata for index stores that reject nested values."""
        flat: dict[str, Any] = {}
        for key, value in self.metadata.items():
            if isinstance(value, (list, tuple, set)):
                flat[key] = ",".join(str(v) for v in value)
            elif isinstance(value, dict):
                flat[key] = json.dumps(value, ensure_ascii=False)
            elif value is not None:
                flat[key] = value
        flat["source"] = self.source
        flat["chapter"] = self.chapter
        flat["interpreter"] = self.interpreter
        if self.theme_codes:
            flat["theme_codes"] = ",".join(self.theme_codes)
        if self.sparse:
            flat["sparse_weights"] = json.dumps(self.sparse)
        return flat


@dataclass(frozen=True)
class ThemeTag:
    code: str
    name: str
    description: str = ""
    keywords: tuple[str, ...] = ()
    # symbol -> short interpretation hint
    symbol_interpretations: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ThemeConcept:
    theme_code: str
    concepts: tuple[str, ...]
    interpretive_approach: str = ""


@dataclass(frozen=True)
class FragmentThemeAssociation:
    fragment_id: str
    theme_code: str
    similarity: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.similarity <= 1.0:
            raise ValueError(
                f"association similarity must be within [0, 1], got {self.similarity}"
            )


class FusionWeights(BaseModel):
    """Weight triple for the three retrieval signals."""

    semantic: float = Field(default=0.5, ge=0)
    sparse: float = Field(default=0.2, ge=0)
    lexical: float = Field(default=0.3, ge=0)


@dataclass
class SearchQuery:
    text: str
    interpreter: str
    theme_codes: list[str] = field(default_factory=list)
    concepts: list[str] = field(default_factory=list)
    interpretive_hints: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    weights: Optional[FusionWeights] = None


@dataclass
class SearchResult:
    """A fused candidate. Ranked results keep every component score."""

    fragment_id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    lexical_score: Optional[float] = None
    lexical_norm: float = 0.0
    semantic_score: Optional[float] = None
    sparse_score: Optional[float] = None
    theme_boost: float = 0.0
    content_multiplier: float = 1.0
    hybrid_score: float = 0.0
    rank: int = 0
    matched_themes: list[str] = field(default_factory=list)

    @property
    def source(self) -> str:
        return str(self.metadata.get("source") or "")

    @property
    def chapter(self) -> str:
        return str(self.metadata.get("chapter") or "")

    @property
    def has_semantic_signal(self) -> bool:
        return self.semantic_score is not None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source
        data["chapter"] = self.chapter
        return data


@dataclass
class SymbolInterpretation:
    symbol: str
    interpretations: list[str] = field(default_factory=list)


@dataclass
class RAGContext:
    relevant_passages: list[SearchResult] = field(default_factory=list)
    symbols: list[SymbolInterpretation] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    theme_codes: list[str] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "RAGContext":
        return cls()

    def is_empty(self) -> bool:
        return not self.relevant_passages

    def to_dict(self) -> dict[str, Any]:
        return {
            "relevant_passages": [p.to_dict() for p in self.relevant_passages],
            "symbols": [asdict(s) for s in self.symbols],
            "themes": list(self.themes),
            "theme_codes": list(self.theme_codes),
        }
