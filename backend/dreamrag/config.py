import json
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DATA_DIR = Path(__file__).parent / "data"
_BACKEND_DIR = Path(__file__).parent.parent


class Settings(BaseSettings):
    """
    Dream RAG engine settings.

    Every value is read from environment variables, falling back to the
    defaults below when unset.

    Configure via:
      1. a .env.local (preferred) or .env file
      2. plain environment variables
    """

    # ===== API keys =====
    openai_api_key: str = ""

    # ===== Cache =====
    # env: REDIS_URL
    redis_url: str = ""
    embedding_cache_ttl_seconds: int = 60 * 60 * 24

    # ===== Embeddings =====
    # auto | openai | local
    embeddings_provider: str = Field(
        default="auto",
        validation_alias=AliasChoices("EMBEDDINGS_PROVIDER", "EMBEDDING_PROVIDER"),
    )
    openai_embedding_model: str = "text-embedding-3-small"
    local_embedding_model: str = Field(
        default="BAAI/bge-m3",
        validation_alias=AliasChoices("LOCAL_EMBEDDING_MODEL", "BGE_MODEL"),
    )
    local_embedding_dimension: int = 1024
    embedding_max_input_chars: int = 8000
    # Sparse token weights are only produced by the local backend
    enable_sparse_embeddings: bool = True

    # ===== Storage =====
    chroma_persist_dir: str = str(_BACKEND_DIR / "data" / "chroma")
    bm25_persist_dir: str = str(_BACKEND_DIR / "data" / "bm25")

    # ===== Static assets =====
    themes_path: str = str(_DATA_DIR / "themes.json")
    theme_concepts_path: str = str(_DATA_DIR / "theme_concepts.json")
    symbol_lexicon_path: str = Field(
        default=str(_DATA_DIR / "symbol_lexicon.json"),
        validation_alias=AliasChoices("SYMBOL_LEXICON_PATH", "RAG_SYMBOL_LEXICON"),
    )
    theme_associations_path: str = ""

    # ===== RAG search tuning =====
    rag_max_results: int = 5
    rag_default_interpreter: str = "jung"
    # Fixed fusion weights, used when adaptive scoring is off
    rag_semantic_weight: float = 0.5
    rag_sparse_weight: float = 0.2
    rag_lexical_weight: float = 0.3
    rag_similarity_threshold: float = 0.35
    # Results at or below this hybrid score are dropped
    rag_quality_floor: float = 0.2
    # Minimum query-term overlap for candidates with no semantic score
    rag_min_query_overlap: float = 0.2
    # Candidate fetch = max_results * multiplier
    rag_candidate_multiplier: int = 4
    rag_candidate_multiplier_overrides: dict[str, int] = {"freud": 6}
    rag_bm25_k1: float = 1.2
    rag_bm25_b: float = 0.75
    rag_theme_min_similarity: float = 0.5
    rag_max_context_chars: int = 6000

    # ===== Diversity =====
    rag_default_diversity_mode: str = "diverse"
    rag_persona_diversity_modes: dict[str, str] = Field(
        default={"freud": "persona-greedy"},
        validation_alias=AliasChoices("RAG_PERSONA_DIVERSITY_MODES"),
    )
    rag_history_id_cap: int = 50
    rag_history_id_cap_overrides: dict[str, int] = {"freud": 100}
    rag_history_source_cap: int = 20
    rag_history_chapter_cap: int = 30

    @field_validator(
        "rag_semantic_weight", "rag_sparse_weight", "rag_lexical_weight"
    )
    @classmethod
    def validate_weight(cls, v: float) -> float:
        if v < 0:
            raise ValueError("fusion weights must be non-negative")
        return v

    @field_validator(
        "rag_persona_diversity_modes",
        "rag_candidate_multiplier_overrides",
        "rag_history_id_cap_overrides",
        mode="before",
    )
    @classmethod
    def parse_persona_map(cls, v):
        """
        Support two formats for per-persona maps:
          - JSON object string: '{"freud": "persona-greedy"}'
          - Comma-separated pairs: "freud=persona-greedy,adler=diverse"
        """
        if v is None or not isinstance(v, str):
            return v
        s = v.strip()
        if not s:
            return {}
        if s.startswith("{"):
            return json.loads(s)
        pairs = [item.split("=", 1) for item in s.split(",") if "=" in item]
        return {key.strip(): value.strip() for key, value in pairs}

    model_config = SettingsConfigDict(
        # backend/dreamrag/config.py -> repository root is three levels up
        env_file=(
            Path(__file__).parent.parent.parent / ".env.local",
            Path(__file__).parent.parent.parent / ".env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
