"""
Cache utilities for query embeddings.
"""

from __future__ import annotations

import hashlib
import json
from functools import lru_cache
from typing import Any, Optional

import redis.asyncio as redis

from dreamrag.config import settings
from dreamrag.utils.secure_logger import get_logger

logger = get_logger(__name__)


def build_cache_key(*parts: str) -> str:
    """Build a stable hash key from arbitrary string parts."""
    payload = "||".join([p or "" for p in parts])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class BaseCache:
    """Redis wrapper with JSON helpers. Disabled when no URL is configured."""

    def __init__(self, redis_url: str):
        self._enabled = bool(redis_url)
        self._redis = redis.from_url(redis_url, decode_responses=True) if self._enabled else None

    def enabled(self) -> bool:
        return self._enabled and self._redis is not None

    async def get_json(self, key: str) -> Optional[Any]:
        if not self.enabled():
            return None
        try:
            value = await self._redis.get(key)
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None
        if not value:
            return None
        try:
            return json.loads(value)
        except ValueError:
            return None

    async def set_json(self, key: str, value: Any, ttl: int) -> None:
        if not self.enabled():
            return
        try:
            await self._redis.setex(key, ttl, json.dumps(value, ensure_ascii=False))
        except Exception as e:
            logger.warning("Cache set failed: %s", e)


class EmbeddingCache(BaseCache):
    """Cache for query embeddings, keyed by backend, model and text."""

    def _key(self, provider: str, model: str, text: str) -> str:
        return f"dreamrag:embedding:{build_cache_key(provider, model, text)}"

    async def get_embedding(self, provider: str, model: str, text: str) -> Optional[dict]:
        data = await self.get_json(self._key(provider, model, text))
        if not isinstance(data, dict) or not isinstance(data.get("dense"), list):
            return None
        return data

    async def set_embedding(
        self,
        provider: str,
        model: str,
        text: str,
        dense: list[float],
        sparse: Optional[dict[str, float]] = None,
    ) -> None:
        await self.set_json(
            self._key(provider, model, text),
            {"dense": dense, "sparse": sparse},
            settings.embedding_cache_ttl_seconds,
        )


@lru_cache()
def get_embedding_cache() -> Optional[EmbeddingCache]:
    if not settings.redis_url:
        return None
    return EmbeddingCache(settings.redis_url)
