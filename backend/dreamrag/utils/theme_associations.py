"""
Fragment <-> theme association index.

Associations are produced offline (fragment embedding vs theme embedding)
and let the engine boost or pre-filter fragments by theme without
recomputing any vectors at query time.
"""

import json
from collections import defaultdict
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

from dreamrag.config import settings
from dreamrag.exceptions import LexiconError
from dreamrag.models import FragmentThemeAssociation
from dreamrag.utils.secure_logger import get_logger
from dreamrag.utils.theme_vocabulary import ThemeVocabulary, get_theme_vocabulary

logger = get_logger(__name__)


class ThemeAssociationIndex:
    def __init__(
        self,
        vocabulary: Optional[ThemeVocabulary] = None,
        fragment_ids: Optional[Iterable[str]] = None,
    ):
        self._vocabulary = vocabulary
        self._known_fragments = set(fragment_ids) if fragment_ids is not None else None
        self._by_fragment: dict[str, dict[str, float]] = defaultdict(dict)
        self._by_theme: dict[str, dict[str, float]] = defaultdict(dict)

    def __len__(self) -> int:
        return sum(len(themes) for themes in self._by_fragment.values())

    def add(self, association: FragmentThemeAssociation) -> None:
        if self._vocabulary is not None and association.theme_code not in self._vocabulary:
            raise ValueError(f"Unknown theme code: {association.theme_code}")
        if (
            self._known_fragments is not None
            and association.fragment_id not in self._known_fragments
        ):
            raise ValueError(f"Unknown fragment id: {association.fragment_id}")

        self._by_fragment[association.fragment_id][association.theme_code] = association.similarity
        self._by_theme[association.theme_code][association.fragment_id] = association.similarity

    def add_many(self, associations: Iterable[FragmentThemeAssociation]) -> None:
        for association in associations:
            self.add(association)

    def themes_for(self, fragment_id: str, min_similarity: float = 0.0) -> list[str]:
        """Theme codes for a fragment, strongest first."""
        themes = self._by_fragment.get(fragment_id, {})
        ranked = sorted(themes.items(), key=lambda item: item[1], reverse=True)
        return [code for code, similarity in ranked if similarity >= min_similarity]

    def fragments_for(self, theme_codes: Iterable[str], min_similarity: float = 0.0) -> set[str]:
        matched: set[str] = set()
        for code in theme_codes:
            for fragment_id, similarity in self._by_theme.get(code, {}).items():
                if similarity >= min_similarity:
                    matched.add(fragment_id)
        return matched

    @classmethod
    def load(
        cls,
        path: str | Path,
        vocabulary: Optional[ThemeVocabulary] = None,
    ) -> "ThemeAssociationIndex":
        """
        Load associations from a JSON list of
        ``{"fragment_id", "theme_code", "similarity"}`` objects.
        """
        try:
            with open(path, encoding="utf-8") as f:
                rows = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise LexiconError(f"Could not read associations {path}", {"path": str(path)}) from e

        index = cls(vocabulary)
        skipped = 0
        for row in rows:
            try:
                index.add(
                    FragmentThemeAssociation(
                        fragment_id=str(row["fragment_id"]),
                        theme_code=str(row["theme_code"]),
                        similarity=float(row["similarity"]),
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                skipped += 1
                logger.warning("Skipping invalid association %r: %s", row, e)
        logger.info("Loaded %d theme associations (%d skipped)", len(index), skipped)
        return index


@lru_cache(maxsize=1)
def get_theme_associations() -> Optional[ThemeAssociationIndex]:
    if not settings.theme_associations_path:
        return None
    return ThemeAssociationIndex.load(settings.theme_associations_path, get_theme_vocabulary())
