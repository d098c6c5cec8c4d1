"""
Alias Index - normalized item name -> canonical code

Built from the alias table for each resolution batch and discarded afterwards;
there is no process-wide cache, so a confirmation is visible to the very next
Fast Pass.

Lookup order:
1. Exact hit on the normalized name: stored confidence, similarity 1.0
2. Fuzzy: best key by the configured strategy, accepted iff
   similarity >= threshold; confidence = similarity * alias confidence

An alias pointing at a deactivated code still matches, with its confidence
multiplied by the stale penalty and code_active=False.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.config import Settings, get_settings
from packages.domain.codification.alias_repository import alias_repository
from packages.domain.codification.normalization import normalize_alias
from packages.domain.codification.schemas import AliasMatch, AliasSource, MatchType
from packages.domain.codification.similarity import DEFAULT_STRATEGY, best_match

logger = structlog.get_logger()

SOURCE_PRIORITY = {
    AliasSource.USER_CONFIRMED.value: 3,
    AliasSource.MANUAL.value: 2,
    AliasSource.AI_SUGGESTED.value: 1,
}


@dataclass(frozen=True)
class IndexEntry:
    alias_id: int
    alias_normalized: str
    canonical_code: str
    canonical_code_id: UUID
    confidence: float
    source: str
    created_at: datetime
    code_active: bool

    @property
    def rank(self) -> Tuple[float, datetime, int, int]:
        """Higher wins: confidence, recency, source priority, row id"""
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (self.confidence, created, SOURCE_PRIORITY.get(self.source, 0), self.alias_id)


class AliasIndex:
    """In-memory lookup over one snapshot of the alias table"""

    def __init__(
        self,
        entries: Dict[str, IndexEntry],
        fuzzy_threshold: float = 0.85,
        strategy: str = DEFAULT_STRATEGY,
        stale_alias_penalty: float = 0.5,
    ):
        self._entries = entries
        self.fuzzy_threshold = fuzzy_threshold
        self.strategy = strategy
        self.stale_alias_penalty = stale_alias_penalty

    @classmethod
    def build(cls, rows: Iterable[Tuple[object, bool]], **options) -> "AliasIndex":
        """
        Build from (alias row, code is_active) pairs.

        One entry per normalized alias; collisions are resolved by IndexEntry.rank.
        """
        entries: Dict[str, IndexEntry] = {}
        for alias, code_active in rows:
            entry = IndexEntry(
                alias_id=alias.id,
                alias_normalized=alias.alias_normalized,
                canonical_code=alias.canonical_code,
                canonical_code_id=alias.canonical_code_id,
                confidence=alias.confidence,
                source=alias.source,
                created_at=alias.created_at,
                code_active=code_active,
            )
            if not entry.alias_normalized:
                continue
            existing = entries.get(entry.alias_normalized)
            if existing is None or entry.rank > existing.rank:
                entries[entry.alias_normalized] = entry
        return cls(entries, **options)

    @classmethod
    async def load(cls, db: AsyncSession, settings: Optional[Settings] = None) -> "AliasIndex":
        """Snapshot the alias table using the configured matching options"""
        settings = settings or get_settings()
        rows = await alias_repository.load_index_rows(db)
        index = cls.build(
            rows,
            fuzzy_threshold=settings.fuzzy_threshold,
            strategy=settings.similarity_strategy,
            stale_alias_penalty=settings.stale_alias_penalty,
        )
        logger.debug("alias_index_built", aliases=len(rows), keys=len(index))
        return index

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, normalized: str) -> bool:
        return normalized in self._entries

    def get(self, normalized: str) -> Optional[IndexEntry]:
        return self._entries.get(normalized)

    def lookup(self, name: str) -> Optional[AliasMatch]:
        """Resolve a raw item name (normalized here) to its best alias match"""
        normalized = normalize_alias(name)
        if not normalized:
            return None

        entry = self._entries.get(normalized)
        if entry is not None:
            return self._to_match(entry, MatchType.EXACT, 1.0)

        found = best_match(normalized, self._entries.keys(), self.fuzzy_threshold, self.strategy)
        if found is None:
            return None

        key, score = found
        if score < self.fuzzy_threshold:
            return None
        return self._to_match(self._entries[key], MatchType.FUZZY, score)

    def _to_match(self, entry: IndexEntry, match_type: MatchType, score: float) -> AliasMatch:
        confidence = entry.confidence * score
        if not entry.code_active:
            confidence *= self.stale_alias_penalty

        return AliasMatch(
            canonical_code=entry.canonical_code,
            canonical_code_id=entry.canonical_code_id,
            confidence=round(min(1.0, max(0.0, confidence)), 4),
            match_type=match_type,
            similarity=score,
            code_active=entry.code_active,
            alias_source=AliasSource(entry.source),
        )
