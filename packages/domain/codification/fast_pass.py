"""
Fast Pass Resolver - alias dictionary lookup, no network calls

Runs right after extraction. Each item is looked up in a fresh alias index:
- hit  -> suggested (exact or fuzzy), confidence from the match
- miss -> pending_review, confidence 0, left for the Smart Pass

Re-running on a document updates its extraction in place:
- confirmed items are never touched
- a Smart Pass suggestion is kept when the alias index still misses
- an item keeps its id when (normalized name, occurrence) matches a previous item
- manually added items are preserved
- smart_pass_completed is reset while pending items remain
"""
from collections import defaultdict
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.config import Settings, get_settings
from packages.common.metrics import FAST_PASS_ITEMS
from packages.domain.codification.alias_index import AliasIndex
from packages.domain.codification.extraction_repository import (
    extraction_repository,
    load_items,
)
from packages.domain.codification.models import CodifiedExtraction, utcnow
from packages.domain.codification.normalization import normalize_alias
from packages.domain.codification.schemas import (
    CodifiedItem,
    ExtractedItemInput,
    FastPassStats,
    MappingStats,
    MappingStatus,
    MatchType,
)

logger = structlog.get_logger()

ItemKey = Tuple[str, int]


def new_item_id() -> str:
    return f"item_{uuid4().hex[:12]}"


def occurrence_keys(names: List[str]) -> List[ItemKey]:
    """(normalized name, n-th occurrence) per name, stable across re-runs"""
    seen: Dict[str, int] = defaultdict(int)
    keys = []
    for name in names:
        normalized = normalize_alias(name)
        keys.append((normalized, seen[normalized]))
        seen[normalized] += 1
    return keys


def resolve_item(item: ExtractedItemInput, index: AliasIndex, item_id: Optional[str] = None) -> CodifiedItem:
    """Codify one extracted item against the alias index"""
    codified = CodifiedItem(
        id=item_id or new_item_id(),
        original_name=item.name,
        value=item.value,
        data_type=item.data_type,
        category=item.category or "Uncategorized",
    )

    match = index.lookup(item.name)
    if match is None:
        return codified

    return codified.evolve(
        mapping_status=MappingStatus.SUGGESTED,
        suggested_code=match.canonical_code,
        # A deactivated code is surfaced as text only
        suggested_code_id=match.canonical_code_id if match.code_active else None,
        confidence=match.confidence,
        match_type=match.match_type,
        stale_code=not match.code_active,
    )


def _is_model_suggestion(item: Optional[CodifiedItem]) -> bool:
    return (
        item is not None
        and item.mapping_status == MappingStatus.SUGGESTED
        and item.match_type == MatchType.MODEL
    )


class FastPassResolver:

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def run(
        self,
        document_id: str,
        items: List[ExtractedItemInput],
        db: AsyncSession,
        project_id: Optional[str] = None,
    ) -> Tuple[CodifiedExtraction, List[CodifiedItem], FastPassStats]:
        """
        Codify a document's extracted items and persist the extraction.

        Returns:
            (extraction, items, stats); the caller commits
        """
        logger.info("fast_pass_started", document_id=document_id, item_count=len(items))

        index = await AliasIndex.load(db, self.settings)
        existing = await extraction_repository.get_by_document(document_id, db)

        if existing is None:
            resolved = [resolve_item(item, index) for item in items]
            codified = resolved
            extraction = await extraction_repository.create(
                document_id=document_id,
                project_id=project_id,
                items=codified,
                db=db,
            )
        else:
            resolved, codified = self._merge(existing, items, index)
            existing.fast_pass_completed = True
            existing.codified_at = utcnow()
            if project_id is not None:
                existing.project_id = project_id
            if any(item.mapping_status == MappingStatus.PENDING_REVIEW for item in codified):
                existing.smart_pass_completed = False
            await extraction_repository.save_items(existing, codified, db)
            extraction = existing

        stats = FastPassStats(**MappingStats.from_items(codified).model_dump())
        for item in resolved:
            if item.match_type == MatchType.EXACT:
                stats.exact_hits += 1
                FAST_PASS_ITEMS.labels(outcome="exact").inc()
            elif item.match_type == MatchType.FUZZY:
                stats.fuzzy_hits += 1
                FAST_PASS_ITEMS.labels(outcome="fuzzy").inc()
            else:
                FAST_PASS_ITEMS.labels(outcome="miss").inc()

        logger.info("fast_pass_complete",
                   document_id=document_id,
                   extraction_id=str(extraction.id),
                   total=stats.total,
                   exact_hits=stats.exact_hits,
                   fuzzy_hits=stats.fuzzy_hits,
                   pending_review=stats.pending_review,
                   rerun=existing is not None)

        return extraction, codified, stats

    def _merge(
        self,
        extraction: CodifiedExtraction,
        items: List[ExtractedItemInput],
        index: AliasIndex,
    ) -> Tuple[List[CodifiedItem], List[CodifiedItem]]:
        """
        Re-run onto an existing extraction.

        Returns:
            (items resolved in this run, full new item list)
        """
        previous = load_items(extraction)
        manual = [item for item in previous if item.is_manual]
        extracted = [item for item in previous if not item.is_manual]

        by_key: Dict[ItemKey, CodifiedItem] = dict(
            zip(occurrence_keys([item.original_name for item in extracted]), extracted)
        )
        used_keys = set()

        resolved: List[CodifiedItem] = []
        merged: List[CodifiedItem] = []
        for key, item in zip(occurrence_keys([item.name for item in items]), items):
            prior = by_key.get(key)
            if prior is not None:
                used_keys.add(key)
                if prior.mapping_status == MappingStatus.CONFIRMED:
                    merged.append(prior)
                    continue
            fresh = resolve_item(item, index, item_id=prior.id if prior else None)
            if fresh.mapping_status == MappingStatus.PENDING_REVIEW and _is_model_suggestion(prior):
                # The alias index cannot reproduce a model answer; keep it instead of paying again
                merged.append(prior.evolve(value=fresh.value, data_type=fresh.data_type))
                continue
            resolved.append(fresh)
            merged.append(fresh)

        # Confirmed decisions outlive a re-extraction that no longer lists them
        leftovers = [
            item for key, item in by_key.items()
            if key not in used_keys and item.mapping_status == MappingStatus.CONFIRMED
        ]
        return resolved, merged + leftovers + manual
