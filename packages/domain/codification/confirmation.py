"""
Confirmation Learner - human decisions become ground truth

Every confirmation writes an alias (raw name -> confirmed code) with source
user_confirmed and confidence 1.0, so the next document containing the same
name resolves in the Fast Pass without a model call. Aliases are appended
unconditionally; repeated confirmations add one row each.

Each method only flushes. The caller commits once, so the item patch, any new
code and the alias land together or not at all. Events describing the writes
are returned for publication after that commit.
"""
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common import events
from packages.common.exceptions import InvalidArgumentError, ItemCodeNotFoundError
from packages.common.metrics import ALIASES_CREATED, ITEM_CODES_CREATED
from packages.domain.codification.alias_repository import alias_repository
from packages.domain.codification.extraction_repository import (
    extraction_repository,
    find_item,
    load_items,
)
from packages.domain.codification.fast_pass import new_item_id
from packages.domain.codification.models import ItemCode, ItemCodeAlias
from packages.domain.codification.schemas import (
    AddItemResult,
    AliasSource,
    CodifiedItem,
    ConfirmAllResult,
    ConfirmResult,
    ExtractedItemInput,
    ItemCodeCreate,
    MappingStatus,
    MatchType,
    NewCodeSpec,
)
from packages.domain.codification.taxonomy_repository import taxonomy_repository

logger = structlog.get_logger()

Event = Tuple[str, Dict[str, Any]]


def _confirmed(item: CodifiedItem, item_code: ItemCode) -> CodifiedItem:
    return item.evolve(
        mapping_status=MappingStatus.CONFIRMED,
        item_code=item_code.code,
        suggested_code=item_code.code,
        suggested_code_id=item_code.id,
        confidence=1.0,
        match_type=MatchType.MANUAL,
        stale_code=not item_code.is_active,
    )


def _alias_event(alias: ItemCodeAlias, extraction_id: UUID, item_id: str) -> Event:
    return events.ALIAS_CREATED, {
        "extraction_id": str(extraction_id),
        "item_id": item_id,
        "alias_id": alias.id,
        "alias_normalized": alias.alias_normalized,
        "canonical_code": alias.canonical_code,
        "source": alias.source,
    }


class ConfirmationLearner:

    async def _learn(
        self,
        item: CodifiedItem,
        item_code: ItemCode,
        source: AliasSource,
        db: AsyncSession,
    ) -> ItemCodeAlias:
        alias = await alias_repository.create_alias(
            alias_raw=item.original_name,
            canonical_code=item_code.code,
            canonical_code_id=item_code.id,
            source=source,
            confidence=1.0,
            db=db,
        )
        ALIASES_CREATED.labels(source=source.value).inc()
        return alias

    async def confirm_one(
        self,
        extraction_id: UUID,
        item_id: str,
        final_code: str,
        db: AsyncSession,
        canonical_code_id: Optional[UUID] = None,
        new_code: Optional[NewCodeSpec] = None,
    ) -> Tuple[ConfirmResult, List[Event]]:
        """
        Confirm one item against an existing code or a newly declared one.

        Raises:
            ExtractionNotFoundError / ItemNotFoundError: unknown extraction or item
            ItemCodeNotFoundError: canonical_code_id does not exist
            InvalidArgumentError: no code given, or id and code string disagree
            DuplicateItemCodeError: new_code declared for an existing code string
        """
        final_code = (final_code or "").strip()
        if not final_code:
            raise InvalidArgumentError(message="final_code is required")

        extraction = await extraction_repository.resolve(db, extraction_id=extraction_id)
        items = load_items(extraction)
        position = find_item(items, item_id)
        emitted: List[Event] = []

        created_code_id = None
        if new_code is not None:
            item_code = await taxonomy_repository.create_code(
                ItemCodeCreate(
                    code=final_code,
                    display_name=new_code.display_name,
                    category=new_code.category,
                    data_type=new_code.data_type,
                ),
                db,
            )
            created_code_id = item_code.id
            ITEM_CODES_CREATED.inc()
            emitted.append((events.ITEM_CODE_CREATED, {
                "item_code_id": str(item_code.id),
                "code": item_code.code,
                "category": item_code.category,
                "extraction_id": str(extraction.id),
            }))
        elif canonical_code_id is not None:
            item_code = await taxonomy_repository.get_code_by_id(canonical_code_id, db)
            if item_code is None:
                raise ItemCodeNotFoundError(detail=f"No item code with id {canonical_code_id}")
            if item_code.code != final_code:
                raise InvalidArgumentError(
                    message="final_code does not match canonical_code_id",
                    detail=f"id {canonical_code_id} is '{item_code.code}', got '{final_code}'",
                    suggestion="Send the code string of the selected code",
                )
        else:
            raise InvalidArgumentError(
                message="canonical_code_id or new_code is required",
                suggestion="Pick an existing code or declare a new one",
            )

        items[position] = _confirmed(items[position], item_code)
        alias = await self._learn(items[position], item_code, AliasSource.USER_CONFIRMED, db)
        stats = await extraction_repository.save_items(extraction, items, db)
        emitted.append(_alias_event(alias, extraction.id, item_id))

        logger.info("item_confirmed",
                   extraction_id=str(extraction.id),
                   item_id=item_id,
                   code=item_code.code,
                   new_code=created_code_id is not None,
                   alias_id=alias.id)

        return ConfirmResult(
            extraction_id=extraction.id,
            item_id=item_id,
            item_code=item_code.code,
            alias_id=alias.id,
            created_code_id=created_code_id,
            stats=stats,
            is_fully_confirmed=stats.is_fully_confirmed,
        ), emitted

    async def confirm_all(
        self,
        extraction_id: UUID,
        db: AsyncSession,
    ) -> Tuple[ConfirmAllResult, List[Event]]:
        """
        Accept every suggestion that points at an existing active code.

        Pending items, confirmed items and new-code proposals are left as they
        are. A suggestion whose code was deactivated stays suggested and is
        flagged stale_code.
        """
        extraction = await extraction_repository.resolve(db, extraction_id=extraction_id)
        items = load_items(extraction)

        candidates = [
            item for item in items
            if item.mapping_status == MappingStatus.SUGGESTED and item.suggested_code_id is not None
        ]
        codes = await taxonomy_repository.get_codes_by_ids(
            [item.suggested_code_id for item in candidates], db
        )

        candidate_ids = {item.id for item in candidates}
        emitted: List[Event] = []
        confirmed_ids = set()
        stale_ids = set()
        updated: List[CodifiedItem] = []
        for item in items:
            item_code = codes.get(item.suggested_code_id) if item.id in candidate_ids else None
            if item_code is None:
                updated.append(item)
                continue
            if not item_code.is_active:
                # Deactivated since it was suggested; needs an explicit confirm
                stale_ids.add(item.id)
                updated.append(item.evolve(suggested_code_id=None, stale_code=True))
                continue
            confirmed = _confirmed(item, item_code)
            alias = await self._learn(confirmed, item_code, AliasSource.USER_CONFIRMED, db)
            emitted.append(_alias_event(alias, extraction.id, item.id))
            confirmed_ids.add(item.id)
            updated.append(confirmed)

        stats = await extraction_repository.save_items(extraction, updated, db)

        logger.info("items_bulk_confirmed",
                   extraction_id=str(extraction.id),
                   confirmed=len(confirmed_ids),
                   skipped_suggestions=stats.suggested,
                   stale_codes=len(stale_ids),
                   pending_review=stats.pending_review)

        return ConfirmAllResult(
            extraction_id=extraction.id,
            confirmed_count=len(confirmed_ids),
            aliases_created=len(emitted),
            stats=stats,
            is_fully_confirmed=stats.is_fully_confirmed,
        ), emitted

    async def add_item(
        self,
        item: ExtractedItemInput,
        db: AsyncSession,
        document_id: Optional[str] = None,
        extraction_id: Optional[UUID] = None,
        code: Optional[str] = None,
    ) -> Tuple[AddItemResult, List[Event]]:
        """
        Inject an item the extraction missed.

        With a code the item is confirmed immediately and a manual alias is
        learned; without one it waits for the next Smart Pass.
        """
        extraction = await extraction_repository.resolve(db, extraction_id=extraction_id, document_id=document_id)
        items = load_items(extraction)
        emitted: List[Event] = []

        new_item = CodifiedItem(
            id=new_item_id(),
            original_name=item.name,
            value=item.value,
            data_type=item.data_type,
            category=item.category or "Uncategorized",
            is_manual=True,
        )

        alias = None
        if code:
            item_code = await taxonomy_repository.get_code_by_code(code, db)
            if item_code is None:
                raise ItemCodeNotFoundError(detail=f"No item code '{code}'")
            if not item.category:
                new_item = new_item.evolve(category=item_code.category)
            new_item = _confirmed(new_item, item_code)
            alias = await self._learn(new_item, item_code, AliasSource.MANUAL, db)
            emitted.append(_alias_event(alias, extraction.id, new_item.id))
        else:
            extraction.smart_pass_completed = False

        items.append(new_item)
        stats = await extraction_repository.save_items(extraction, items, db)

        logger.info("manual_item_added",
                   extraction_id=str(extraction.id),
                   item_id=new_item.id,
                   status=new_item.mapping_status.value,
                   code=code)

        return AddItemResult(
            extraction_id=extraction.id,
            item_id=new_item.id,
            mapping_status=new_item.mapping_status,
            alias_id=alias.id if alias is not None else None,
            stats=stats,
        ), emitted


confirmation_learner = ConfirmationLearner()
