"""
Codification Service - the public operations of the engine

Flow:
1. fast_pass     extracted items -> alias lookups -> CodifiedExtraction
2. smart_pass    pending items -> model-assisted suggestions (on demand)
3. confirm       human decision -> item confirmed + alias learned
4. next document: fast_pass resolves the learned name with no model call

Every write operation is one unit of work: the domain layer flushes, this
service commits once and then publishes the resulting events. A failure
anywhere rolls the whole operation back.

Example:
    result = await codification_service.fast_pass(
        document_id="doc_123",
        items=[ExtractedItemInput(name="Site Purchase Price", value="1250000", currency="GBP")],
        db=db_session,
    )
    print(result.stats.pending_review, "items need the smart pass")
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common import events
from packages.common.config import Settings, get_settings
from packages.common.events import CeleryEventPublisher, EventPublisher
from packages.common.metrics import ITEM_CODES_CREATED
from packages.domain.codification.confirmation import confirmation_learner
from packages.domain.codification.extraction_repository import (
    extraction_repository,
    load_items,
    to_view,
)
from packages.domain.codification.fast_pass import FastPassResolver
from packages.domain.codification.model_resolver import AnthropicModelResolver, ModelResolver
from packages.domain.codification.models import ItemCategory, ItemCode
from packages.domain.codification.schemas import (
    AddItemResult,
    CategoryChange,
    CategoryChangeResult,
    CategoryCreate,
    CategoryUpdate,
    ConfirmAllResult,
    ConfirmedItemRow,
    ConfirmedItems,
    ConfirmResult,
    ExtractedItemInput,
    ExtractionView,
    FastPassResult,
    ItemCodeCreate,
    ItemCodeUpdate,
    MappingStats,
    MappingStatus,
    NewCodeSpec,
    Readiness,
    ReviewQueue,
    SingleSuggestion,
    SmartPassResult,
)
from packages.domain.codification.smart_pass import SmartPassResolver
from packages.domain.codification.taxonomy_repository import taxonomy_repository

logger = structlog.get_logger()

Event = Tuple[str, Dict[str, Any]]


def _extraction_event(extraction_id: UUID, document_id: str, operation: str, stats: MappingStats) -> Event:
    return events.EXTRACTION_UPDATED, {
        "extraction_id": str(extraction_id),
        "document_id": document_id,
        "operation": operation,
        "stats": stats.model_dump(),
    }


class CodificationService:

    def __init__(
        self,
        resolver: Optional[ModelResolver] = None,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self._resolver = resolver
        self._publisher = publisher

    @property
    def resolver(self) -> ModelResolver:
        if self._resolver is None:
            self._resolver = AnthropicModelResolver(settings=self.settings)
        return self._resolver

    @property
    def publisher(self) -> EventPublisher:
        if self._publisher is None:
            self._publisher = CeleryEventPublisher(
                broker_url=self.settings.celery_broker_url,
                result_backend=self.settings.celery_result_backend,
                enabled=self.settings.codification_events_enabled,
            )
        return self._publisher

    @asynccontextmanager
    async def _unit_of_work(self, db: AsyncSession) -> AsyncIterator[List[Event]]:
        """Commit once on success, roll back on any error, then publish events"""
        pending: List[Event] = []
        try:
            yield pending
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        for event_type, payload in pending:
            await self.publisher.publish(event_type, payload)

    # ---- Writes -----------------------------------------------------------------------

    async def fast_pass(
        self,
        document_id: str,
        items: List[ExtractedItemInput],
        db: AsyncSession,
        project_id: Optional[str] = None,
    ) -> FastPassResult:
        async with self._unit_of_work(db) as pending:
            extraction, codified, stats = await FastPassResolver(self.settings).run(
                document_id=document_id,
                items=items,
                db=db,
                project_id=project_id,
            )
            pending.append(_extraction_event(extraction.id, document_id, "fast_pass", stats))

        return FastPassResult(
            extraction_id=extraction.id,
            document_id=document_id,
            items=codified,
            stats=stats,
        )

    async def smart_pass(
        self,
        db: AsyncSession,
        extraction_id: Optional[UUID] = None,
        document_id: Optional[str] = None,
        force: bool = False,
    ) -> SmartPassResult:
        """
        Read, release the connection, call the model, then write in one unit of work.

        Raises ConcurrentModificationError when the extraction changed during
        the model call; the caller may retry.
        """
        smart = SmartPassResolver(self.resolver, self.settings)
        try:
            plan = await smart.prepare(db, extraction_id=extraction_id, document_id=document_id, force=force)
        except Exception:
            await db.rollback()
            raise
        # Read-only so far; end the transaction so the model call holds no connection
        await db.commit()
        if plan.skipped is not None:
            return plan.skipped

        response = await smart.request(plan)

        async with self._unit_of_work(db) as pending:
            extraction, result = await smart.apply(db, plan, response)
            pending.append(_extraction_event(extraction.id, extraction.document_id, "smart_pass", result.stats))
        return result

    async def confirm(
        self,
        extraction_id: UUID,
        item_id: str,
        final_code: str,
        db: AsyncSession,
        canonical_code_id: Optional[UUID] = None,
        new_code: Optional[NewCodeSpec] = None,
    ) -> ConfirmResult:
        async with self._unit_of_work(db) as pending:
            was_confirmed = await self._was_fully_confirmed(db, extraction_id=extraction_id)
            result, emitted = await confirmation_learner.confirm_one(
                extraction_id=extraction_id,
                item_id=item_id,
                final_code=final_code,
                canonical_code_id=canonical_code_id,
                new_code=new_code,
                db=db,
            )
            pending.extend(emitted)
            await self._queue_extraction_events(
                pending, result.extraction_id, "confirm", result.stats, was_confirmed, db
            )
        return result

    async def confirm_all(self, extraction_id: UUID, db: AsyncSession) -> ConfirmAllResult:
        async with self._unit_of_work(db) as pending:
            was_confirmed = await self._was_fully_confirmed(db, extraction_id=extraction_id)
            result, emitted = await confirmation_learner.confirm_all(extraction_id=extraction_id, db=db)
            pending.extend(emitted)
            await self._queue_extraction_events(
                pending, result.extraction_id, "confirm_all", result.stats, was_confirmed, db
            )
        return result

    async def add_item(
        self,
        item: ExtractedItemInput,
        db: AsyncSession,
        document_id: Optional[str] = None,
        extraction_id: Optional[UUID] = None,
        code: Optional[str] = None,
    ) -> AddItemResult:
        async with self._unit_of_work(db) as pending:
            was_confirmed = await self._was_fully_confirmed(
                db, extraction_id=extraction_id, document_id=document_id
            )
            result, emitted = await confirmation_learner.add_item(
                item=item,
                document_id=document_id,
                extraction_id=extraction_id,
                code=code,
                db=db,
            )
            pending.extend(emitted)
            await self._queue_extraction_events(
                pending, result.extraction_id, "add_item", result.stats, was_confirmed, db
            )
        return result

    async def create_item_code(self, data: ItemCodeCreate, db: AsyncSession) -> ItemCode:
        async with self._unit_of_work(db) as pending:
            item_code = await taxonomy_repository.create_code(data, db)
            ITEM_CODES_CREATED.inc()
            pending.append((events.ITEM_CODE_CREATED, {
                "item_code_id": str(item_code.id),
                "code": item_code.code,
                "category": item_code.category,
            }))
        return item_code

    async def deactivate_item_code(self, code_id: UUID, db: AsyncSession) -> ItemCode:
        async with self._unit_of_work(db):
            item_code = await taxonomy_repository.deactivate_code(code_id, db)
        return item_code

    async def update_item_code(self, code_id: UUID, data: ItemCodeUpdate, db: AsyncSession) -> ItemCode:
        async with self._unit_of_work(db):
            item_code = await taxonomy_repository.update_code(code_id, data, db)
        return item_code

    async def change_category(self, data: CategoryChange, db: AsyncSession) -> CategoryChangeResult:
        async with self._unit_of_work(db):
            result = await taxonomy_repository.change_category(data.code_ids, data.category, db)
        return result

    async def create_category(self, data: CategoryCreate, db: AsyncSession) -> ItemCategory:
        async with self._unit_of_work(db):
            category = await taxonomy_repository.create_category(data, db)
        return category

    async def update_category(self, category_id: UUID, data: CategoryUpdate, db: AsyncSession) -> ItemCategory:
        async with self._unit_of_work(db):
            category = await taxonomy_repository.update_category(category_id, data, db)
        return category

    async def _was_fully_confirmed(
        self,
        db: AsyncSession,
        extraction_id: Optional[UUID] = None,
        document_id: Optional[str] = None,
    ) -> bool:
        """State before a write; unknown extractions are left for the write to reject"""
        if extraction_id is not None:
            extraction = await extraction_repository.get(extraction_id, db)
        elif document_id:
            extraction = await extraction_repository.get_by_document(document_id, db)
        else:
            return False
        return extraction is not None and bool(extraction.items) and extraction.is_fully_confirmed

    async def _queue_extraction_events(
        self,
        pending: List[Event],
        extraction_id: UUID,
        operation: str,
        stats: MappingStats,
        was_fully_confirmed: bool,
        db: AsyncSession,
    ) -> None:
        extraction = await extraction_repository.get(extraction_id, db)
        pending.append(_extraction_event(extraction_id, extraction.document_id, operation, stats))
        # Only the transition into fully confirmed is an event
        if stats.total and stats.is_fully_confirmed and not was_fully_confirmed:
            pending.append((events.EXTRACTION_FULLY_CONFIRMED, {
                "extraction_id": str(extraction_id),
                "document_id": extraction.document_id,
                "total": stats.total,
            }))

    # ---- Reads ------------------------------------------------------------------------

    async def suggest_single(
        self,
        item_name: str,
        db: AsyncSession,
        value: Any = None,
        category_hint: Optional[str] = None,
    ) -> SingleSuggestion:
        return await SmartPassResolver(self.resolver, self.settings).suggest_single(
            item_name=item_name,
            value=value,
            category_hint=category_hint,
            db=db,
        )

    async def get_extraction(self, extraction_id: UUID, db: AsyncSession) -> ExtractionView:
        return to_view(await extraction_repository.resolve(db, extraction_id=extraction_id))

    async def get_extraction_by_document(self, document_id: str, db: AsyncSession) -> ExtractionView:
        return to_view(await extraction_repository.resolve(db, document_id=document_id))

    async def list_project_extractions(self, project_id: str, db: AsyncSession) -> List[ExtractionView]:
        return [to_view(e) for e in await extraction_repository.list_by_project(project_id, db)]

    async def review_queue(self, document_id: str, db: AsyncSession) -> ReviewQueue:
        """Items still waiting for a human: pending_review and suggested"""
        extraction = await extraction_repository.resolve(db, document_id=document_id)
        items = load_items(extraction)
        return ReviewQueue(
            extraction_id=extraction.id,
            items=[item for item in items if item.mapping_status != MappingStatus.CONFIRMED],
            total=len(items),
            stats=MappingStats.from_items(items),
        )

    async def readiness(self, document_id: str, db: AsyncSession) -> Readiness:
        """Whether every item of the document is confirmed"""
        extraction = await extraction_repository.get_by_document(document_id, db)
        if extraction is None:
            return Readiness(ready=False, reason="No codified extraction found")

        stats = MappingStats.from_items(load_items(extraction))
        unconfirmed = stats.total - stats.confirmed
        if unconfirmed:
            return Readiness(
                ready=False,
                reason=f"{unconfirmed} items need confirmation",
                unconfirmed_count=unconfirmed,
            )
        return Readiness(ready=True)

    async def confirmed_items(self, document_id: str, db: AsyncSession) -> ConfirmedItems:
        extraction = await extraction_repository.resolve(db, document_id=document_id)
        items = load_items(extraction)
        stats = MappingStats.from_items(items)
        return ConfirmedItems(
            extraction_id=extraction.id,
            items=[
                ConfirmedItemRow(
                    item_code=item.item_code,
                    original_name=item.original_name,
                    value=item.value,
                    data_type=item.data_type,
                    category=item.category,
                )
                for item in items
                if item.mapping_status == MappingStatus.CONFIRMED
            ],
            is_fully_confirmed=stats.is_fully_confirmed,
            stats=stats,
        )


# Singleton instance (resolver and publisher are created on first use)
codification_service = CodificationService()


def get_codification_service() -> CodificationService:
    """FastAPI dependency; tests override it with a service wired to fakes"""
    return codification_service
