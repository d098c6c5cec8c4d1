"""
Extraction Record Store - one CodifiedExtraction per document

Items are persisted as a JSON list of CodifiedItem dumps. Every write goes
through save_items(), which recomputes the derived stats and bumps the
optimistic version; a write against a stale version surfaces as
ConcurrentModificationError.
"""
from typing import List, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from packages.common.exceptions import (
    ConcurrentModificationError,
    ExtractionNotFoundError,
    InvalidArgumentError,
    ItemNotFoundError,
)
from packages.domain.codification.models import CodifiedExtraction, utcnow
from packages.domain.codification.schemas import CodifiedItem, ExtractionView, MappingStats

logger = structlog.get_logger()


def load_items(extraction: CodifiedExtraction) -> List[CodifiedItem]:
    return [CodifiedItem.model_validate(raw) for raw in extraction.items or []]


def find_item(items: List[CodifiedItem], item_id: str) -> int:
    """Position of item_id in items; ItemNotFoundError if absent"""
    for position, item in enumerate(items):
        if item.id == item_id:
            return position
    raise ItemNotFoundError(detail=f"No item with id {item_id}")


def to_view(extraction: CodifiedExtraction) -> ExtractionView:
    items = load_items(extraction)
    stats = MappingStats.from_items(items)
    return ExtractionView(
        id=extraction.id,
        document_id=extraction.document_id,
        project_id=extraction.project_id,
        items=items,
        stats=stats,
        is_fully_confirmed=stats.is_fully_confirmed,
        fast_pass_completed=extraction.fast_pass_completed,
        smart_pass_completed=extraction.smart_pass_completed,
        codified_at=extraction.codified_at,
        smart_pass_at=extraction.smart_pass_at,
        confirmed_at=extraction.confirmed_at,
        version=extraction.version,
    )


class ExtractionRepository:

    async def get(
        self,
        extraction_id: UUID,
        db: AsyncSession,
        fresh: bool = False,
    ) -> Optional[CodifiedExtraction]:
        """fresh=True re-reads the row even if the session already holds it"""
        return await db.get(CodifiedExtraction, extraction_id, populate_existing=fresh)

    async def get_by_document(self, document_id: str, db: AsyncSession) -> Optional[CodifiedExtraction]:
        result = await db.execute(
            select(CodifiedExtraction).where(CodifiedExtraction.document_id == document_id)
        )
        return result.scalar_one_or_none()

    async def list_by_project(self, project_id: str, db: AsyncSession) -> List[CodifiedExtraction]:
        result = await db.execute(
            select(CodifiedExtraction)
            .where(CodifiedExtraction.project_id == project_id)
            .order_by(CodifiedExtraction.codified_at)
        )
        return list(result.scalars())

    async def resolve(
        self,
        db: AsyncSession,
        extraction_id: Optional[UUID] = None,
        document_id: Optional[str] = None,
    ) -> CodifiedExtraction:
        """Find an extraction by id (preferred) or by document"""
        if extraction_id is None and not document_id:
            raise InvalidArgumentError(
                message="Either extraction_id or document_id is required",
            )

        extraction = None
        if extraction_id is not None:
            extraction = await self.get(extraction_id, db)
        elif document_id:
            extraction = await self.get_by_document(document_id, db)

        if extraction is None:
            raise ExtractionNotFoundError(
                detail=f"extraction_id={extraction_id} document_id={document_id}"
            )
        return extraction

    async def create(
        self,
        document_id: str,
        items: List[CodifiedItem],
        db: AsyncSession,
        project_id: Optional[str] = None,
        fast_pass_completed: bool = True,
    ) -> CodifiedExtraction:
        stats = MappingStats.from_items(items)
        extraction = CodifiedExtraction(
            document_id=document_id,
            project_id=project_id,
            items=[item.model_dump(mode="json") for item in items],
            mapping_stats=stats.model_dump(),
            fast_pass_completed=fast_pass_completed,
            smart_pass_completed=False,
            is_fully_confirmed=stats.is_fully_confirmed,
            confirmed_at=utcnow() if items and stats.is_fully_confirmed else None,
        )
        db.add(extraction)
        try:
            await db.flush()
        except IntegrityError as e:
            # Another request created the record for this document first
            raise ConcurrentModificationError(
                detail=f"Extraction for document {document_id} was created concurrently"
            ) from e

        logger.info("extraction_created",
                   extraction_id=str(extraction.id),
                   document_id=document_id,
                   total=stats.total)
        return extraction

    async def save_items(
        self,
        extraction: CodifiedExtraction,
        items: List[CodifiedItem],
        db: AsyncSession,
    ) -> MappingStats:
        """Replace the item list, recompute derived fields, flush under the version check"""
        stats = MappingStats.from_items(items)
        was_confirmed = extraction.is_fully_confirmed
        # A failed flush expires the instance; read what the error needs first
        extraction_id = extraction.id
        read_version = extraction.version

        extraction.items = [item.model_dump(mode="json") for item in items]
        extraction.mapping_stats = stats.model_dump()
        extraction.is_fully_confirmed = stats.is_fully_confirmed
        if stats.is_fully_confirmed and not was_confirmed:
            extraction.confirmed_at = utcnow()
        elif not stats.is_fully_confirmed:
            extraction.confirmed_at = None

        try:
            await db.flush()
        except StaleDataError as e:
            logger.warning("extraction_version_conflict",
                          extraction_id=str(extraction_id),
                          version=read_version)
            raise ConcurrentModificationError(
                detail=f"Extraction {extraction_id} changed since version {read_version}"
            ) from e

        return stats


extraction_repository = ExtractionRepository()
