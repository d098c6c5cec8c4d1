"""
Codification API - fast pass, smart pass, confirmation and review

Domain errors are translated to HTTP by apps.api.errors; handlers here only
parse requests and delegate to the CodificationService.
"""
from decimal import Decimal
from typing import List, Optional, Union
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.database import get_db_session
from packages.domain.codification.codification_service import (
    CodificationService,
    get_codification_service,
)
from packages.domain.codification.models import CODE_LENGTH, DOCUMENT_ID_LENGTH, NAME_LENGTH
from packages.domain.codification.schemas import (
    AddItemResult,
    ConfirmAllResult,
    ConfirmedItems,
    ConfirmResult,
    ExtractedItemInput,
    ExtractionView,
    FastPassResult,
    NewCodeSpec,
    Readiness,
    ReviewQueue,
    SingleSuggestion,
    SmartPassResult,
)

logger = structlog.get_logger()
router = APIRouter()


class FastPassRequest(BaseModel):
    document_id: str = Field(..., min_length=1, max_length=DOCUMENT_ID_LENGTH)
    project_id: Optional[str] = Field(None, max_length=DOCUMENT_ID_LENGTH)
    items: List[ExtractedItemInput]


class SmartPassRequest(BaseModel):
    extraction_id: Optional[UUID] = None
    document_id: Optional[str] = Field(None, max_length=DOCUMENT_ID_LENGTH)
    force: bool = Field(False, description="Re-resolve suggested items and ignore the completed flag")


class ConfirmRequest(BaseModel):
    final_code: str = Field(..., min_length=1, max_length=CODE_LENGTH)
    canonical_code_id: Optional[UUID] = None
    new_code: Optional[NewCodeSpec] = None

    class Config:
        json_schema_extra = {
            "example": {
                "final_code": "costs.siteAcquisition",
                "canonical_code_id": "3f1c2d4e-5a6b-4c7d-8e9f-0a1b2c3d4e5f",
            }
        }


class SuggestRequest(BaseModel):
    item_name: str = Field(..., min_length=1, max_length=NAME_LENGTH)
    value: Optional[Union[Decimal, str]] = None
    category_hint: Optional[str] = None


class AddItemRequest(BaseModel):
    document_id: Optional[str] = Field(None, max_length=DOCUMENT_ID_LENGTH)
    extraction_id: Optional[UUID] = None
    item: ExtractedItemInput
    code: Optional[str] = Field(
        None, max_length=CODE_LENGTH, description="Confirm immediately against this existing code"
    )


@router.post("/fast-pass", response_model=FastPassResult)
async def run_fast_pass(
    request: FastPassRequest,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> FastPassResult:
    """Codify extracted items with alias lookups only (no model call)"""
    return await service.fast_pass(
        document_id=request.document_id,
        project_id=request.project_id,
        items=request.items,
        db=db,
    )


@router.post("/smart-pass", response_model=SmartPassResult)
async def run_smart_pass(
    request: SmartPassRequest,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> SmartPassResult:
    """
    Ask the model-assisted resolver about items the fast pass could not place.

    Returns 503 when the resolver is unavailable; the extraction is unchanged.
    """
    return await service.smart_pass(
        db,
        extraction_id=request.extraction_id,
        document_id=request.document_id,
        force=request.force,
    )


@router.post("/extractions/{extraction_id}/items/{item_id}/confirm", response_model=ConfirmResult)
async def confirm_item(
    extraction_id: UUID,
    item_id: str,
    request: ConfirmRequest,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> ConfirmResult:
    return await service.confirm(
        extraction_id=extraction_id,
        item_id=item_id,
        final_code=request.final_code,
        canonical_code_id=request.canonical_code_id,
        new_code=request.new_code,
        db=db,
    )


@router.post("/extractions/{extraction_id}/confirm-all", response_model=ConfirmAllResult)
async def confirm_all_suggested(
    extraction_id: UUID,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> ConfirmAllResult:
    """Accept every suggestion that points at an existing code"""
    return await service.confirm_all(extraction_id=extraction_id, db=db)


@router.post("/suggest", response_model=SingleSuggestion)
async def suggest_code(
    request: SuggestRequest,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> SingleSuggestion:
    return await service.suggest_single(
        item_name=request.item_name,
        value=request.value,
        category_hint=request.category_hint,
        db=db,
    )


@router.post("/extractions/items", response_model=AddItemResult)
async def add_manual_item(
    request: AddItemRequest,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> AddItemResult:
    return await service.add_item(
        item=request.item,
        document_id=request.document_id,
        extraction_id=request.extraction_id,
        code=request.code,
        db=db,
    )


@router.get("/extractions/{extraction_id}", response_model=ExtractionView)
async def get_extraction(
    extraction_id: UUID,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> ExtractionView:
    return await service.get_extraction(extraction_id, db)


@router.get("/documents/{document_id}/extraction", response_model=ExtractionView)
async def get_document_extraction(
    document_id: str,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> ExtractionView:
    return await service.get_extraction_by_document(document_id, db)


@router.get("/documents/{document_id}/review", response_model=ReviewQueue)
async def get_review_items(
    document_id: str,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> ReviewQueue:
    """Items still pending review or awaiting confirmation of a suggestion"""
    return await service.review_queue(document_id, db)


@router.get("/documents/{document_id}/readiness", response_model=Readiness)
async def get_readiness(
    document_id: str,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> Readiness:
    return await service.readiness(document_id, db)


@router.get("/documents/{document_id}/confirmed-items", response_model=ConfirmedItems)
async def get_confirmed_items(
    document_id: str,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> ConfirmedItems:
    """Confirmed code -> value rows for downstream model population"""
    return await service.confirmed_items(document_id, db)


@router.get("/projects/{project_id}/extractions", response_model=List[ExtractionView])
async def list_project_extractions(
    project_id: str,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> List[ExtractionView]:
    return await service.list_project_extractions(project_id, db)
