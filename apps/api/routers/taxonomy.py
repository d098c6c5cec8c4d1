"""
Taxonomy API - canonical item codes, categories and learned aliases

Codes are never deleted; deactivation keeps them resolvable for history.
Curators may edit a code's display name, category and data type, never
its code string.
"""
from typing import Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.database import get_db_session
from packages.domain.codification.alias_repository import alias_repository
from packages.domain.codification.codification_service import (
    CodificationService,
    get_codification_service,
)
from packages.domain.codification.schemas import (
    AliasRead,
    CategoryChange,
    CategoryChangeResult,
    CategoryCreate,
    CategoryRead,
    CategoryUpdate,
    ItemCodeCreate,
    ItemCodeRead,
    ItemCodeUpdate,
)
from packages.domain.codification.taxonomy_repository import taxonomy_repository

logger = structlog.get_logger()
router = APIRouter()


@router.get("/codes", response_model=List[ItemCodeRead])
async def list_item_codes(
    category: Optional[str] = Query(None, description="Filter by category"),
    include_inactive: bool = Query(False, description="Include deactivated codes"),
    db: AsyncSession = Depends(get_db_session),
) -> List[ItemCodeRead]:
    codes = await taxonomy_repository.list_codes(db, category=category, include_inactive=include_inactive)
    return [ItemCodeRead.model_validate(code) for code in codes]


@router.get("/codes/by-category", response_model=Dict[str, List[ItemCodeRead]])
async def list_codes_by_category(
    db: AsyncSession = Depends(get_db_session),
) -> Dict[str, List[ItemCodeRead]]:
    """Active codes grouped by category"""
    grouped = await taxonomy_repository.codes_by_category(db)
    return {
        category: [ItemCodeRead.model_validate(code) for code in codes]
        for category, codes in grouped.items()
    }


@router.post("/codes", response_model=ItemCodeRead, status_code=status.HTTP_201_CREATED)
async def create_item_code(
    request: ItemCodeCreate,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> ItemCodeRead:
    """Create a canonical code (409 if the code string already exists)"""
    item_code = await service.create_item_code(request, db)
    return ItemCodeRead.model_validate(item_code)


@router.post("/codes/{code_id}/deactivate", response_model=ItemCodeRead)
async def deactivate_item_code(
    code_id: UUID,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> ItemCodeRead:
    item_code = await service.deactivate_item_code(code_id, db)
    return ItemCodeRead.model_validate(item_code)


@router.patch("/codes/{code_id}", response_model=ItemCodeRead)
async def update_item_code(
    code_id: UUID,
    request: ItemCodeUpdate,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> ItemCodeRead:
    """Edit display name, category or data type (the code string is immutable)"""
    item_code = await service.update_item_code(code_id, request, db)
    return ItemCodeRead.model_validate(item_code)


@router.post("/codes/change-category", response_model=CategoryChangeResult)
async def change_codes_category(
    request: CategoryChange,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> CategoryChangeResult:
    return await service.change_category(request, db)


@router.get("/categories", response_model=List[CategoryRead])
async def list_categories(
    db: AsyncSession = Depends(get_db_session),
) -> List[CategoryRead]:
    categories = await taxonomy_repository.list_categories(db)
    return [CategoryRead.model_validate(category) for category in categories]


@router.post("/categories", response_model=CategoryRead, status_code=status.HTTP_201_CREATED)
async def create_category(
    request: CategoryCreate,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> CategoryRead:
    category = await service.create_category(request, db)
    return CategoryRead.model_validate(category)


@router.patch("/categories/{category_id}", response_model=CategoryRead)
async def update_category(
    category_id: UUID,
    request: CategoryUpdate,
    db: AsyncSession = Depends(get_db_session),
    service: CodificationService = Depends(get_codification_service),
) -> CategoryRead:
    category = await service.update_category(category_id, request, db)
    return CategoryRead.model_validate(category)


@router.get("/aliases", response_model=Dict[str, List[AliasRead]])
async def list_aliases_by_code(
    db: AsyncSession = Depends(get_db_session),
) -> Dict[str, List[AliasRead]]:
    """Every learned alias grouped by canonical code"""
    grouped = await alias_repository.aliases_by_code(db)
    return {
        code: [AliasRead.model_validate(alias) for alias in aliases]
        for code, aliases in grouped.items()
    }
