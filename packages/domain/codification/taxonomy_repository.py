"""
Canonical Taxonomy Store

Item codes are append-only: a code is created once, may be deactivated, and
is never deleted, so historical confirmations and aliases keep resolving.
Categories group codes for display and for the Smart Pass context.

Repositories only flush; the calling service owns the commit.
"""
from collections import defaultdict
from typing import Dict, Iterable, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.exceptions import (
    CategoryNotFoundError,
    DuplicateItemCodeError,
    InvalidArgumentError,
    ItemCodeNotFoundError,
)
from packages.domain.codification.models import ItemCategory, ItemCode
from packages.domain.codification.normalization import normalize_category
from packages.domain.codification.schemas import (
    CategoryChangeResult,
    CategoryCreate,
    CategoryUpdate,
    ItemCodeCreate,
    ItemCodeUpdate,
)

logger = structlog.get_logger()


class TaxonomyRepository:
    """Item codes and categories"""

    # ---- Item codes -----------------------------------------------------------------

    async def get_code_by_id(self, code_id: UUID, db: AsyncSession) -> Optional[ItemCode]:
        return await db.get(ItemCode, code_id)

    async def get_code_by_code(self, code: str, db: AsyncSession) -> Optional[ItemCode]:
        result = await db.execute(select(ItemCode).where(ItemCode.code == code))
        return result.scalar_one_or_none()

    async def get_codes_by_ids(self, code_ids: Iterable[UUID], db: AsyncSession) -> Dict[UUID, ItemCode]:
        ids = set(code_ids)
        if not ids:
            return {}
        result = await db.execute(select(ItemCode).where(ItemCode.id.in_(ids)))
        return {code.id: code for code in result.scalars()}

    async def list_codes(
        self,
        db: AsyncSession,
        category: Optional[str] = None,
        include_inactive: bool = False,
    ) -> List[ItemCode]:
        """List codes ordered by category then code (active only by default)"""
        query = select(ItemCode)
        if not include_inactive:
            query = query.where(ItemCode.is_active.is_(True))
        if category:
            query = query.where(ItemCode.category == category)
        query = query.order_by(ItemCode.category, ItemCode.code)

        result = await db.execute(query)
        return list(result.scalars())

    async def codes_by_category(self, db: AsyncSession) -> Dict[str, List[ItemCode]]:
        """Active codes grouped by category"""
        grouped: Dict[str, List[ItemCode]] = defaultdict(list)
        for code in await self.list_codes(db):
            grouped[code.category].append(code)
        return dict(grouped)

    async def create_code(self, data: ItemCodeCreate, db: AsyncSession) -> ItemCode:
        """
        Create a new canonical code.

        Raises:
            DuplicateItemCodeError: code string already exists (active or not)
        """
        existing = await self.get_code_by_code(data.code, db)
        if existing is not None:
            raise DuplicateItemCodeError(
                detail=f"Code '{data.code}' already exists (active={existing.is_active})"
            )

        item_code = ItemCode(
            code=data.code,
            display_name=data.display_name,
            category=data.category,
            data_type=data.data_type.value,
            is_active=True,
            is_system_default=data.is_system_default,
        )
        db.add(item_code)
        try:
            await db.flush()
        except IntegrityError as e:
            # Lost a race with a concurrent create of the same code
            raise DuplicateItemCodeError(detail=f"Code '{data.code}' already exists") from e

        logger.info("item_code_created",
                   code=item_code.code,
                   category=item_code.category,
                   data_type=item_code.data_type)
        return item_code

    async def deactivate_code(self, code_id: UUID, db: AsyncSession) -> ItemCode:
        """Deactivate a code; its aliases stay and are flagged stale at lookup"""
        item_code = await self.get_code_by_id(code_id, db)
        if item_code is None:
            raise ItemCodeNotFoundError(detail=f"No item code with id {code_id}")

        if item_code.is_active:
            item_code.is_active = False
            await db.flush()
            logger.info("item_code_deactivated", code=item_code.code)

        return item_code

    async def update_code(self, code_id: UUID, data: ItemCodeUpdate, db: AsyncSession) -> ItemCode:
        """
        Edit display name, category or data type.

        The code string is not editable: aliases and confirmed items refer to it.
        """
        item_code = await self.get_code_by_id(code_id, db)
        if item_code is None:
            raise ItemCodeNotFoundError(detail=f"No item code with id {code_id}")

        changes = data.model_dump(exclude_none=True)
        if "data_type" in changes:
            changes["data_type"] = changes["data_type"].value
        changed = {field: value for field, value in changes.items() if getattr(item_code, field) != value}
        if not changed:
            return item_code

        for field, value in changed.items():
            setattr(item_code, field, value)
        await db.flush()

        logger.info("item_code_updated", code=item_code.code, fields=sorted(changed))
        return item_code

    async def change_category(
        self,
        code_ids: Iterable[UUID],
        category: str,
        db: AsyncSession,
    ) -> CategoryChangeResult:
        """Move codes into category; unknown ids are reported, not raised"""
        wanted = list(dict.fromkeys(code_ids))
        codes = await self.get_codes_by_ids(wanted, db)

        result = CategoryChangeResult(updated=0, unchanged=0)
        for code_id in wanted:
            item_code = codes.get(code_id)
            if item_code is None:
                result.missing.append(code_id)
            elif item_code.category == category:
                result.unchanged += 1
            else:
                item_code.category = category
                result.updated += 1

        if result.updated:
            await db.flush()
        logger.info("item_code_category_changed",
                   category=category,
                   updated=result.updated,
                   unchanged=result.unchanged,
                   missing=len(result.missing))
        return result

    # ---- Categories -----------------------------------------------------------------

    async def list_categories(self, db: AsyncSession) -> List[ItemCategory]:
        result = await db.execute(
            select(ItemCategory).order_by(
                ItemCategory.display_order.is_(None),
                ItemCategory.display_order,
                ItemCategory.name,
            )
        )
        return list(result.scalars())

    async def get_category(self, name: str, db: AsyncSession) -> Optional[ItemCategory]:
        result = await db.execute(
            select(ItemCategory).where(ItemCategory.normalized_name == normalize_category(name))
        )
        return result.scalar_one_or_none()

    async def create_category(self, data: CategoryCreate, db: AsyncSession) -> ItemCategory:
        normalized = normalize_category(data.name)
        if not normalized:
            raise InvalidArgumentError(
                message="Category name is empty after normalization",
                detail=f"name={data.name!r}",
            )

        if await self.get_category(data.name, db) is not None:
            raise InvalidArgumentError(
                message="Category already exists",
                detail=f"normalized_name={normalized}",
                suggestion="Use the existing category",
            )

        category = ItemCategory(
            name=data.name.strip(),
            normalized_name=normalized,
            description=data.description,
            examples=list(data.examples),
            display_order=data.display_order,
            is_system=data.is_system,
        )
        db.add(category)
        await db.flush()

        logger.info("item_category_created", name=category.name, normalized_name=normalized)
        return category

    async def update_category(self, category_id: UUID, data: CategoryUpdate, db: AsyncSession) -> ItemCategory:
        """Rename or re-describe a category; a rename carries over to its codes"""
        category = await db.get(ItemCategory, category_id)
        if category is None:
            raise CategoryNotFoundError(detail=f"No category with id {category_id}")

        if data.name is not None:
            normalized = normalize_category(data.name)
            if not normalized:
                raise InvalidArgumentError(
                    message="Category name is empty after normalization",
                    detail=f"name={data.name!r}",
                )
            conflict = await self.get_category(data.name, db)
            if conflict is not None and conflict.id != category.id:
                raise InvalidArgumentError(
                    message="Category already exists",
                    detail=f"normalized_name={normalized}",
                    suggestion="Use the existing category",
                )
            old_name, new_name = category.name, data.name.strip()
            category.name = new_name
            category.normalized_name = normalized
            if new_name != old_name:
                moved = await db.execute(
                    update(ItemCode).where(ItemCode.category == old_name).values(category=new_name)
                )
                logger.info("item_category_renamed", old=old_name, new=new_name, codes=moved.rowcount)
        if data.description is not None:
            category.description = data.description.strip()
        if data.examples is not None:
            category.examples = [example.strip() for example in data.examples if example.strip()]
        if data.display_order is not None:
            category.display_order = data.display_order

        await db.flush()
        logger.info("item_category_updated", name=category.name)
        return category


taxonomy_repository = TaxonomyRepository()
