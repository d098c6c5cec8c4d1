"""
Alias persistence

Aliases are only ever appended. Two confirmations of the same raw name both
persist; the index build decides which one wins.
"""
from collections import defaultdict
from typing import Dict, List, Tuple
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from packages.domain.codification.models import ItemCode, ItemCodeAlias
from packages.domain.codification.normalization import normalize_alias
from packages.domain.codification.schemas import AliasSource

logger = structlog.get_logger()


class AliasRepository:

    async def create_alias(
        self,
        alias_raw: str,
        canonical_code: str,
        canonical_code_id: UUID,
        source: AliasSource,
        db: AsyncSession,
        confidence: float = 1.0,
    ) -> ItemCodeAlias:
        """Append an alias row (normalization applied here, never by callers)"""
        alias = ItemCodeAlias(
            alias_raw=alias_raw,
            alias_normalized=normalize_alias(alias_raw),
            canonical_code=canonical_code,
            canonical_code_id=canonical_code_id,
            confidence=confidence,
            source=source.value,
        )
        db.add(alias)
        await db.flush()

        logger.info("alias_created",
                   alias_id=alias.id,
                   alias_normalized=alias.alias_normalized,
                   canonical_code=canonical_code,
                   source=source.value)
        return alias

    async def load_index_rows(self, db: AsyncSession) -> List[Tuple[ItemCodeAlias, bool]]:
        """Every alias with the active flag of the code it points at"""
        result = await db.execute(
            select(ItemCodeAlias, ItemCode.is_active)
            .join(ItemCode, ItemCode.id == ItemCodeAlias.canonical_code_id)
            .order_by(ItemCodeAlias.id)
        )
        return [(alias, bool(is_active)) for alias, is_active in result.all()]

    async def list_for_normalized(self, alias_normalized: str, db: AsyncSession) -> List[ItemCodeAlias]:
        result = await db.execute(
            select(ItemCodeAlias)
            .where(ItemCodeAlias.alias_normalized == alias_normalized)
            .order_by(ItemCodeAlias.id)
        )
        return list(result.scalars())

    async def aliases_by_code(self, db: AsyncSession) -> Dict[str, List[ItemCodeAlias]]:
        """All aliases grouped by canonical code, oldest first"""
        result = await db.execute(
            select(ItemCodeAlias).order_by(ItemCodeAlias.canonical_code, ItemCodeAlias.id)
        )
        grouped: Dict[str, List[ItemCodeAlias]] = defaultdict(list)
        for alias in result.scalars():
            grouped[alias.canonical_code].append(alias)
        return dict(grouped)


alias_repository = AliasRepository()
