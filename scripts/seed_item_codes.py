#!/usr/bin/env python3
"""
Seed item categories, codes and aliases from a JSON file.

Existing categories and codes are skipped, so the script can be re-run after
the file grows.

Usage:
    DATABASE_URL=postgresql://... python scripts/seed_item_codes.py <seed.json>

Example file:
    {
      "categories": [
        {"name": "Site Costs", "description": "Land acquisition", "examples": ["Stamp Duty"]}
      ],
      "codes": [
        {"code": "costs.siteAcquisition", "display_name": "Site Acquisition",
         "category": "Site Costs", "data_type": "currency",
         "aliases": ["Site Purchase Price", "Land Cost"]}
      ]
    }
"""
import sys
import os
import asyncio
import json
from typing import Any, Dict

# Add parent directory to path so we can import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.database import get_db_session
from packages.common.logging_config import configure_logging
from packages.domain.codification.alias_repository import alias_repository
from packages.domain.codification.schemas import AliasSource, CategoryCreate, ItemCodeCreate
from packages.domain.codification.taxonomy_repository import taxonomy_repository

logger = structlog.get_logger()


async def seed_taxonomy(data: Dict[str, Any], db: AsyncSession) -> Dict[str, int]:
    """Insert whatever is missing; returns counts of created and skipped rows"""
    counts = {"categories": 0, "codes": 0, "aliases": 0, "skipped_categories": 0, "skipped_codes": 0}

    for raw in data.get("categories", []):
        category = CategoryCreate.model_validate({"is_system": True, **raw})
        if await taxonomy_repository.get_category(category.name, db) is not None:
            counts["skipped_categories"] += 1
            continue
        await taxonomy_repository.create_category(category, db)
        counts["categories"] += 1

    for raw in data.get("codes", []):
        raw = dict(raw)
        aliases = raw.pop("aliases", [])
        spec = ItemCodeCreate.model_validate({"is_system_default": True, **raw})

        if await taxonomy_repository.get_code_by_code(spec.code, db) is not None:
            counts["skipped_codes"] += 1
            continue

        item_code = await taxonomy_repository.create_code(spec, db)
        counts["codes"] += 1

        for alias in [item_code.display_name, *aliases]:
            await alias_repository.create_alias(
                alias_raw=alias,
                canonical_code=item_code.code,
                canonical_code_id=item_code.id,
                source=AliasSource.MANUAL,
                db=db,
            )
            counts["aliases"] += 1

    await db.commit()
    logger.info("taxonomy_seeded", **counts)
    return counts


async def main():
    if len(sys.argv) < 2:
        print("Usage: python scripts/seed_item_codes.py <seed.json>")
        sys.exit(1)

    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    with open(sys.argv[1], encoding="utf-8") as f:
        data = json.load(f)

    async for db in get_db_session():
        counts = await seed_taxonomy(data, db)

    print("\nSeeded:")
    for key, value in counts.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    asyncio.run(main())
