"""Test fixtures for the codification engine.

Every test gets its own temp-file SQLite database (aiosqlite) with all tables
created from the ORM metadata. The model-assisted resolver and the event
publisher are replaced by in-process fakes, so no network is touched.
"""

import os
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from packages.common.config import Settings
from packages.common.database import Base
from packages.common.exceptions import ResolverUnavailableError
from packages.domain.codification import models  # noqa: F401 -- ensure models registered
from packages.domain.codification.alias_repository import alias_repository
from packages.domain.codification.codification_service import CodificationService
from packages.domain.codification.model_resolver import calculate_cost
from packages.domain.codification.models import ItemCode, ItemCodeAlias
from packages.domain.codification.schemas import (
    AliasSource,
    DataType,
    ItemCodeCreate,
    PendingItemContext,
    ResolutionContext,
    ResolverDecision,
    ResolverResponse,
    ResolverUsage,
)
from packages.domain.codification.taxonomy_repository import taxonomy_repository


class ScriptedResolver:
    """ModelResolver fake: answers by item name, records every call."""

    def __init__(self):
        self.answers: Dict[str, Dict[str, Any]] = {}
        self.fail = False
        self.calls: List[Tuple[List[PendingItemContext], ResolutionContext]] = []

    def answer(
        self,
        name: str,
        code: str,
        confidence: float,
        display_name: Optional[str] = None,
        category: str = "Site Costs",
        data_type: DataType = DataType.CURRENCY,
        is_new_code: bool = False,
    ) -> None:
        self.answers[name] = {
            "suggested_code": code,
            "display_name": display_name or name,
            "category": category,
            "data_type": data_type,
            "is_new_code": is_new_code,
            "confidence": confidence,
            "reasoning": f"scripted answer for {name}",
        }

    async def resolve(self, items, context):
        self.calls.append((items, context))
        if self.fail:
            raise ResolverUnavailableError(detail="scripted outage")

        decisions = [
            ResolverDecision(item_index=item.index, **self.answers[item.name])
            for item in items
            if item.name in self.answers
        ]
        return ResolverResponse(
            decisions=decisions,
            usage=ResolverUsage(input_tokens=1000, output_tokens=200, cost_usd=calculate_cost(1000, 200)),
        )


class RecordingPublisher:
    """EventPublisher fake that keeps published events in order."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def publish(self, event_type, payload):
        self.events.append((event_type, payload))

    def types(self) -> List[str]:
        return [event_type for event_type, _ in self.events]


@pytest.fixture
def settings():
    """Deterministic settings: no .env, no API key, no retry sleeps."""
    return Settings(
        _env_file=None,
        environment="test",
        anthropic_api_key=None,
        fuzzy_threshold=0.85,
        similarity_strategy="ratio",
        stale_alias_penalty=0.5,
        fallback_confidence=0.3,
        smart_pass_max_retries=2,
        smart_pass_retry_delay_seconds=0.0,
        codification_events_enabled=False,
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'codification.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def resolver():
    return ScriptedResolver()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def service(resolver, publisher, settings):
    return CodificationService(resolver=resolver, publisher=publisher, settings=settings)


@pytest.fixture
def make_code(db):
    """Create and commit an item code."""

    async def _make(
        code: str,
        display_name: Optional[str] = None,
        category: str = "Site Costs",
        data_type: DataType = DataType.CURRENCY,
    ) -> ItemCode:
        item_code = await taxonomy_repository.create_code(
            ItemCodeCreate(
                code=code,
                display_name=display_name or code,
                category=category,
                data_type=data_type,
            ),
            db,
        )
        await db.commit()
        return item_code

    return _make


@pytest.fixture
def make_alias(db):
    """Create and commit an alias, optionally backdated."""

    async def _make(
        alias_raw: str,
        item_code: ItemCode,
        source: AliasSource = AliasSource.USER_CONFIRMED,
        confidence: float = 1.0,
        created_at: Optional[datetime] = None,
    ) -> ItemCodeAlias:
        alias = await alias_repository.create_alias(
            alias_raw=alias_raw,
            canonical_code=item_code.code,
            canonical_code_id=item_code.id,
            source=source,
            confidence=confidence,
            db=db,
        )
        if created_at is not None:
            alias.created_at = created_at
        await db.commit()
        return alias

    return _make


@pytest.fixture
def gbp():
    """Raw extracted item dict with a GBP currency value."""

    def _item(name: str, value: str = "1000", category: Optional[str] = "Site Costs") -> Dict[str, Any]:
        return {"name": name, "value": value, "currency": "GBP", "category": category}

    return _item


EXPECTED_SCRIPTED_COST = Decimal("0.006")
