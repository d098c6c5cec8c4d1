"""
Codification event consumer - writes the codification_activity audit trail

Events are published by the API after its transaction commits (see
packages.common.events). Each one becomes a single activity row.
"""
import asyncio
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import NullPool

from packages.common.config import get_settings
from packages.common.database import DatabaseSessionManager
from packages.common.events import EVENT_TASK_NAME
from packages.domain.codification.models import CodificationActivity
from services.worker.celery_app import app

logger = structlog.get_logger()


def _extraction_id(payload: Dict[str, Any]) -> Optional[UUID]:
    raw = payload.get("extraction_id")
    if not raw:
        return None
    try:
        return UUID(str(raw))
    except ValueError:
        logger.warning("codification_event_bad_extraction_id", extraction_id=raw)
        return None


async def record_activity(
    event_type: str,
    payload: Dict[str, Any],
    db: AsyncSession,
) -> CodificationActivity:
    """Append one audit row (caller commits)"""
    activity = CodificationActivity(
        event_type=event_type,
        extraction_id=_extraction_id(payload),
        payload=payload,
    )
    db.add(activity)
    await db.flush()
    return activity


async def _persist(event_type: str, payload: Dict[str, Any], database_url: str) -> int:
    # One event loop per task run, so no pooled connections may outlive it
    manager = DatabaseSessionManager()
    await manager.init(database_url, poolclass=NullPool)
    try:
        async with manager.session() as session:
            activity = await record_activity(event_type, payload, session)
            return activity.id
    finally:
        await manager.close()


@app.task(name=EVENT_TASK_NAME, bind=True, max_retries=3, default_retry_delay=5)
def record_codification_event(self, event_type: str, payload: Dict[str, Any]) -> int:
    """
    Persist a codification event.

    Args:
        event_type: e.g. alias.created, extraction.fully_confirmed
        payload: JSON event body

    Returns:
        Activity row id
    """
    logger.info("codification_event_received",
                event_type=event_type,
                task_id=self.request.id)

    try:
        activity_id = asyncio.run(_persist(event_type, payload, get_settings().database_url))
    except SQLAlchemyError as e:
        logger.error("codification_event_persist_failed",
                    event_type=event_type,
                    error=str(e),
                    retries=self.request.retries)
        raise self.retry(exc=e)

    logger.info("codification_event_recorded",
                event_type=event_type,
                activity_id=activity_id)
    return activity_id
