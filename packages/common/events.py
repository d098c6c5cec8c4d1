"""
Codification events - explicit post-commit side effects

Writes (confirmations, new codes, pass results) emit named events after the
database transaction commits. Events are sent by task name to the worker's
codification_events queue; the API never imports worker code.

Event types:
- extraction.updated          stats changed after a fast/smart pass or confirmation
- extraction.fully_confirmed  every item in the extraction is confirmed
- alias.created               new ground truth written by the confirmation learner
- item_code.created           taxonomy grew (new code declared by a user)
"""
import asyncio
from typing import Any, Dict, Protocol

import structlog
from celery import Celery

logger = structlog.get_logger()

EVENT_TASK_NAME = "services.worker.tasks.codification_events.record_codification_event"
EVENT_QUEUE = "codification_events"

EXTRACTION_UPDATED = "extraction.updated"
EXTRACTION_FULLY_CONFIRMED = "extraction.fully_confirmed"
ALIAS_CREATED = "alias.created"
ITEM_CODE_CREATED = "item_code.created"


class EventPublisher(Protocol):
    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class CeleryEventPublisher:
    """Publishes codification events to the worker queue via send_task"""

    def __init__(self, broker_url: str, result_backend: str, enabled: bool = True):
        self.enabled = enabled
        self.celery_app = Celery("item_codification")
        self.celery_app.conf.broker_url = broker_url
        self.celery_app.conf.result_backend = result_backend

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            logger.debug("codification_event_skipped", event_type=event_type)
            return

        try:
            task = await asyncio.to_thread(
                self.celery_app.send_task,
                EVENT_TASK_NAME,
                args=[event_type, payload],
                queue=EVENT_QUEUE,
                retry_policy={"max_retries": 2, "interval_start": 0, "interval_step": 0.2},
            )
        except Exception as e:
            # The write already committed; a lost event only loses the audit row
            logger.error("codification_event_publish_failed",
                        event_type=event_type,
                        error=str(e))
            return

        logger.debug("codification_event_published",
                    event_type=event_type,
                    task_id=task.id)
