"""
Celery application configuration for background tasks
"""
from celery import Celery
from celery.signals import worker_process_init
import structlog

from packages.common.config import get_settings
from packages.common.events import EVENT_QUEUE
from packages.common.logging_config import configure_logging

logger = structlog.get_logger()
settings = get_settings()

# Create Celery app
app = Celery(
    "item_codification_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=120,  # 2 minutes hard limit
    task_soft_time_limit=90,

    # Events are fire-and-forget; nobody reads their results
    task_ignore_result=True,
    result_expires=3600,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=200,

    # Task routing
    task_routes={
        "services.worker.tasks.codification_events.*": {"queue": EVENT_QUEUE},
    },
)

# Import tasks explicitly to register them
from services.worker.tasks import codification_events  # noqa: E402,F401


@worker_process_init.connect
def init_worker(**kwargs):
    """Initialize worker process"""
    configure_logging(settings.log_level)
    logger.info("celery_worker_starting",
                concurrency=kwargs.get("concurrency", "unknown"))


if __name__ == "__main__":
    app.start()
