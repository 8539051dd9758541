"""
Celery application configuration.

Runs the billing sweep on a beat schedule. The sweep is safe to run from
several workers at once; the per-subscription claim is the only exclusion.
"""

from typing import Any

import structlog
from celery import Celery
from kombu import Queue

from vendzz.billing.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "vendzz_billing",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["vendzz.billing.tasks"],
)

celery_app.conf.update(
    task_routes={
        "billing.*": {"queue": "billing"},
    },
    task_default_queue="billing",
    task_queues=(Queue("billing", routing_key="billing"),),
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=900,  # 15 minutes
    task_soft_time_limit=840,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the periodic billing sweep."""
    logger = structlog.get_logger(__name__)

    if not settings.sweep.enabled:
        logger.info("celery.beat.sweep_disabled")
        return

    from vendzz.billing.tasks import run_billing_sweep_task

    sender.add_periodic_task(
        float(settings.sweep.interval_seconds),
        run_billing_sweep_task.s(),
        name="billing-sweep",
    )
    logger.info("celery.beat.sweep_scheduled", interval_seconds=settings.sweep.interval_seconds)
