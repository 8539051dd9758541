"""
Celery task definitions for the billing engine.

Each task invocation builds its own container and event loop; nothing is
shared between runs except the database.
"""

import asyncio
from typing import Any

import structlog

from vendzz.billing.celery_app import celery_app
from vendzz.billing.dependencies import BillingContainer
from vendzz.billing.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


async def run_sweep_once(
    settings: Settings | None = None, limit: int | None = None
) -> dict[str, Any]:
    """Build a container, run one sweep and close it again."""
    container = BillingContainer.build(settings or get_settings())
    try:
        result = await container.sweep.run(limit=limit)
    finally:
        await container.aclose()
    return result.to_response()


@celery_app.task(name="billing.run_sweep")
def run_billing_sweep_task(limit: int | None = None) -> dict[str, Any]:
    """Periodic task charging every due subscription."""
    response = asyncio.run(run_sweep_once(limit=limit))
    logger.info("billing.sweep.task_completed", **response)
    return response


__all__ = ["run_billing_sweep_task", "run_sweep_once"]
