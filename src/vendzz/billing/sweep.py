"""
Billing sweep processor.

Periodically invoked (Celery beat, CLI, HTTP trigger). Each invocation is a
function of ``now`` and ledger state; overlapping invocations are safe
because every subscription is claimed atomically before it is charged.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import uuid4

import structlog

from vendzz.billing.exceptions import ConflictError
from vendzz.billing.ledger import Ledger
from vendzz.billing.lifecycle import CycleResult, SubscriptionLifecycleManager
from vendzz.billing.metrics import BillingMetrics, get_billing_metrics
from vendzz.billing.models import Subscription, SweepResult, utcnow
from vendzz.billing.settings import Settings

logger = structlog.get_logger(__name__)

_RESULT_BUCKETS = {
    CycleResult.COMPLETED: "successful",
    CycleResult.FAILED: "failed",
    CycleResult.PENDING: "pending",
    CycleResult.RECONCILIATION_REQUIRED: "failed",
}


class BillingSweepProcessor:
    """Charges every subscription whose billing date has arrived."""

    def __init__(
        self,
        ledger: Ledger,
        lifecycle: SubscriptionLifecycleManager,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.settings = settings
        self.clock = clock
        self.metrics = metrics or get_billing_metrics()

    async def run(self, now: datetime | None = None, limit: int | None = None) -> SweepResult:
        now = now or self.clock()
        limit = limit or self.settings.sweep.batch_size
        stale_before = now - timedelta(seconds=self.settings.sweep.claim_ttl_seconds)
        started = time.perf_counter()

        due = await self.ledger.find_due_subscriptions(now, limit, stale_before=stale_before)
        logger.info("billing.sweep.started", due=len(due), now=now.isoformat())

        semaphore = asyncio.Semaphore(self.settings.sweep.max_concurrency)

        async def bounded(subscription: Subscription) -> str:
            async with semaphore:
                return await self._process(subscription, now, stale_before)

        buckets = await asyncio.gather(*(bounded(s) for s in due))

        result = SweepResult(
            processed=len(due),
            successful=buckets.count("successful"),
            failed=buckets.count("failed"),
            pending=buckets.count("pending"),
            skipped=buckets.count("skipped"),
            timestamp_utc=now,
        )
        duration = time.perf_counter() - started
        self.metrics.record_sweep(
            duration,
            {
                "successful": result.successful,
                "failed": result.failed,
                "pending": result.pending,
                "skipped": result.skipped,
            },
        )
        logger.info(
            "billing.sweep.finished",
            processed=result.processed,
            successful=result.successful,
            failed=result.failed,
            pending=result.pending,
            skipped=result.skipped,
            duration_seconds=round(duration, 3),
        )
        return result

    async def _claim(
        self, subscription: Subscription, claim_token: str, now: datetime, stale_before: datetime
    ) -> None:
        claimed = await self.ledger.claim_subscription(
            subscription.id,
            subscription.next_billing_date,
            claim_token,
            now,
            stale_before,
        )
        if not claimed:
            raise ConflictError(
                f"Subscription {subscription.id} is claimed by another sweep",
                subscription_id=subscription.id,
            )

    async def _process(
        self, subscription: Subscription, now: datetime, stale_before: datetime
    ) -> str:
        claim_token = uuid4().hex
        try:
            await self._claim(subscription, claim_token, now, stale_before)
        except ConflictError:
            logger.debug("billing.sweep.claim_lost", subscription_id=subscription.id)
            return "skipped"
        except Exception:
            logger.error(
                "billing.sweep.claim_failed", subscription_id=subscription.id, exc_info=True
            )
            return "failed"

        try:
            outcome = await self.lifecycle.charge_cycle(subscription, claim_token, now)
        except Exception:
            logger.error(
                "billing.sweep.subscription_failed",
                subscription_id=subscription.id,
                exc_info=True,
            )
            await self._release(subscription.id, claim_token)
            return "failed"
        return _RESULT_BUCKETS[outcome.result]

    async def _release(self, subscription_id: str, claim_token: str) -> None:
        try:
            await self.ledger.release_claim(subscription_id, claim_token)
        except Exception:
            # Falls back to the stale-claim takeover after claim_ttl_seconds.
            logger.error(
                "billing.sweep.release_failed", subscription_id=subscription_id, exc_info=True
            )
