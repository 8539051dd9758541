"""
Billing reconciliation queue.

Charges whose local record may have diverged from the gateway (a ledger
write that failed after a successful charge, an ambiguous timeout, an
unconfirmed setup fee) end up here for an operator to settle by hand.
"""

from collections.abc import Callable
from datetime import datetime

import structlog

from vendzz.billing.exceptions import ReconciliationItemNotFoundError, ReconciliationRequiredError
from vendzz.billing.ledger import Ledger
from vendzz.billing.logging import log_audit_event
from vendzz.billing.metrics import BillingMetrics, get_billing_metrics
from vendzz.billing.models import (
    ReconciliationItem,
    ReconciliationReason,
    ReconciliationStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)


class ReconciliationQueue:
    """
    Service for the operator reconciliation queue.

    Handles:
    - Recording divergent charges reported by the engine
    - Listing open items per tenant
    - Resolving items with an audit trail
    """

    def __init__(
        self,
        ledger: Ledger,
        clock: Callable[[], datetime] = utcnow,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.ledger = ledger
        self.clock = clock
        self.metrics = metrics or get_billing_metrics()

    async def report(self, error: ReconciliationRequiredError) -> ReconciliationItem | None:
        """
        Persist a reconciliation item for ``error``.

        If the ledger itself is unavailable the item is logged at critical
        level with its full context, so it can still be recovered from logs.
        """
        now = self.clock()
        item = ReconciliationItem(
            tenant_id=error.tenant_id,
            reason=ReconciliationReason(error.reason),
            message=error.message,
            gateway_id=error.gateway_id,
            gateway_transaction_ref=error.gateway_transaction_ref,
            subscription_id=error.subscription_id,
            transaction_id=error.transaction_id,
            amount_minor_units=error.amount_minor_units,
            currency=error.currency,
            details=error.details,
            created_at=now,
            updated_at=now,
        )

        self.metrics.record_reconciliation(item.reason.value)
        log_audit_event(
            "billing.reconciliation.required",
            tenant_id=item.tenant_id,
            resource_type="reconciliation_item",
            resource_id=item.id,
            reason=item.reason.value,
            message=item.message,
            gateway_id=item.gateway_id,
            gateway_transaction_ref=item.gateway_transaction_ref,
            subscription_id=item.subscription_id,
            transaction_id=item.transaction_id,
            amount_minor_units=item.amount_minor_units,
            currency=item.currency,
        )

        try:
            return await self.ledger.add_reconciliation_item(item)
        except Exception:
            logger.critical(
                "billing.reconciliation.persist_failed",
                item=item.model_dump(mode="json"),
                exc_info=True,
            )
            return None

    async def list_open(self, tenant_id: str | None = None) -> list[ReconciliationItem]:
        return await self.ledger.list_reconciliation_items(
            tenant_id=tenant_id, status=ReconciliationStatus.OPEN
        )

    async def resolve(self, item_id: str, resolution: str, resolved_by: str) -> ReconciliationItem:
        """Mark an item resolved. Resolving an already resolved item returns it unchanged."""
        existing = await self.ledger.get_reconciliation_item(item_id)
        if existing is None:
            raise ReconciliationItemNotFoundError(
                f"Reconciliation item {item_id} not found", item_id=item_id
            )
        if existing.status == ReconciliationStatus.RESOLVED:
            return existing

        item = await self.ledger.resolve_reconciliation_item(
            item_id, resolution, resolved_by, self.clock()
        )
        if item is None:
            raise ReconciliationItemNotFoundError(
                f"Reconciliation item {item_id} not found", item_id=item_id
            )

        log_audit_event(
            "billing.reconciliation.resolved",
            tenant_id=item.tenant_id,
            resource_type="reconciliation_item",
            resource_id=item.id,
            actor=resolved_by,
            resolution=resolution,
        )
        logger.info("billing.reconciliation.resolved", item_id=item_id, resolved_by=resolved_by)
        return item
