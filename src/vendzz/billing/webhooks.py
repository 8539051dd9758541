"""
Webhook reconciler.

Applies gateway notifications to the ledger. Deliveries may arrive late,
out of order or more than once; gateway-assigned references are the
idempotency keys, and only pending transactions ever change state.
"""

from enum import Enum

import structlog
from pydantic import BaseModel

from vendzz.billing.exceptions import ReconciliationRequiredError
from vendzz.billing.gateways import GatewayRegistry, WebhookEvent, WebhookEventType
from vendzz.billing.ledger import Ledger
from vendzz.billing.lifecycle import CANCELLED_AT_GATEWAY, SubscriptionLifecycleManager
from vendzz.billing.metrics import BillingMetrics, get_billing_metrics
from vendzz.billing.models import (
    BillingTransaction,
    ReconciliationReason,
    Subscription,
    TransactionStatus,
)
from vendzz.billing.reconciliation import ReconciliationQueue

logger = structlog.get_logger(__name__)

_SETTLED_STATUS = {
    WebhookEventType.PAYMENT_CONFIRMED: TransactionStatus.COMPLETED,
    WebhookEventType.PAYMENT_FAILED: TransactionStatus.FAILED,
}


class WebhookAction(str, Enum):
    SETTLED = "settled"
    RECORDED = "recorded"
    CANCELLED = "cancelled"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"
    ERROR = "error"


class WebhookResult(BaseModel):
    gateway: str
    event_id: str | None = None
    event_type: WebhookEventType
    raw_type: str
    action: WebhookAction
    transaction_id: str | None = None
    subscription_id: str | None = None


class WebhookReconciler:
    """Verifies and applies gateway webhooks."""

    def __init__(
        self,
        ledger: Ledger,
        gateways: GatewayRegistry,
        lifecycle: SubscriptionLifecycleManager,
        reconciliation: ReconciliationQueue | None = None,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.ledger = ledger
        self.gateways = gateways
        self.lifecycle = lifecycle
        self.reconciliation = reconciliation or lifecycle.reconciliation
        self.metrics = metrics or get_billing_metrics()

    async def handle(
        self, gateway_name: str, tenant_id: str, raw_payload: bytes, signature: str | None
    ) -> WebhookResult:
        """
        Verify and apply one webhook delivery.

        Raises ``InvalidSignatureError`` before touching any state. Any
        failure after verification is logged and queued for an operator;
        the delivery is still acknowledged.
        """
        gateway = self.gateways.get(gateway_name)
        secret = self.gateways.secret_for(tenant_id, gateway_name)
        event = gateway.parse_webhook(raw_payload, signature, secret)

        log = logger.bind(
            gateway=gateway_name,
            tenant_id=tenant_id,
            event_id=event.event_id,
            event_type=event.raw_type,
        )
        try:
            result = await self._dispatch(event, tenant_id)
        except Exception as e:
            log.error("billing.webhook.failed", exc_info=True)
            await self.reconciliation.report(
                ReconciliationRequiredError(
                    "Webhook could not be applied",
                    reason=ReconciliationReason.UNMATCHED_WEBHOOK.value,
                    tenant_id=tenant_id,
                    gateway_id=gateway_name,
                    gateway_transaction_ref=event.transaction_ref,
                    transaction_id=event.correlation_id,
                    amount_minor_units=event.amount_minor_units,
                    currency=event.currency,
                    details={
                        "event_id": event.event_id,
                        "event_type": event.raw_type,
                        "error": str(e),
                    },
                )
            )
            result = self._result(event, WebhookAction.ERROR)

        self.metrics.record_webhook(gateway_name, event.type.value, result.action.value)
        log.info("billing.webhook.handled", action=result.action.value)
        return result

    @staticmethod
    def _result(
        event: WebhookEvent,
        action: WebhookAction,
        transaction_id: str | None = None,
        subscription_id: str | None = None,
    ) -> WebhookResult:
        return WebhookResult(
            gateway=event.gateway,
            event_id=event.event_id,
            event_type=event.type,
            raw_type=event.raw_type,
            action=action,
            transaction_id=transaction_id,
            subscription_id=subscription_id,
        )

    async def _dispatch(self, event: WebhookEvent, tenant_id: str) -> WebhookResult:
        if event.type in _SETTLED_STATUS:
            return await self._apply_payment(event, tenant_id)
        if event.type == WebhookEventType.SUBSCRIPTION_CANCELLED:
            return await self._apply_cancellation(event, tenant_id)
        logger.info("billing.webhook.ignored", gateway=event.gateway, event_type=event.raw_type)
        return self._result(event, WebhookAction.IGNORED)

    async def _find_transaction(
        self, event: WebhookEvent, tenant_id: str
    ) -> BillingTransaction | None:
        transaction = None
        if event.transaction_ref:
            transaction = await self.ledger.find_transaction_by_gateway_ref(
                event.gateway, event.transaction_ref
            )
        if transaction is None and event.correlation_id:
            candidate = await self.ledger.get_transaction(event.correlation_id)
            if candidate is not None and candidate.gateway_id == event.gateway:
                transaction = candidate
        if transaction is not None and transaction.tenant_id != tenant_id:
            logger.warning(
                "billing.webhook.tenant_mismatch",
                transaction_id=transaction.id,
                tenant_id=tenant_id,
            )
            return None
        return transaction

    async def _find_delegated_subscription(
        self, event: WebhookEvent, tenant_id: str
    ) -> Subscription | None:
        if not event.subscription_ref:
            return None
        subscription = await self.ledger.find_subscription_by_gateway_ref(
            event.gateway, event.subscription_ref
        )
        if subscription is None or subscription.tenant_id != tenant_id:
            return None
        return subscription

    async def _apply_payment(self, event: WebhookEvent, tenant_id: str) -> WebhookResult:
        status = _SETTLED_STATUS[event.type]
        transaction = await self._find_transaction(event, tenant_id)

        if transaction is None:
            subscription = await self._find_delegated_subscription(event, tenant_id)
            if subscription is not None and event.transaction_ref:
                recorded = await self.lifecycle.record_delegated_charge(
                    subscription,
                    status,
                    event.transaction_ref,
                    amount_minor_units=event.amount_minor_units,
                    currency=event.currency,
                    error_message=event.error_message,
                )
                action = WebhookAction.RECORDED if recorded else WebhookAction.DUPLICATE
                return self._result(event, action, subscription_id=subscription.id)

            await self.reconciliation.report(
                ReconciliationRequiredError(
                    "Webhook refers to a charge the ledger does not know",
                    reason=ReconciliationReason.UNMATCHED_WEBHOOK.value,
                    tenant_id=tenant_id,
                    gateway_id=event.gateway,
                    gateway_transaction_ref=event.transaction_ref,
                    transaction_id=event.correlation_id,
                    amount_minor_units=event.amount_minor_units,
                    currency=event.currency,
                    details={"event_id": event.event_id, "event_type": event.raw_type},
                )
            )
            return self._result(event, WebhookAction.UNMATCHED)

        if transaction.status != TransactionStatus.PENDING:
            return await self._already_settled(event, transaction, status)

        settled = await self.lifecycle.settle_transaction(
            transaction,
            status,
            gateway_transaction_ref=event.transaction_ref,
            error_message=event.error_message,
        )
        if not settled:
            # A concurrent delivery or the sweep got there first.
            current = await self.ledger.get_transaction(transaction.id)
            if current is not None and current.status != status:
                return await self._already_settled(event, current, status)
            return self._result(
                event, WebhookAction.DUPLICATE, transaction.id, transaction.subscription_id
            )
        return self._result(
            event, WebhookAction.SETTLED, transaction.id, transaction.subscription_id
        )

    async def _already_settled(
        self,
        event: WebhookEvent,
        transaction: BillingTransaction,
        status: TransactionStatus,
    ) -> WebhookResult:
        if transaction.status == status:
            return self._result(
                event, WebhookAction.DUPLICATE, transaction.id, transaction.subscription_id
            )

        # e.g. the gateway confirms a charge recorded as failed after a timeout.
        logger.warning(
            "billing.webhook.status_conflict",
            transaction_id=transaction.id,
            recorded=transaction.status.value,
            reported=status.value,
        )
        await self.reconciliation.report(
            ReconciliationRequiredError(
                f"Gateway reports {status.value} for a transaction recorded as "
                f"{transaction.status.value}",
                reason=ReconciliationReason.CHARGE_OUTCOME_UNKNOWN.value,
                tenant_id=transaction.tenant_id,
                gateway_id=transaction.gateway_id,
                gateway_transaction_ref=event.transaction_ref
                or transaction.gateway_transaction_ref,
                subscription_id=transaction.subscription_id,
                transaction_id=transaction.id,
                amount_minor_units=transaction.amount_minor_units,
                currency=transaction.currency,
                details={"event_id": event.event_id, "event_type": event.raw_type},
            )
        )
        return self._result(
            event, WebhookAction.CONFLICT, transaction.id, transaction.subscription_id
        )

    async def _apply_cancellation(self, event: WebhookEvent, tenant_id: str) -> WebhookResult:
        subscription = await self._find_delegated_subscription(event, tenant_id)
        if subscription is None:
            logger.info(
                "billing.webhook.unknown_subscription",
                gateway=event.gateway,
                subscription_ref=event.subscription_ref,
            )
            return self._result(event, WebhookAction.UNMATCHED)
        if subscription.is_cancelled:
            return self._result(event, WebhookAction.DUPLICATE, subscription_id=subscription.id)

        await self.lifecycle.cancel(
            subscription.id, reason=CANCELLED_AT_GATEWAY, cancel_remote=False
        )
        return self._result(event, WebhookAction.CANCELLED, subscription_id=subscription.id)
