"""Tests for applying gateway webhooks."""

import json
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from vendzz.billing.dependencies import BillingContainer
from vendzz.billing.exceptions import BillingConfigurationError, InvalidSignatureError
from vendzz.billing.gateways import NullAdapter
from vendzz.billing.lifecycle import CANCELLED_AT_GATEWAY
from vendzz.billing.models import (
    ReconciliationReason,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
)
from vendzz.billing.webhooks import WebhookAction

from tests.conftest import TENANT_ID, WEBHOOK_SECRET, create_product, make_settings

pytestmark = pytest.mark.unit

FEB_15 = datetime(2025, 2, 15, tzinfo=UTC)
MAR_15 = datetime(2025, 3, 15, tzinfo=UTC)


def signed(event_type: str, **data) -> tuple[bytes, str]:
    raw = json.dumps({"id": f"evt_{uuid4().hex[:8]}", "type": event_type, "data": data}).encode()
    return raw, NullAdapter.sign(raw, WEBHOOK_SECRET)


async def deliver(container, event_type: str, tenant_id: str = TENANT_ID, **data):
    raw, signature = signed(event_type, **data)
    return await container.webhooks.handle("null", tenant_id, raw, signature)


async def subscribe(container, customer, **product_overrides):
    product = await create_product(container, **product_overrides)
    return await container.lifecycle.create_subscription(
        product.id, customer, "tok_visa", TENANT_ID
    )


async def pending_cycle(container, gateway, clock, customer, outcome="pending"):
    """Subscribe, then sweep with a charge that does not settle synchronously."""
    subscription = await subscribe(container, customer)
    gateway.queue_charge(outcome)
    clock.set(FEB_15)
    await container.sweep.run()
    [transaction] = [
        t
        for t in await container.ledger.list_transactions(subscription_id=subscription.id)
        if t.type == TransactionType.RECURRING
    ]
    clock.advance(hours=1)
    return subscription, transaction


class TestAsyncSettlement:
    @pytest.mark.asyncio
    async def test_confirmation_completes_the_cycle(
        self, container, ledger, gateway, clock, customer
    ):
        subscription, transaction = await pending_cycle(container, gateway, clock, customer)

        result = await deliver(
            container,
            "payment.confirmed",
            transaction_ref=transaction.gateway_transaction_ref,
            amount=2990,
        )

        assert result.action == WebhookAction.SETTLED
        assert result.transaction_id == transaction.id
        stored = await ledger.get_subscription(subscription.id)
        assert stored.next_billing_date == MAR_15
        assert stored.last_billing_date == FEB_15 + timedelta(hours=1)
        assert stored.claim_token is None
        assert (await ledger.get_transaction(transaction.id)).status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_a_no_op(
        self, container, ledger, gateway, clock, customer
    ):
        subscription, transaction = await pending_cycle(container, gateway, clock, customer)
        ref = transaction.gateway_transaction_ref

        await deliver(container, "payment.confirmed", transaction_ref=ref)
        clock.advance(days=1)
        again = await deliver(container, "payment.confirmed", transaction_ref=ref)

        assert again.action == WebhookAction.DUPLICATE
        stored = await ledger.get_subscription(subscription.id)
        assert stored.next_billing_date == MAR_15
        assert await ledger.list_reconciliation_items() == []

    @pytest.mark.asyncio
    async def test_failure_puts_subscription_past_due(
        self, container, ledger, gateway, clock, customer
    ):
        subscription, transaction = await pending_cycle(container, gateway, clock, customer)

        result = await deliver(
            container,
            "payment.failed",
            transaction_ref=transaction.gateway_transaction_ref,
            error="insufficient_funds",
        )

        assert result.action == WebhookAction.SETTLED
        stored = await ledger.get_subscription(subscription.id)
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.next_billing_date == FEB_15
        assert stored.retry_after == clock.now + timedelta(hours=24)
        settled = await ledger.get_transaction(transaction.id)
        assert settled.error_message == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_ambiguous_charge_matched_by_correlation_id(
        self, container, ledger, gateway, clock, customer
    ):
        subscription, transaction = await pending_cycle(
            container, gateway, clock, customer, outcome="timeout"
        )
        assert transaction.gateway_transaction_ref is None

        result = await deliver(
            container,
            "payment.confirmed",
            transaction_ref="nullch_late",
            correlation_id=transaction.id,
        )

        assert result.action == WebhookAction.SETTLED
        settled = await ledger.get_transaction(transaction.id)
        assert settled.status == TransactionStatus.COMPLETED
        assert settled.gateway_transaction_ref == "nullch_late"

    @pytest.mark.asyncio
    async def test_contradicting_outcome_goes_to_reconciliation(
        self, container, ledger, gateway, clock, customer
    ):
        subscription, transaction = await pending_cycle(
            container, gateway, clock, customer, outcome="failed"
        )

        result = await deliver(
            container, "payment.confirmed", transaction_ref=transaction.gateway_transaction_ref
        )

        assert result.action == WebhookAction.CONFLICT
        assert (await ledger.get_transaction(transaction.id)).status == TransactionStatus.FAILED
        [item] = await ledger.list_reconciliation_items()
        assert item.reason == ReconciliationReason.CHARGE_OUTCOME_UNKNOWN
        assert item.transaction_id == transaction.id

    @pytest.mark.asyncio
    async def test_cancelled_while_pending_stays_cancelled(
        self, container, ledger, gateway, clock, customer
    ):
        subscription, transaction = await pending_cycle(container, gateway, clock, customer)
        await container.lifecycle.cancel(subscription.id)

        await deliver(
            container, "payment.confirmed", transaction_ref=transaction.gateway_transaction_ref
        )

        stored = await ledger.get_subscription(subscription.id)
        assert stored.status == SubscriptionStatus.CANCELLED
        assert (await ledger.get_transaction(transaction.id)).status == TransactionStatus.COMPLETED


class TestDelegatedSubscriptions:
    @pytest.fixture
    def delegating(self, ledger, registry, clock) -> BillingContainer:
        settings = make_settings(
            billing={"delegate_recurring_to_gateway": True, "retry_backoff_hours": [24, 72]}
        )
        return BillingContainer.build(settings, ledger=ledger, gateways=registry, clock=clock)

    @pytest.mark.asyncio
    async def test_gateway_charge_is_recorded_once(self, delegating, ledger, clock, customer):
        subscription = await subscribe(
            delegating, customer, gateway_plan_refs={"null": "plan_pro"}
        )
        clock.set(FEB_15)

        first = await deliver(
            delegating,
            "payment.confirmed",
            transaction_ref="nullch_remote_1",
            subscription_ref=subscription.gateway_subscription_ref,
            amount=2990,
            currency="BRL",
        )
        replay = await deliver(
            delegating,
            "payment.confirmed",
            transaction_ref="nullch_remote_1",
            subscription_ref=subscription.gateway_subscription_ref,
        )

        assert first.action == WebhookAction.RECORDED
        assert replay.action == WebhookAction.DUPLICATE
        [transaction] = await ledger.list_transactions(subscription_id=subscription.id)
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.billing_date == FEB_15
        stored = await ledger.get_subscription(subscription.id)
        assert stored.next_billing_date == MAR_15

    @pytest.mark.asyncio
    async def test_gateway_failure_marks_past_due(self, delegating, ledger, clock, customer):
        subscription = await subscribe(
            delegating, customer, gateway_plan_refs={"null": "plan_pro"}
        )

        await deliver(
            delegating,
            "payment.failed",
            transaction_ref="nullch_remote_2",
            subscription_ref=subscription.gateway_subscription_ref,
        )

        stored = await ledger.get_subscription(subscription.id)
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.retry_after is None

    @pytest.mark.asyncio
    async def test_cancellation_at_gateway(self, delegating, ledger, gateway, customer):
        subscription = await subscribe(
            delegating, customer, gateway_plan_refs={"null": "plan_pro"}
        )

        result = await deliver(
            delegating,
            "subscription.cancelled",
            subscription_ref=subscription.gateway_subscription_ref,
        )
        again = await deliver(
            delegating,
            "subscription.cancelled",
            subscription_ref=subscription.gateway_subscription_ref,
        )

        assert result.action == WebhookAction.CANCELLED
        assert again.action == WebhookAction.DUPLICATE
        stored = await ledger.get_subscription(subscription.id)
        assert stored.status == SubscriptionStatus.CANCELLED
        assert stored.cancellation_reason == CANCELLED_AT_GATEWAY
        assert gateway.cancelled_subscriptions == []


class TestRejectedAndUnmatched:
    @pytest.mark.asyncio
    async def test_invalid_signature_changes_nothing(
        self, container, ledger, gateway, clock, customer
    ):
        subscription, transaction = await pending_cycle(container, gateway, clock, customer)
        raw, _ = signed("payment.confirmed", transaction_ref=transaction.gateway_transaction_ref)

        with pytest.raises(InvalidSignatureError):
            await container.webhooks.handle("null", TENANT_ID, raw, "forged")

        assert (await ledger.get_transaction(transaction.id)).status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_gateway(self, container):
        raw, signature = signed("payment.confirmed")

        with pytest.raises(BillingConfigurationError):
            await container.webhooks.handle("paypal", TENANT_ID, raw, signature)

    @pytest.mark.asyncio
    async def test_unknown_charge_is_queued(self, container, ledger):
        result = await deliver(
            container, "payment.confirmed", transaction_ref="nullch_ghost", amount=990
        )

        assert result.action == WebhookAction.UNMATCHED
        [item] = await ledger.list_reconciliation_items()
        assert item.reason == ReconciliationReason.UNMATCHED_WEBHOOK
        assert item.gateway_transaction_ref == "nullch_ghost"
        assert item.amount_minor_units == 990

    @pytest.mark.asyncio
    async def test_other_tenants_charge_is_not_touched(
        self, container, ledger, gateway, clock, customer
    ):
        subscription, transaction = await pending_cycle(container, gateway, clock, customer)

        result = await deliver(
            container,
            "payment.confirmed",
            tenant_id="tenant-2",
            transaction_ref=transaction.gateway_transaction_ref,
        )

        assert result.action == WebhookAction.UNMATCHED
        assert (await ledger.get_transaction(transaction.id)).status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_ignored(self, container, ledger):
        result = await deliver(container, "customer.updated")

        assert result.action == WebhookAction.IGNORED
        assert await ledger.list_reconciliation_items() == []

    @pytest.mark.asyncio
    async def test_apply_failure_is_acknowledged_and_queued(
        self, container, ledger, gateway, clock, customer, monkeypatch
    ):
        subscription, transaction = await pending_cycle(container, gateway, clock, customer)

        async def broken(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(ledger, "settle_cycle", broken)

        result = await deliver(
            container, "payment.confirmed", transaction_ref=transaction.gateway_transaction_ref
        )

        assert result.action == WebhookAction.ERROR
        [item] = await ledger.list_reconciliation_items()
        assert item.details["error"] == "database unavailable"
