"""
In-memory ledger.

Records are stored as deep copies and every mutating method runs to
completion without awaiting, so each one is atomic with respect to other
coroutines on the same event loop.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any

from vendzz.billing.ledger.base import CycleSettlement, Ledger, is_due
from vendzz.billing.models import (
    BillingSummary,
    BillingTransaction,
    Customer,
    Product,
    ReconciliationItem,
    ReconciliationStatus,
    Subscription,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
    can_transition,
)


class InMemoryLedger(Ledger):
    """Dictionary-backed ledger for tests and local development."""

    def __init__(self) -> None:
        self.products: dict[str, Product] = {}
        self.customers: dict[str, Customer] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.transactions: dict[str, BillingTransaction] = {}
        self.reconciliation_items: dict[str, ReconciliationItem] = {}
        # Raised on the next create_subscription call, to simulate a failed write.
        self.fail_next_write: Exception | None = None

    @staticmethod
    def _copy(record: Any) -> Any:
        return record.model_copy(deep=True) if record is not None else None

    # Products

    async def add_product(self, product: Product) -> Product:
        self.products[product.id] = self._copy(product)
        return self._copy(product)

    async def get_product(self, product_id: str) -> Product | None:
        return self._copy(self.products.get(product_id))

    async def update_product(
        self, product_id: str, changes: dict[str, Any], now: datetime
    ) -> Product | None:
        product = self.products.get(product_id)
        if product is None:
            return None
        updated = product.model_copy(update={**changes, "updated_at": now})
        self.products[product_id] = Product.model_validate(updated.model_dump())
        return self._copy(self.products[product_id])

    async def list_products(self, tenant_id: str, active_only: bool = False) -> list[Product]:
        products = [
            p
            for p in self.products.values()
            if p.tenant_id == tenant_id and (p.active or not active_only)
        ]
        return [self._copy(p) for p in sorted(products, key=lambda p: p.created_at)]

    # Customers

    async def get_customer(self, customer_id: str) -> Customer | None:
        return self._copy(self.customers.get(customer_id))

    async def find_customer(self, tenant_id: str, email: str, gateway_id: str) -> Customer | None:
        email = email.strip().lower()
        for customer in self.customers.values():
            if (
                customer.tenant_id == tenant_id
                and customer.email == email
                and customer.gateway_id == gateway_id
            ):
                return self._copy(customer)
        return None

    async def add_customer(self, customer: Customer) -> Customer:
        self.customers[customer.id] = self._copy(customer)
        return self._copy(customer)

    # Subscriptions

    async def create_subscription(
        self,
        subscription: Subscription,
        customer: Customer | None = None,
        setup_fee_transaction: BillingTransaction | None = None,
    ) -> Subscription:
        if self.fail_next_write is not None:
            error, self.fail_next_write = self.fail_next_write, None
            raise error
        if customer is not None:
            self.customers[customer.id] = self._copy(customer)
        self.subscriptions[subscription.id] = self._copy(subscription)
        if setup_fee_transaction is not None:
            self.transactions[setup_fee_transaction.id] = self._copy(setup_fee_transaction)
        return self._copy(subscription)

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        return self._copy(self.subscriptions.get(subscription_id))

    async def find_subscription_by_gateway_ref(
        self, gateway_id: str, gateway_subscription_ref: str
    ) -> Subscription | None:
        for subscription in self.subscriptions.values():
            if (
                subscription.gateway_id == gateway_id
                and subscription.gateway_subscription_ref == gateway_subscription_ref
            ):
                return self._copy(subscription)
        return None

    async def list_subscriptions(
        self, tenant_id: str, status: SubscriptionStatus | None = None
    ) -> list[Subscription]:
        subscriptions = [
            s
            for s in self.subscriptions.values()
            if s.tenant_id == tenant_id and (status is None or s.status == status)
        ]
        return [self._copy(s) for s in sorted(subscriptions, key=lambda s: s.created_at)]

    async def find_due_subscriptions(
        self, now: datetime, limit: int, stale_before: datetime | None = None
    ) -> list[Subscription]:
        due = []
        for subscription in self.subscriptions.values():
            if not is_due(subscription, now):
                continue
            if (
                stale_before is not None
                and subscription.claim_token is not None
                and subscription.claimed_at is not None
                and subscription.claimed_at > stale_before
            ):
                continue
            due.append(subscription)
        due.sort(key=lambda s: (s.next_billing_date, s.id))
        return [self._copy(s) for s in due[:limit]]

    def _has_pending_recurring(self, subscription_id: str) -> bool:
        return any(
            t.subscription_id == subscription_id
            and t.type == TransactionType.RECURRING
            and t.status == TransactionStatus.PENDING
            for t in self.transactions.values()
        )

    async def claim_subscription(
        self,
        subscription_id: str,
        expected_next_billing_date: datetime,
        claim_token: str,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None or not is_due(subscription, now):
            return False
        if subscription.next_billing_date != expected_next_billing_date:
            return False
        if subscription.claim_token is not None:
            stale = subscription.claimed_at is None or subscription.claimed_at <= stale_before
            if not stale or self._has_pending_recurring(subscription_id):
                return False
        subscription.claim_token = claim_token
        subscription.claimed_at = now
        return True

    async def release_claim(self, subscription_id: str, claim_token: str) -> bool:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None or subscription.claim_token != claim_token:
            return False
        subscription.claim_token = None
        subscription.claimed_at = None
        return True

    async def cancel_subscription(
        self, subscription_id: str, reason: str | None, now: datetime
    ) -> tuple[Subscription, bool] | None:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            return None
        if subscription.is_cancelled:
            return self._copy(subscription), False
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancelled_at = now
        subscription.cancellation_reason = reason
        subscription.updated_at = now
        return self._copy(subscription), True

    # Transactions

    async def add_transaction(self, transaction: BillingTransaction) -> BillingTransaction:
        self.transactions[transaction.id] = self._copy(transaction)
        return self._copy(transaction)

    async def get_transaction(self, transaction_id: str) -> BillingTransaction | None:
        return self._copy(self.transactions.get(transaction_id))

    async def find_transaction_by_gateway_ref(
        self, gateway_id: str, gateway_transaction_ref: str
    ) -> BillingTransaction | None:
        for transaction in self.transactions.values():
            if (
                transaction.gateway_id == gateway_id
                and transaction.gateway_transaction_ref == gateway_transaction_ref
            ):
                return self._copy(transaction)
        return None

    async def set_transaction_ref(
        self, transaction_id: str, gateway_transaction_ref: str, now: datetime
    ) -> None:
        transaction = self.transactions.get(transaction_id)
        if transaction is not None:
            transaction.gateway_transaction_ref = gateway_transaction_ref
            transaction.updated_at = now

    async def transition_transaction(
        self,
        transaction_id: str,
        status: TransactionStatus,
        now: datetime,
        error_message: str | None = None,
    ) -> bool:
        transaction = self.transactions.get(transaction_id)
        if transaction is None or transaction.status != TransactionStatus.PENDING:
            return False
        transaction.status = status
        transaction.error_message = error_message
        transaction.updated_at = now
        return True

    def _apply_to_subscription(
        self, subscription: Subscription, settlement: CycleSettlement
    ) -> None:
        if can_transition(subscription.status, settlement.subscription_status):
            subscription.status = settlement.subscription_status
        subscription.next_billing_date = settlement.next_billing_date
        if settlement.last_billing_date is not None:
            subscription.last_billing_date = settlement.last_billing_date
        subscription.failed_attempts = settlement.failed_attempts
        subscription.retry_after = settlement.retry_after
        subscription.updated_at = settlement.settled_at

    async def settle_cycle(
        self,
        transaction_id: str,
        settlement: CycleSettlement,
        claim_token: str | None = None,
    ) -> bool:
        transaction = self.transactions.get(transaction_id)
        if transaction is None or transaction.status != TransactionStatus.PENDING:
            return False
        subscription = self.subscriptions.get(transaction.subscription_id)
        if subscription is None:
            return False
        if claim_token is not None and subscription.claim_token != claim_token:
            return False

        transaction.status = settlement.transaction_status
        transaction.error_message = settlement.error_message
        if settlement.gateway_transaction_ref:
            transaction.gateway_transaction_ref = settlement.gateway_transaction_ref
        transaction.updated_at = settlement.settled_at

        on_cycle = subscription.next_billing_date == transaction.billing_date
        if on_cycle:
            self._apply_to_subscription(subscription, settlement)
        if on_cycle or claim_token is not None:
            subscription.claim_token = None
            subscription.claimed_at = None
        return True

    async def record_delegated_charge(
        self, transaction: BillingTransaction, settlement: CycleSettlement
    ) -> bool:
        if transaction.gateway_transaction_ref is not None:
            for existing in self.transactions.values():
                if (
                    existing.gateway_id == transaction.gateway_id
                    and existing.gateway_transaction_ref == transaction.gateway_transaction_ref
                ):
                    return False
        subscription = self.subscriptions.get(transaction.subscription_id)
        if subscription is None:
            return False
        self.transactions[transaction.id] = self._copy(transaction)
        self._apply_to_subscription(subscription, settlement)
        return True

    async def list_transactions(
        self, tenant_id: str | None = None, subscription_id: str | None = None
    ) -> list[BillingTransaction]:
        transactions = [
            t
            for t in self.transactions.values()
            if (tenant_id is None or t.tenant_id == tenant_id)
            and (subscription_id is None or t.subscription_id == subscription_id)
        ]
        return [self._copy(t) for t in sorted(transactions, key=lambda t: t.created_at)]

    # Reconciliation queue

    async def add_reconciliation_item(self, item: ReconciliationItem) -> ReconciliationItem:
        self.reconciliation_items[item.id] = self._copy(item)
        return self._copy(item)

    async def get_reconciliation_item(self, item_id: str) -> ReconciliationItem | None:
        return self._copy(self.reconciliation_items.get(item_id))

    async def list_reconciliation_items(
        self,
        tenant_id: str | None = None,
        status: ReconciliationStatus | None = None,
    ) -> list[ReconciliationItem]:
        items = [
            i
            for i in self.reconciliation_items.values()
            if (tenant_id is None or i.tenant_id == tenant_id)
            and (status is None or i.status == status)
        ]
        return [self._copy(i) for i in sorted(items, key=lambda i: i.created_at)]

    async def resolve_reconciliation_item(
        self, item_id: str, resolution: str, resolved_by: str, now: datetime
    ) -> ReconciliationItem | None:
        item = self.reconciliation_items.get(item_id)
        if item is None:
            return None
        if item.status == ReconciliationStatus.OPEN:
            item.status = ReconciliationStatus.RESOLVED
            item.resolution = resolution
            item.resolved_by = resolved_by
            item.resolved_at = now
            item.updated_at = now
        return self._copy(item)

    # Reporting

    async def summarize(self, tenant_id: str | None = None) -> BillingSummary:
        summary = BillingSummary()
        revenue: dict[str, int] = defaultdict(int)
        for t in self.transactions.values():
            if tenant_id is not None and t.tenant_id != tenant_id:
                continue
            if t.status != TransactionStatus.COMPLETED:
                continue
            if t.type == TransactionType.SETUP_FEE:
                summary.setup_fees_collected += 1
            else:
                summary.recurring_charges_collected += 1
            revenue[t.currency] += t.amount_minor_units

        for s in self.subscriptions.values():
            if tenant_id is not None and s.tenant_id != tenant_id:
                continue
            if s.status == SubscriptionStatus.ACTIVE:
                summary.active_subscriptions += 1
            elif s.status == SubscriptionStatus.TRIALING:
                summary.trialing_subscriptions += 1
            elif s.status == SubscriptionStatus.PAST_DUE:
                summary.past_due_subscriptions += 1
        summary.revenue_minor_units = dict(revenue)
        return summary
