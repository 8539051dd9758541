"""
Subscription ledger interface.

The ledger is the only component that mutates subscriptions, transactions
and reconciliation items. Every multi-record change is a single atomic unit,
and the sweep claim is the engine's sole exclusion primitive.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

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
)

BILLABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


@dataclass(frozen=True)
class CycleSettlement:
    """
    The outcome of one billing cycle, computed by the lifecycle manager.

    The ledger applies it atomically: the transaction moves out of
    ``pending`` and the subscription's schedule is updated, provided the
    subscription is still on the cycle the transaction pays for.
    """

    transaction_status: TransactionStatus
    subscription_status: SubscriptionStatus
    next_billing_date: datetime
    last_billing_date: datetime | None
    failed_attempts: int
    retry_after: datetime | None
    settled_at: datetime
    error_message: str | None = None
    gateway_transaction_ref: str | None = None


class Ledger(ABC):
    """Persistence contract for the billing engine."""

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    @abstractmethod
    async def add_product(self, product: Product) -> Product: ...

    @abstractmethod
    async def get_product(self, product_id: str) -> Product | None: ...

    @abstractmethod
    async def update_product(
        self, product_id: str, changes: dict[str, Any], now: datetime
    ) -> Product | None: ...

    @abstractmethod
    async def list_products(self, tenant_id: str, active_only: bool = False) -> list[Product]: ...

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Customer | None: ...

    @abstractmethod
    async def find_customer(self, tenant_id: str, email: str, gateway_id: str) -> Customer | None:
        """Look up a customer by ``(tenant_id, email, gateway_id)``."""

    @abstractmethod
    async def add_customer(self, customer: Customer) -> Customer: ...

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_subscription(
        self,
        subscription: Subscription,
        customer: Customer | None = None,
        setup_fee_transaction: BillingTransaction | None = None,
    ) -> Subscription:
        """
        Persist a new subscription, its customer and its setup-fee charge as one unit.

        ``customer`` is upserted by id.
        """

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Subscription | None: ...

    @abstractmethod
    async def find_subscription_by_gateway_ref(
        self, gateway_id: str, gateway_subscription_ref: str
    ) -> Subscription | None: ...

    @abstractmethod
    async def list_subscriptions(
        self, tenant_id: str, status: SubscriptionStatus | None = None
    ) -> list[Subscription]: ...

    @abstractmethod
    async def find_due_subscriptions(
        self, now: datetime, limit: int, stale_before: datetime | None = None
    ) -> list[Subscription]:
        """
        Subscriptions due for a charge at ``now``, oldest first.

        Active and trialing subscriptions are due once ``next_billing_date``
        has passed; past-due ones additionally wait for ``retry_after``.
        Cancelled and gateway-delegated subscriptions are never returned.
        With ``stale_before``, subscriptions holding a claim newer than that
        instant are left out.
        """

    @abstractmethod
    async def claim_subscription(
        self,
        subscription_id: str,
        expected_next_billing_date: datetime,
        claim_token: str,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        """
        Atomically claim a subscription for its current cycle.

        Succeeds only if the subscription is still due on
        ``expected_next_billing_date``, is still billable, and is either
        unclaimed or holds a claim older than ``stale_before`` with no
        pending recurring transaction behind it.
        """

    @abstractmethod
    async def release_claim(self, subscription_id: str, claim_token: str) -> bool: ...

    @abstractmethod
    async def cancel_subscription(
        self, subscription_id: str, reason: str | None, now: datetime
    ) -> tuple[Subscription, bool] | None:
        """
        Cancel unless already cancelled.

        Returns the stored subscription and whether this call changed it, or
        ``None`` if it does not exist.
        """

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @abstractmethod
    async def add_transaction(self, transaction: BillingTransaction) -> BillingTransaction: ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> BillingTransaction | None: ...

    @abstractmethod
    async def find_transaction_by_gateway_ref(
        self, gateway_id: str, gateway_transaction_ref: str
    ) -> BillingTransaction | None: ...

    @abstractmethod
    async def set_transaction_ref(
        self, transaction_id: str, gateway_transaction_ref: str, now: datetime
    ) -> None: ...

    @abstractmethod
    async def transition_transaction(
        self,
        transaction_id: str,
        status: TransactionStatus,
        now: datetime,
        error_message: str | None = None,
    ) -> bool:
        """Move a pending transaction to ``status``; ``False`` if it was not pending."""

    @abstractmethod
    async def settle_cycle(
        self,
        transaction_id: str,
        settlement: CycleSettlement,
        claim_token: str | None = None,
    ) -> bool:
        """
        Apply a cycle outcome atomically.

        No-op returning ``False`` unless the transaction is still pending and,
        when ``claim_token`` is given, the subscription still holds that
        claim. A cancelled subscription stays cancelled. The claim is
        released.
        """

    @abstractmethod
    async def record_delegated_charge(
        self, transaction: BillingTransaction, settlement: CycleSettlement
    ) -> bool:
        """
        Record a charge made by the gateway's own recurring engine.

        Keyed by ``(gateway_id, gateway_transaction_ref)``: a replay returns
        ``False`` and changes nothing.
        """

    @abstractmethod
    async def list_transactions(
        self, tenant_id: str | None = None, subscription_id: str | None = None
    ) -> list[BillingTransaction]: ...

    # ------------------------------------------------------------------
    # Reconciliation queue
    # ------------------------------------------------------------------

    @abstractmethod
    async def add_reconciliation_item(self, item: ReconciliationItem) -> ReconciliationItem: ...

    @abstractmethod
    async def get_reconciliation_item(self, item_id: str) -> ReconciliationItem | None: ...

    @abstractmethod
    async def list_reconciliation_items(
        self,
        tenant_id: str | None = None,
        status: ReconciliationStatus | None = None,
    ) -> list[ReconciliationItem]: ...

    @abstractmethod
    async def resolve_reconciliation_item(
        self, item_id: str, resolution: str, resolved_by: str, now: datetime
    ) -> ReconciliationItem | None: ...

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @abstractmethod
    async def summarize(self, tenant_id: str | None = None) -> BillingSummary: ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:  # noqa: B027
        """Release storage resources."""


def is_due(subscription: Subscription, now: datetime) -> bool:
    """Whether a subscription would be picked up by a sweep at ``now``."""
    if subscription.is_delegated or subscription.next_billing_date > now:
        return False
    if subscription.status in BILLABLE_STATUSES:
        return True
    if subscription.status == SubscriptionStatus.PAST_DUE:
        return subscription.retry_after is None or subscription.retry_after <= now
    return False
