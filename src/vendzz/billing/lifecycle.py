"""
Subscription lifecycle manager.

Owns the purchase flow, cancellation and the settlement of billing cycles.
Gateway side effects always happen before the matching ledger write; when
that write fails after money moved, the divergence is reported to the
reconciliation queue instead of retrying the charge.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

import structlog

from vendzz.billing import calculator
from vendzz.billing.exceptions import (
    BillingConfigurationError,
    GatewayError,
    PaymentMethodRejectedError,
    ProductInactiveError,
    ProductNotFoundError,
    ReconciliationRequiredError,
    SetupFeeDeclinedError,
    SubscriptionNotFoundError,
    ValidationError,
)
from vendzz.billing.gateways import CustomerRef, GatewayAdapter, GatewayRegistry, call_gateway
from vendzz.billing.ledger import CycleSettlement, Ledger
from vendzz.billing.logging import log_audit_event
from vendzz.billing.metrics import BillingMetrics, get_billing_metrics
from vendzz.billing.models import (
    BillingTransaction,
    Customer,
    CustomerDetails,
    Product,
    ReconciliationReason,
    Subscription,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
    new_id,
    utcnow,
)
from vendzz.billing.reconciliation import ReconciliationQueue
from vendzz.billing.settings import Settings

logger = structlog.get_logger(__name__)

CANCELLED_AT_GATEWAY = "cancelled_at_gateway"


class CycleResult(str, Enum):
    """What happened to one subscription's billing cycle."""

    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"
    RECONCILIATION_REQUIRED = "reconciliation_required"


@dataclass(frozen=True)
class CycleOutcome:
    result: CycleResult
    subscription_id: str
    transaction_id: str | None = None
    error_message: str | None = None


class SubscriptionLifecycleManager:
    """Single authoritative path for creating, billing and cancelling subscriptions."""

    def __init__(
        self,
        ledger: Ledger,
        gateways: GatewayRegistry,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        reconciliation: ReconciliationQueue | None = None,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.ledger = ledger
        self.gateways = gateways
        self.settings = settings
        self.clock = clock
        self.reconciliation = reconciliation or ReconciliationQueue(ledger, clock=clock)
        self.metrics = metrics or get_billing_metrics()

    @property
    def _timeout(self) -> float:
        return self.settings.gateways.timeout_seconds

    # ==================== Purchase ====================

    async def _load_purchasable_product(self, product_id: str, tenant_id: str) -> Product:
        product = await self.ledger.get_product(product_id)
        if product is None or product.tenant_id != tenant_id:
            raise ProductNotFoundError(f"Product {product_id} not found", product_id=product_id)
        if not product.active:
            raise ProductInactiveError(f"Product {product_id} is not active", product_id=product_id)
        if not product.is_recurring:
            raise ValidationError(
                f"Product {product_id} is a one-time product and cannot back a subscription",
                context={"product_id": product_id, "recurrence": product.recurrence.value},
            )
        return product

    async def _resolve_customer(
        self,
        gateway: GatewayAdapter,
        tenant_id: str,
        details: CustomerDetails,
        payment_method_token: str,
        now: datetime,
    ) -> tuple[Customer, CustomerRef]:
        existing = await self.ledger.find_customer(tenant_id, details.email, gateway.name)
        try:
            if existing is not None:
                customer_ref = CustomerRef(
                    gateway=gateway.name, customer_id=existing.gateway_customer_ref
                )
            else:
                customer_ref = await call_gateway(
                    gateway,
                    "find_or_create_customer",
                    gateway.find_or_create_customer(tenant_id, details.email, details.name),
                    self._timeout,
                )
            method_ref = await call_gateway(
                gateway,
                "attach_payment_method",
                gateway.attach_payment_method(customer_ref, payment_method_token),
                self._timeout,
            )
        except GatewayError as e:
            logger.info(
                "billing.purchase.payment_method_rejected",
                gateway=gateway.name,
                tenant_id=tenant_id,
                kind=e.kind,
                error=e.message,
            )
            raise PaymentMethodRejectedError(
                "The payment method was rejected by the payment gateway",
                gateway=gateway.name,
                reason=e.kind,
            ) from e

        customer_ref = customer_ref.model_copy(update={"payment_method_id": method_ref})
        if existing is not None:
            customer = existing.model_copy(
                update={"default_payment_method_ref": method_ref, "updated_at": now}
            )
        else:
            customer = Customer(
                tenant_id=tenant_id,
                name=details.name,
                email=details.email,
                gateway_id=gateway.name,
                gateway_customer_ref=customer_ref.customer_id,
                default_payment_method_ref=method_ref,
                locale=details.locale,
                created_at=now,
                updated_at=now,
            )
        return customer, customer_ref

    async def _charge_setup_fee(
        self,
        gateway: GatewayAdapter,
        customer: Customer,
        customer_ref: CustomerRef,
        product: Product,
        subscription_id: str,
        now: datetime,
    ) -> BillingTransaction:
        amount = product.setup_fee_minor_units
        transaction = BillingTransaction(
            tenant_id=customer.tenant_id,
            subscription_id=subscription_id,
            customer_id=customer.id,
            amount_minor_units=amount,
            currency=product.currency,
            type=TransactionType.SETUP_FEE,
            gateway_id=gateway.name,
            description=f"Setup fee: {product.name}",
            created_at=now,
            updated_at=now,
        )

        try:
            ref = await call_gateway(
                gateway,
                "charge_one_time",
                gateway.charge_one_time(
                    customer_ref,
                    amount,
                    product.currency,
                    transaction.description,
                    metadata={
                        "transaction_id": transaction.id,
                        "subscription_id": subscription_id,
                        "tenant_id": customer.tenant_id,
                    },
                    idempotency_key=f"{subscription_id}:setup_fee",
                ),
                self._timeout,
                side_effecting=True,
            )
        except GatewayError as e:
            self.metrics.record_charge(
                "setup_fee", gateway.name, "error", amount, product.currency
            )
            if e.ambiguous:
                await self._report_unconfirmed_setup_fee(transaction, None, e.message)
                raise SetupFeeDeclinedError(
                    "The setup fee could not be confirmed",
                    amount_minor_units=amount,
                    currency=product.currency,
                    reason="unconfirmed",
                ) from e
            raise SetupFeeDeclinedError(
                "The setup fee charge failed",
                amount_minor_units=amount,
                currency=product.currency,
                reason=e.kind,
            ) from e
        except Exception as e:
            # The request may have reached the gateway before the adapter broke.
            logger.error(
                "billing.purchase.setup_fee_crashed",
                gateway=gateway.name,
                subscription_id=subscription_id,
                exc_info=True,
            )
            self.metrics.record_charge(
                "setup_fee", gateway.name, "unknown", amount, product.currency
            )
            await self._report_unconfirmed_setup_fee(transaction, None, str(e))
            raise SetupFeeDeclinedError(
                "The setup fee could not be confirmed",
                amount_minor_units=amount,
                currency=product.currency,
                reason="unconfirmed",
            ) from e

        self.metrics.record_charge(
            "setup_fee", gateway.name, ref.status.value, amount, product.currency
        )
        if ref.status == TransactionStatus.FAILED:
            raise SetupFeeDeclinedError(
                "The setup fee was declined",
                amount_minor_units=amount,
                currency=product.currency,
                reason=ref.error_message,
            )
        if ref.status == TransactionStatus.PENDING:
            await self._report_unconfirmed_setup_fee(
                transaction, ref.reference, "Setup fee still pending at the gateway"
            )
            raise SetupFeeDeclinedError(
                "The setup fee could not be confirmed",
                amount_minor_units=amount,
                currency=product.currency,
                reason="pending",
            )

        transaction.status = TransactionStatus.COMPLETED
        transaction.gateway_transaction_ref = ref.reference
        return transaction

    async def _report_unconfirmed_setup_fee(
        self, transaction: BillingTransaction, reference: str | None, message: str
    ) -> None:
        await self.reconciliation.report(
            ReconciliationRequiredError(
                message,
                reason=ReconciliationReason.SETUP_FEE_UNCONFIRMED.value,
                tenant_id=transaction.tenant_id,
                gateway_id=transaction.gateway_id,
                gateway_transaction_ref=reference,
                subscription_id=transaction.subscription_id,
                transaction_id=transaction.id,
                amount_minor_units=transaction.amount_minor_units,
                currency=transaction.currency,
            )
        )

    async def _delegate_recurring(
        self,
        gateway: GatewayAdapter,
        customer_ref: CustomerRef,
        product: Product,
        tenant_id: str,
        subscription_id: str,
        setup_fee_transaction: BillingTransaction | None,
    ) -> str | None:
        """
        Create the gateway-native recurring object, if the product has one.

        A clean refusal falls back to local sweeping. An outcome that cannot
        be confirmed refuses the purchase: a remote object may already be
        billing the customer, so the sweep must not bill them too.
        """
        if not self.settings.billing.delegate_recurring_to_gateway:
            return None
        plan_ref = product.gateway_plan_refs.get(gateway.name)
        if not plan_ref:
            return None

        failure: Exception
        try:
            remote = await call_gateway(
                gateway,
                "create_recurring_subscription",
                gateway.create_recurring_subscription(customer_ref, plan_ref, product.trial_days),
                self._timeout,
                side_effecting=True,
            )
        except GatewayError as e:
            if not e.ambiguous:
                # The sweep bills the subscription instead.
                logger.warning(
                    "billing.purchase.delegation_failed",
                    gateway=gateway.name,
                    product_id=product.id,
                    error=e.message,
                )
                return None
            failure = e
        except Exception as e:
            logger.error(
                "billing.purchase.delegation_crashed",
                gateway=gateway.name,
                product_id=product.id,
                exc_info=True,
            )
            failure = e
        else:
            return remote.subscription_id

        error = ReconciliationRequiredError(
            "The gateway recurring subscription could not be confirmed",
            reason=ReconciliationReason.REMOTE_SUBSCRIPTION_UNCONFIRMED.value,
            tenant_id=tenant_id,
            gateway_id=gateway.name,
            gateway_transaction_ref=(
                setup_fee_transaction.gateway_transaction_ref if setup_fee_transaction else None
            ),
            subscription_id=subscription_id,
            transaction_id=setup_fee_transaction.id if setup_fee_transaction else None,
            amount_minor_units=(
                setup_fee_transaction.amount_minor_units if setup_fee_transaction else None
            ),
            currency=product.currency,
            details={
                "plan_ref": plan_ref,
                "gateway_customer_ref": customer_ref.customer_id,
                "error": failure.message if isinstance(failure, GatewayError) else str(failure),
            },
        )
        await self.reconciliation.report(error)
        raise error from failure

    async def create_subscription(
        self,
        product_id: str,
        customer: CustomerDetails,
        payment_method_token: str,
        tenant_id: str,
    ) -> Subscription:
        """
        Purchase a recurring product.

        Raises:
            ProductNotFoundError, ProductInactiveError, ValidationError: bad product
            PaymentMethodRejectedError: the gateway refused the customer or card
            SetupFeeDeclinedError: the setup fee was declined or unconfirmed
            ReconciliationRequiredError: charged, but the ledger write failed
        """
        now = self.clock()
        product = await self._load_purchasable_product(product_id, tenant_id)
        gateway = self.gateways.select(tenant_id, customer.locale)

        local_customer, customer_ref = await self._resolve_customer(
            gateway, tenant_id, customer, payment_method_token, now
        )

        subscription_id = new_id("sub")
        setup_fee_transaction = None
        if product.setup_fee_minor_units > 0:
            setup_fee_transaction = await self._charge_setup_fee(
                gateway, local_customer, customer_ref, product, subscription_id, now
            )

        trial = calculator.compute_trial(now, product.trial_days)
        gateway_subscription_ref = None
        try:
            gateway_subscription_ref = await self._delegate_recurring(
                gateway, customer_ref, product, tenant_id, subscription_id, setup_fee_transaction
            )
            subscription = Subscription(
                id=subscription_id,
                tenant_id=tenant_id,
                product_id=product.id,
                customer_id=local_customer.id,
                status=(
                    SubscriptionStatus.TRIALING
                    if product.trial_days > 0
                    else SubscriptionStatus.ACTIVE
                ),
                trial_start=trial.trial_start,
                trial_end=trial.trial_end,
                next_billing_date=calculator.first_billing_date(
                    trial.trial_end, product.recurrence
                ),
                billing_cycle=product.recurrence,
                amount_minor_units=product.price_minor_units,
                setup_fee_minor_units=product.setup_fee_minor_units,
                currency=product.currency,
                gateway_id=gateway.name,
                gateway_subscription_ref=gateway_subscription_ref,
                created_at=now,
                updated_at=now,
            )
            subscription = await self.ledger.create_subscription(
                subscription,
                customer=local_customer,
                setup_fee_transaction=setup_fee_transaction,
            )
        except ReconciliationRequiredError:
            raise
        except Exception as e:
            if setup_fee_transaction is None and gateway_subscription_ref is None:
                raise
            error = ReconciliationRequiredError(
                "Gateway side effects succeeded but the subscription could not be stored",
                reason=ReconciliationReason.LEDGER_WRITE_FAILED.value,
                tenant_id=tenant_id,
                gateway_id=gateway.name,
                gateway_transaction_ref=(
                    setup_fee_transaction.gateway_transaction_ref
                    if setup_fee_transaction
                    else None
                ),
                subscription_id=subscription_id,
                transaction_id=setup_fee_transaction.id if setup_fee_transaction else None,
                amount_minor_units=(
                    setup_fee_transaction.amount_minor_units if setup_fee_transaction else None
                ),
                currency=product.currency,
                details={
                    "customer_email": local_customer.email,
                    "gateway_customer_ref": local_customer.gateway_customer_ref,
                    "gateway_subscription_ref": gateway_subscription_ref,
                    "error": str(e),
                },
            )
            logger.error(
                "billing.purchase.ledger_write_failed",
                subscription_id=subscription_id,
                tenant_id=tenant_id,
                exc_info=True,
            )
            await self.reconciliation.report(error)
            raise error from e

        log_audit_event(
            "billing.subscription.created",
            tenant_id=tenant_id,
            resource_type="subscription",
            resource_id=subscription.id,
            actor=local_customer.email,
            product_id=product.id,
            gateway_id=gateway.name,
            delegated=subscription.is_delegated,
        )
        logger.info(
            "billing.subscription.created",
            subscription_id=subscription.id,
            tenant_id=tenant_id,
            status=subscription.status.value,
            next_billing_date=subscription.next_billing_date.isoformat(),
        )
        return subscription

    # ==================== Queries ====================

    async def get_subscription(
        self, subscription_id: str, tenant_id: str | None = None
    ) -> Subscription:
        subscription = await self.ledger.get_subscription(subscription_id)
        if subscription is None or (tenant_id is not None and subscription.tenant_id != tenant_id):
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return subscription

    async def list_subscriptions(
        self, tenant_id: str, status: SubscriptionStatus | None = None
    ) -> list[Subscription]:
        return await self.ledger.list_subscriptions(tenant_id, status)

    # ==================== Cancellation ====================

    async def cancel(
        self,
        subscription_id: str,
        reason: str | None = None,
        tenant_id: str | None = None,
        cancel_remote: bool = True,
    ) -> Subscription:
        """
        Cancel a subscription. Cancelling a cancelled subscription is a no-op.

        A gateway-native recurring object is cancelled too; if that fails the
        local cancellation still stands and the remote one is queued for an
        operator.
        """
        current = await self.get_subscription(subscription_id, tenant_id)
        if current.is_cancelled:
            return current

        now = self.clock()
        result = await self.ledger.cancel_subscription(subscription_id, reason, now)
        if result is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        subscription, changed = result
        if not changed:
            return subscription

        log_audit_event(
            "billing.subscription.cancelled",
            tenant_id=subscription.tenant_id,
            resource_type="subscription",
            resource_id=subscription.id,
            reason=reason,
        )

        remote_ref = subscription.gateway_subscription_ref
        if cancel_remote and remote_ref:
            await self._cancel_remote(subscription, remote_ref)
        return subscription

    async def _cancel_remote(self, subscription: Subscription, remote_ref: str) -> None:
        try:
            gateway = self.gateways.get(subscription.gateway_id)
            await call_gateway(
                gateway,
                "cancel_recurring_subscription",
                gateway.cancel_recurring_subscription(remote_ref),
                self._timeout,
            )
        except (GatewayError, BillingConfigurationError) as e:
            logger.warning(
                "billing.subscription.remote_cancel_failed",
                subscription_id=subscription.id,
                gateway_id=subscription.gateway_id,
                error=e.message,
            )
            await self.reconciliation.report(
                ReconciliationRequiredError(
                    "Gateway recurring subscription could not be cancelled",
                    reason=ReconciliationReason.REMOTE_CANCEL_FAILED.value,
                    tenant_id=subscription.tenant_id,
                    gateway_id=subscription.gateway_id,
                    subscription_id=subscription.id,
                    details={"gateway_subscription_ref": remote_ref},
                )
            )

    # ==================== Billing cycles ====================

    def _cooldown(self, failed_attempts: int) -> timedelta:
        backoff = self.settings.billing.retry_backoff_hours
        if not backoff:
            return timedelta(0)
        return timedelta(hours=backoff[min(failed_attempts, len(backoff)) - 1])

    async def complete_cycle(
        self,
        subscription: Subscription,
        transaction: BillingTransaction,
        now: datetime,
        claim_token: str | None = None,
        gateway_transaction_ref: str | None = None,
    ) -> bool:
        """Mark the cycle paid and advance the schedule by one cycle."""
        billing_date = transaction.billing_date or subscription.next_billing_date
        settlement = CycleSettlement(
            transaction_status=TransactionStatus.COMPLETED,
            subscription_status=SubscriptionStatus.ACTIVE,
            next_billing_date=calculator.advance(billing_date, subscription.billing_cycle),
            last_billing_date=now,
            failed_attempts=0,
            retry_after=None,
            settled_at=now,
            gateway_transaction_ref=gateway_transaction_ref,
        )
        return await self.ledger.settle_cycle(transaction.id, settlement, claim_token)

    async def fail_cycle(
        self,
        subscription: Subscription,
        transaction: BillingTransaction,
        error_message: str | None,
        now: datetime,
        claim_token: str | None = None,
    ) -> bool:
        """Mark the cycle failed; the subscription goes past due on the same billing date."""
        attempts = subscription.failed_attempts + 1
        settlement = CycleSettlement(
            transaction_status=TransactionStatus.FAILED,
            subscription_status=SubscriptionStatus.PAST_DUE,
            next_billing_date=transaction.billing_date or subscription.next_billing_date,
            last_billing_date=None,
            failed_attempts=attempts,
            retry_after=now + self._cooldown(attempts),
            settled_at=now,
            error_message=error_message or "Payment failed",
        )
        return await self.ledger.settle_cycle(transaction.id, settlement, claim_token)

    async def charge_cycle(
        self, subscription: Subscription, claim_token: str, now: datetime
    ) -> CycleOutcome:
        """
        Charge the claimed subscription for its current cycle.

        Raises only before any gateway call is made. Once the charge has been
        attempted, every outcome is recorded and returned; pending and
        ambiguous charges keep the claim held until a webhook settles them.
        """
        billing_date = subscription.next_billing_date
        customer = await self.ledger.get_customer(subscription.customer_id)
        transaction = BillingTransaction(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            amount_minor_units=subscription.amount_minor_units,
            currency=subscription.currency,
            type=TransactionType.RECURRING,
            gateway_id=subscription.gateway_id,
            description=f"Recurring charge for {billing_date.date().isoformat()}",
            billing_date=billing_date,
            created_at=now,
            updated_at=now,
        )
        await self.ledger.add_transaction(transaction)

        try:
            gateway = self.gateways.get(subscription.gateway_id)
        except BillingConfigurationError as e:
            return await self._settle(
                subscription,
                transaction,
                claim_token,
                now,
                TransactionStatus.FAILED,
                None,
                e.message,
            )
        if customer is None:
            return await self._settle(
                subscription,
                transaction,
                claim_token,
                now,
                TransactionStatus.FAILED,
                None,
                "Customer record not found",
            )

        customer_ref = CustomerRef(
            gateway=gateway.name,
            customer_id=customer.gateway_customer_ref,
            payment_method_id=customer.default_payment_method_ref,
        )
        try:
            ref = await call_gateway(
                gateway,
                "charge_one_time",
                gateway.charge_one_time(
                    customer_ref,
                    subscription.amount_minor_units,
                    subscription.currency,
                    transaction.description,
                    metadata={
                        "transaction_id": transaction.id,
                        "subscription_id": subscription.id,
                        "tenant_id": subscription.tenant_id,
                    },
                    idempotency_key=f"{subscription.id}:{billing_date.isoformat()}",
                ),
                self._timeout,
                side_effecting=True,
            )
        except GatewayError as e:
            if not e.ambiguous:
                return await self._settle(
                    subscription,
                    transaction,
                    claim_token,
                    now,
                    TransactionStatus.FAILED,
                    None,
                    e.message,
                )
            return await self._hold_unknown(subscription, transaction, e)
        except Exception as e:
            logger.error(
                "billing.cycle.charge_crashed",
                subscription_id=subscription.id,
                transaction_id=transaction.id,
                exc_info=True,
            )
            return await self._hold_unknown(subscription, transaction, e)

        if ref.reference:
            try:
                await self.ledger.set_transaction_ref(transaction.id, ref.reference, now)
            except Exception:
                # The ref also travels with the settlement below.
                logger.warning(
                    "billing.cycle.ref_write_failed",
                    transaction_id=transaction.id,
                    exc_info=True,
                )

        if ref.status == TransactionStatus.PENDING:
            self.metrics.record_charge(
                "recurring",
                gateway.name,
                "pending",
                subscription.amount_minor_units,
                subscription.currency,
            )
            logger.info(
                "billing.cycle.pending",
                subscription_id=subscription.id,
                transaction_id=transaction.id,
                gateway_transaction_ref=ref.reference,
            )
            return CycleOutcome(CycleResult.PENDING, subscription.id, transaction.id)

        return await self._settle(
            subscription,
            transaction,
            claim_token,
            now,
            ref.status,
            ref.reference,
            ref.error_message,
        )

    async def _settle(
        self,
        subscription: Subscription,
        transaction: BillingTransaction,
        claim_token: str,
        now: datetime,
        status: TransactionStatus,
        reference: str | None,
        error_message: str | None,
    ) -> CycleOutcome:
        self.metrics.record_charge(
            "recurring",
            subscription.gateway_id,
            status.value,
            subscription.amount_minor_units,
            subscription.currency,
        )
        try:
            if status == TransactionStatus.COMPLETED:
                settled = await self.complete_cycle(
                    subscription, transaction, now, claim_token, reference
                )
            else:
                settled = await self.fail_cycle(
                    subscription, transaction, error_message, now, claim_token
                )
        except Exception as e:
            logger.error(
                "billing.cycle.ledger_write_failed",
                subscription_id=subscription.id,
                transaction_id=transaction.id,
                exc_info=True,
            )
            await self.reconciliation.report(
                ReconciliationRequiredError(
                    f"Charge ended {status.value} but the ledger could not record it",
                    reason=ReconciliationReason.LEDGER_WRITE_FAILED.value,
                    tenant_id=subscription.tenant_id,
                    gateway_id=subscription.gateway_id,
                    gateway_transaction_ref=reference,
                    subscription_id=subscription.id,
                    transaction_id=transaction.id,
                    amount_minor_units=transaction.amount_minor_units,
                    currency=transaction.currency,
                    details={"gateway_status": status.value, "error": str(e)},
                )
            )
            return CycleOutcome(
                CycleResult.RECONCILIATION_REQUIRED, subscription.id, transaction.id, str(e)
            )

        if not settled:
            logger.info(
                "billing.cycle.already_settled",
                subscription_id=subscription.id,
                transaction_id=transaction.id,
            )
        result = (
            CycleResult.COMPLETED if status == TransactionStatus.COMPLETED else CycleResult.FAILED
        )
        logger.info(
            "billing.cycle.settled",
            subscription_id=subscription.id,
            transaction_id=transaction.id,
            result=result.value,
            error=error_message,
        )
        return CycleOutcome(result, subscription.id, transaction.id, error_message)

    async def _hold_unknown(
        self, subscription: Subscription, transaction: BillingTransaction, error: Exception
    ) -> CycleOutcome:
        message = error.message if isinstance(error, GatewayError) else str(error)
        self.metrics.record_charge(
            "recurring",
            subscription.gateway_id,
            "unknown",
            subscription.amount_minor_units,
            subscription.currency,
        )
        await self.reconciliation.report(
            ReconciliationRequiredError(
                "Recurring charge outcome is unknown",
                reason=ReconciliationReason.CHARGE_OUTCOME_UNKNOWN.value,
                tenant_id=subscription.tenant_id,
                gateway_id=subscription.gateway_id,
                subscription_id=subscription.id,
                transaction_id=transaction.id,
                amount_minor_units=transaction.amount_minor_units,
                currency=transaction.currency,
                details={"error": message},
            )
        )
        return CycleOutcome(CycleResult.PENDING, subscription.id, transaction.id, message)

    async def settle_transaction(
        self,
        transaction: BillingTransaction,
        status: TransactionStatus,
        gateway_transaction_ref: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """
        Settle a pending transaction from outside the sweep (webhook, operator).

        Recurring transactions settle their cycle; others just change status.
        Returns ``False`` when the transaction was no longer pending.
        """
        if status == TransactionStatus.PENDING:
            raise ValueError("A transaction can only be settled as completed or failed")
        now = self.clock()
        if transaction.type != TransactionType.RECURRING:
            return await self.ledger.transition_transaction(
                transaction.id, status, now, error_message
            )

        subscription = await self.get_subscription(transaction.subscription_id)
        if status == TransactionStatus.COMPLETED:
            return await self.complete_cycle(
                subscription, transaction, now, gateway_transaction_ref=gateway_transaction_ref
            )
        return await self.fail_cycle(subscription, transaction, error_message, now)

    async def record_delegated_charge(
        self,
        subscription: Subscription,
        status: TransactionStatus,
        gateway_transaction_ref: str,
        amount_minor_units: int | None = None,
        currency: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """
        Record a cycle billed by the gateway's own recurring engine.

        Replays of the same gateway charge are no-ops returning ``False``.
        """
        now = self.clock()
        billing_date = subscription.next_billing_date
        transaction = BillingTransaction(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            amount_minor_units=(
                amount_minor_units
                if amount_minor_units is not None
                else subscription.amount_minor_units
            ),
            currency=currency or subscription.currency,
            type=TransactionType.RECURRING,
            status=status,
            gateway_id=subscription.gateway_id,
            gateway_transaction_ref=gateway_transaction_ref,
            description=f"Recurring charge for {billing_date.date().isoformat()}",
            error_message=error_message if status == TransactionStatus.FAILED else None,
            billing_date=billing_date,
            created_at=now,
            updated_at=now,
        )
        if status == TransactionStatus.COMPLETED:
            settlement = CycleSettlement(
                transaction_status=status,
                subscription_status=SubscriptionStatus.ACTIVE,
                next_billing_date=calculator.advance(billing_date, subscription.billing_cycle),
                last_billing_date=now,
                failed_attempts=0,
                retry_after=None,
                settled_at=now,
            )
        else:
            # The gateway runs its own retries; no local cooldown.
            settlement = CycleSettlement(
                transaction_status=status,
                subscription_status=SubscriptionStatus.PAST_DUE,
                next_billing_date=billing_date,
                last_billing_date=None,
                failed_attempts=subscription.failed_attempts + 1,
                retry_after=None,
                settled_at=now,
                error_message=error_message,
            )

        recorded = await self.ledger.record_delegated_charge(transaction, settlement)
        if recorded:
            self.metrics.record_charge(
                "recurring",
                subscription.gateway_id,
                status.value,
                transaction.amount_minor_units,
                transaction.currency,
            )
        return recorded
