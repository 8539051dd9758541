"""
Stripe gateway adapter.

Wraps the blocking ``stripe`` SDK; every SDK call runs in a worker thread.
"""

import asyncio
from typing import Any

import structlog

from vendzz.billing.exceptions import GatewayError, InvalidSignatureError
from vendzz.billing.gateways.base import (
    CustomerRef,
    GatewayAdapter,
    SubscriptionRef,
    TransactionRef,
    WebhookEvent,
    WebhookEventType,
)
from vendzz.billing.models import TransactionStatus

logger = structlog.get_logger(__name__)

_INTENT_STATUS = {
    "succeeded": TransactionStatus.COMPLETED,
    "processing": TransactionStatus.PENDING,
    "requires_capture": TransactionStatus.PENDING,
}

_EVENT_TYPES = {
    "payment_intent.succeeded": WebhookEventType.PAYMENT_CONFIRMED,
    "invoice.payment_succeeded": WebhookEventType.PAYMENT_CONFIRMED,
    "invoice.paid": WebhookEventType.PAYMENT_CONFIRMED,
    "payment_intent.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "invoice.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "customer.subscription.deleted": WebhookEventType.SUBSCRIPTION_CANCELLED,
}


class StripeAdapter(GatewayAdapter):
    """Stripe implementation of the gateway contract."""

    def __init__(self, api_key: str, name: str = "stripe") -> None:
        super().__init__(name)
        import stripe

        stripe.api_key = api_key
        self.api_key = api_key
        self._stripe = stripe

    def _error(
        self, exc: Exception, operation: str, side_effecting: bool = False
    ) -> GatewayError:
        stripe = self._stripe
        if isinstance(exc, stripe.error.RateLimitError):
            return GatewayError(
                str(exc), kind="rate_limited", retryable=True, gateway=self.name
            )
        if isinstance(exc, stripe.error.APIConnectionError):
            return GatewayError(
                str(exc),
                kind="network",
                retryable=not side_effecting,
                ambiguous=side_effecting,
                gateway=self.name,
            )
        logger.error("stripe.call.failed", operation=operation, error=str(exc))
        return GatewayError(str(exc), kind="provider_error", gateway=self.name)

    async def find_or_create_customer(self, tenant_id: str, email: str, name: str) -> CustomerRef:
        stripe = self._stripe
        email = email.strip().lower()
        try:
            existing = await asyncio.to_thread(stripe.Customer.list, email=email, limit=20)
            for customer in existing.get("data", []):
                if (customer.get("metadata") or {}).get("tenant_id") == tenant_id:
                    return CustomerRef(
                        gateway=self.name,
                        customer_id=customer["id"],
                        payment_method_id=(customer.get("invoice_settings") or {}).get(
                            "default_payment_method"
                        ),
                    )

            created = await asyncio.to_thread(
                stripe.Customer.create,
                email=email,
                name=name,
                metadata={"tenant_id": tenant_id},
                idempotency_key=f"customer:{tenant_id}:{email}",
            )
        except stripe.error.StripeError as e:
            raise self._error(e, "find_or_create_customer") from e

        logger.info("stripe.customer.created", customer_id=created["id"], tenant_id=tenant_id)
        return CustomerRef(gateway=self.name, customer_id=created["id"])

    async def attach_payment_method(self, customer_ref: CustomerRef, method_token: str) -> str:
        stripe = self._stripe
        try:
            await asyncio.to_thread(
                stripe.PaymentMethod.attach, method_token, customer=customer_ref.customer_id
            )
            await asyncio.to_thread(
                stripe.Customer.modify,
                customer_ref.customer_id,
                invoice_settings={"default_payment_method": method_token},
            )
        except stripe.error.CardError as e:
            raise GatewayError(
                getattr(e, "user_message", None) or str(e), kind="card_declined", gateway=self.name
            ) from e
        except stripe.error.StripeError as e:
            raise self._error(e, "attach_payment_method") from e
        return method_token

    async def charge_one_time(
        self,
        customer_ref: CustomerRef,
        amount_minor_units: int,
        currency: str,
        description: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> TransactionRef:
        stripe = self._stripe
        params: dict[str, Any] = {
            "amount": amount_minor_units,
            "currency": currency.lower(),
            "customer": customer_ref.customer_id,
            "description": description,
            "metadata": metadata or {},
            "confirm": True,
            "off_session": True,
        }
        if customer_ref.payment_method_id:
            params["payment_method"] = customer_ref.payment_method_id
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.create, **params)
        except stripe.error.CardError as e:
            payment_intent = getattr(getattr(e, "error", None), "payment_intent", None)
            return TransactionRef(
                gateway=self.name,
                reference=payment_intent["id"] if payment_intent else None,
                status=TransactionStatus.FAILED,
                error_message=getattr(e, "user_message", None) or str(e),
                raw_status="card_error",
            )
        except stripe.error.StripeError as e:
            raise self._error(e, "charge_one_time", side_effecting=True) from e

        status = _INTENT_STATUS.get(intent.status, TransactionStatus.FAILED)
        error_message = None
        if status == TransactionStatus.FAILED:
            error_message = f"Payment intent ended in status {intent.status}"
        return TransactionRef(
            gateway=self.name,
            reference=intent.id,
            status=status,
            error_message=error_message,
            raw_status=intent.status,
        )

    async def create_recurring_subscription(
        self, customer_ref: CustomerRef, plan_ref: str, trial_days: int
    ) -> SubscriptionRef:
        stripe = self._stripe
        params: dict[str, Any] = {
            "customer": customer_ref.customer_id,
            "items": [{"price": plan_ref}],
        }
        if trial_days > 0:
            params["trial_period_days"] = trial_days
        if customer_ref.payment_method_id:
            params["default_payment_method"] = customer_ref.payment_method_id

        try:
            subscription = await asyncio.to_thread(stripe.Subscription.create, **params)
        except stripe.error.StripeError as e:
            raise self._error(
                e, "create_recurring_subscription", side_effecting=True
            ) from e
        return SubscriptionRef(
            gateway=self.name, subscription_id=subscription.id, status=subscription.status
        )

    async def cancel_recurring_subscription(self, subscription_ref: str) -> None:
        stripe = self._stripe
        try:
            await asyncio.to_thread(stripe.Subscription.cancel, subscription_ref)
        except stripe.error.StripeError as e:
            raise self._error(e, "cancel_recurring_subscription") from e

    def parse_webhook(
        self, raw_payload: bytes, signature_header: str | None, secret: str
    ) -> WebhookEvent:
        stripe = self._stripe
        if not signature_header:
            raise InvalidSignatureError("Missing Stripe-Signature header", gateway=self.name)
        try:
            event = stripe.Webhook.construct_event(raw_payload, signature_header, secret)
        except (ValueError, stripe.error.SignatureVerificationError) as e:
            raise InvalidSignatureError(
                f"Stripe signature verification failed: {e}", gateway=self.name
            ) from e

        raw_type = event["type"]
        obj = event["data"]["object"]
        metadata = obj.get("metadata") or {}
        event_type = _EVENT_TYPES.get(raw_type, WebhookEventType.UNKNOWN)

        transaction_ref = None
        subscription_ref = None
        error_message = None
        if raw_type.startswith("payment_intent."):
            transaction_ref = obj.get("id")
            last_error = obj.get("last_payment_error") or {}
            error_message = last_error.get("message")
        elif raw_type.startswith("invoice."):
            transaction_ref = obj.get("payment_intent") or obj.get("id")
            subscription_ref = obj.get("subscription")
            if event_type == WebhookEventType.PAYMENT_FAILED:
                error_message = "Invoice payment failed"
        elif raw_type.startswith("customer.subscription."):
            subscription_ref = obj.get("id")

        amount = obj.get("amount") if raw_type.startswith("payment_intent.") else obj.get(
            "amount_paid"
        )
        return WebhookEvent(
            gateway=self.name,
            event_id=event.get("id"),
            type=event_type,
            raw_type=raw_type,
            transaction_ref=transaction_ref,
            correlation_id=metadata.get("transaction_id"),
            subscription_ref=subscription_ref,
            amount_minor_units=amount,
            currency=(obj.get("currency") or "").upper() or None,
            error_message=error_message,
            payload=dict(event),
        )
