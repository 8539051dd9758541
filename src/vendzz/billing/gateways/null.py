"""
In-memory gateway used by tests and local development.

Outcomes are programmable: queue results with ``queue_charge`` or mark
payment tokens as declined, then inspect ``charges`` afterwards.
"""

import hashlib
import hmac
import json
from collections import deque
from typing import Any
from uuid import uuid4

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

_EVENT_TYPES = {
    "payment.confirmed": WebhookEventType.PAYMENT_CONFIRMED,
    "payment.failed": WebhookEventType.PAYMENT_FAILED,
    "subscription.cancelled": WebhookEventType.SUBSCRIPTION_CANCELLED,
}


class NullAdapter(GatewayAdapter):
    """Gateway that never leaves the process."""

    def __init__(self, name: str = "null", settles_asynchronously: bool = False) -> None:
        super().__init__(name)
        self.settles_asynchronously = settles_asynchronously
        self.customers: dict[tuple[str, str], CustomerRef] = {}
        self.customer_creations = 0
        self.attached: dict[str, str] = {}
        self.declined_tokens: set[str] = set()
        self.charges: list[dict[str, Any]] = []
        self.subscriptions: dict[str, SubscriptionRef] = {}
        self.cancelled_subscriptions: list[str] = []
        self.fail_remote_cancel = False
        self.remote_create_error: BaseException | None = None
        self._outcomes: deque[str | BaseException] = deque()

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def queue_charge(self, *outcomes: str | BaseException) -> None:
        """
        Queue outcomes for upcoming charges.

        Each outcome is ``"completed"``, ``"failed"``, ``"pending"``,
        ``"timeout"`` (ambiguous gateway error) or an exception to raise.
        """
        self._outcomes.extend(outcomes)

    def decline(self, method_token: str) -> None:
        self.declined_tokens.add(method_token)

    @staticmethod
    def sign(raw_payload: bytes, secret: str) -> str:
        return hmac.new(secret.encode(), raw_payload, hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Capability contract
    # ------------------------------------------------------------------

    async def find_or_create_customer(self, tenant_id: str, email: str, name: str) -> CustomerRef:
        key = (tenant_id, email.strip().lower())
        existing = self.customers.get(key)
        if existing is not None:
            return existing
        ref = CustomerRef(gateway=self.name, customer_id=f"nullcus_{uuid4().hex[:16]}")
        self.customers[key] = ref
        self.customer_creations += 1
        return ref

    async def attach_payment_method(self, customer_ref: CustomerRef, method_token: str) -> str:
        if method_token in self.declined_tokens:
            raise GatewayError(
                f"Payment method {method_token} was declined",
                kind="card_declined",
                gateway=self.name,
            )
        self.attached[customer_ref.customer_id] = method_token
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
        reference = f"nullch_{uuid4().hex[:16]}"
        self.charges.append(
            {
                "reference": reference,
                "customer_id": customer_ref.customer_id,
                "amount_minor_units": amount_minor_units,
                "currency": currency,
                "description": description,
                "metadata": dict(metadata or {}),
                "idempotency_key": idempotency_key,
            }
        )

        if self._outcomes:
            outcome = self._outcomes.popleft()
        elif self.attached.get(customer_ref.customer_id) in self.declined_tokens:
            outcome = "failed"
        else:
            outcome = "pending" if self.settles_asynchronously else "completed"

        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == "timeout":
            raise GatewayError(
                f"{self.name} charge timed out",
                kind="timeout",
                ambiguous=True,
                gateway=self.name,
            )
        if outcome == "failed":
            return TransactionRef(
                gateway=self.name,
                reference=reference,
                status=TransactionStatus.FAILED,
                error_message="card_declined",
                raw_status="declined",
            )
        return TransactionRef(
            gateway=self.name,
            reference=reference,
            status=TransactionStatus(outcome),
            raw_status=outcome,
        )

    async def create_recurring_subscription(
        self, customer_ref: CustomerRef, plan_ref: str, trial_days: int
    ) -> SubscriptionRef:
        ref = SubscriptionRef(
            gateway=self.name,
            subscription_id=f"nullsub_{uuid4().hex[:16]}",
            status="trialing" if trial_days else "active",
        )
        self.subscriptions[ref.subscription_id] = ref
        if self.remote_create_error is not None:
            # Created remotely, but the response never made it back.
            raise self.remote_create_error
        return ref

    async def cancel_recurring_subscription(self, subscription_ref: str) -> None:
        if self.fail_remote_cancel:
            raise GatewayError(
                f"Could not cancel {subscription_ref}", kind="provider_error", gateway=self.name
            )
        self.cancelled_subscriptions.append(subscription_ref)

    def parse_webhook(
        self, raw_payload: bytes, signature_header: str | None, secret: str
    ) -> WebhookEvent:
        expected = self.sign(raw_payload, secret)
        if not signature_header or not hmac.compare_digest(expected, signature_header):
            raise InvalidSignatureError("Invalid webhook signature", gateway=self.name)

        payload = json.loads(raw_payload)
        data = payload.get("data", {})
        raw_type = payload.get("type", "")
        return WebhookEvent(
            gateway=self.name,
            event_id=payload.get("id"),
            type=_EVENT_TYPES.get(raw_type, WebhookEventType.UNKNOWN),
            raw_type=raw_type,
            transaction_ref=data.get("transaction_ref"),
            correlation_id=data.get("correlation_id"),
            subscription_ref=data.get("subscription_ref"),
            amount_minor_units=data.get("amount"),
            currency=data.get("currency"),
            error_message=data.get("error"),
            payload=payload,
        )
