"""
Payment gateway capability contract.

Every concrete provider implements ``GatewayAdapter``; the engine never
calls provider-specific methods outside of it.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from enum import Enum
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from vendzz.billing.exceptions import GatewayError
from vendzz.billing.models import TransactionStatus

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CustomerRef(BaseModel):
    """Provider-side customer handle."""

    model_config = ConfigDict(frozen=True)

    gateway: str
    customer_id: str
    payment_method_id: str | None = None


class TransactionRef(BaseModel):
    """Result of a one-time charge."""

    gateway: str
    reference: str | None = Field(None, description="Provider transaction id")
    status: TransactionStatus
    error_message: str | None = None
    raw_status: str | None = None


class SubscriptionRef(BaseModel):
    """Provider-side recurring subscription handle."""

    gateway: str
    subscription_id: str
    status: str | None = None


class WebhookEventType(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    UNKNOWN = "unknown"


class WebhookEvent(BaseModel):
    """Provider webhook normalised to the engine's vocabulary."""

    gateway: str
    event_id: str | None = None
    type: WebhookEventType
    raw_type: str
    transaction_ref: str | None = None
    correlation_id: str | None = Field(
        None, description="Local transaction id echoed back from charge metadata"
    )
    subscription_ref: str | None = None
    amount_minor_units: int | None = None
    currency: str | None = None
    error_message: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class GatewayAdapter(ABC):
    """
    Uniform capability interface over a payment provider.

    Synchronous providers settle a charge within ``charge_one_time``;
    asynchronous ones return a pending ``TransactionRef`` and confirm it
    later through a webhook.
    """

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    async def find_or_create_customer(self, tenant_id: str, email: str, name: str) -> CustomerRef:
        """Search for the customer by email and create it only if absent."""

    @abstractmethod
    async def attach_payment_method(self, customer_ref: CustomerRef, method_token: str) -> str:
        """
        Attach the tokenised payment method and make it the default.

        Returns the provider-side payment method id to charge later, which
        may differ from the one-shot token.
        """

    @abstractmethod
    async def charge_one_time(
        self,
        customer_ref: CustomerRef,
        amount_minor_units: int,
        currency: str,
        description: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> TransactionRef:
        """Charge the customer's default payment method once."""

    @abstractmethod
    async def create_recurring_subscription(
        self, customer_ref: CustomerRef, plan_ref: str, trial_days: int
    ) -> SubscriptionRef:
        """Create a subscription in the provider's native recurring engine."""

    @abstractmethod
    async def cancel_recurring_subscription(self, subscription_ref: str) -> None:
        """Cancel a provider-native recurring subscription."""

    @abstractmethod
    def parse_webhook(
        self, raw_payload: bytes, signature_header: str | None, secret: str
    ) -> WebhookEvent:
        """Verify the signature, then parse. Raises ``InvalidSignatureError``."""

    async def aclose(self) -> None:  # noqa: B027
        """Release network resources held by the adapter."""


async def call_gateway(
    gateway: GatewayAdapter,
    operation: str,
    awaitable: Awaitable[T],
    timeout: float,
    side_effecting: bool = False,
) -> T:
    """
    Await a gateway call under a timeout.

    A timeout on a read/idempotent call is retryable. A timeout on a call
    that may already have moved money (a charge) is ambiguous: it must be
    settled by webhook or reconciliation and never blindly retried.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as exc:
        logger.warning(
            "gateway.call.timeout",
            gateway=gateway.name,
            operation=operation,
            timeout=timeout,
            side_effecting=side_effecting,
        )
        raise GatewayError(
            f"{gateway.name} {operation} timed out after {timeout}s",
            kind="timeout",
            retryable=not side_effecting,
            ambiguous=side_effecting,
            gateway=gateway.name,
        ) from exc
