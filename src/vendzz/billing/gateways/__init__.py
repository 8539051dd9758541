"""Payment gateway adapters and selection."""

from vendzz.billing.gateways.base import (
    CustomerRef,
    GatewayAdapter,
    SubscriptionRef,
    TransactionRef,
    WebhookEvent,
    WebhookEventType,
    call_gateway,
)
from vendzz.billing.gateways.null import NullAdapter
from vendzz.billing.gateways.pagarme import PagarmeAdapter
from vendzz.billing.gateways.registry import GatewayRegistry, build_adapter
from vendzz.billing.gateways.stripe import StripeAdapter

__all__ = [
    "CustomerRef",
    "GatewayAdapter",
    "GatewayRegistry",
    "NullAdapter",
    "PagarmeAdapter",
    "StripeAdapter",
    "SubscriptionRef",
    "TransactionRef",
    "WebhookEvent",
    "WebhookEventType",
    "build_adapter",
    "call_gateway",
]
