"""
Billing engine exceptions.

Provides the error taxonomy of the billing engine with status codes,
context, and recovery hints suitable for API responses.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class ValidationError(BillingError):
    """Bad input, rejected before any side effect."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class ProductNotFoundError(ValidationError):
    """Product not found error."""

    def __init__(self, message: str, product_id: str | None = None) -> None:
        context = {}
        if product_id:
            context["product_id"] = product_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the product ID and ensure the product exists",
        )
        self.error_code = "PRODUCT_NOT_FOUND"
        self.status_code = 404


class ProductInactiveError(ValidationError):
    """Product exists but has been deactivated."""

    def __init__(self, message: str, product_id: str) -> None:
        super().__init__(
            message,
            context={"product_id": product_id},
            recovery_hint="Reactivate the product or choose an active one",
        )
        self.error_code = "PRODUCT_INACTIVE"
        self.status_code = 409


class SubscriptionNotFoundError(ValidationError):
    """Subscription not found error."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists and is accessible",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        self.status_code = 404


class ReconciliationItemNotFoundError(ValidationError):
    """Reconciliation queue item not found."""

    def __init__(self, message: str, item_id: str) -> None:
        super().__init__(message, context={"item_id": item_id})
        self.error_code = "RECONCILIATION_ITEM_NOT_FOUND"
        self.status_code = 404


class PaymentError(BillingError):
    """Payment processing errors reported synchronously to the purchaser."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "PAYMENT_ERROR", status_code=402, context=context, recovery_hint=recovery_hint
        )


class PaymentMethodRejectedError(PaymentError):
    """The gateway rejected the customer or payment method."""

    def __init__(self, message: str, gateway: str | None = None, reason: str | None = None):
        context: dict[str, Any] = {}
        if gateway:
            context["gateway"] = gateway
        if reason:
            context["reason"] = reason

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the payment method details or try a different card",
        )
        self.error_code = "PAYMENT_METHOD_REJECTED"


class SetupFeeDeclinedError(PaymentError):
    """The one-time setup fee could not be collected."""

    def __init__(
        self,
        message: str,
        amount_minor_units: int,
        currency: str,
        reason: str | None = None,
    ):
        context: dict[str, Any] = {"amount_minor_units": amount_minor_units, "currency": currency}
        if reason:
            context["reason"] = reason

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify payment method has sufficient funds and retry the purchase",
        )
        self.error_code = "SETUP_FEE_DECLINED"


class GatewayError(BillingError):
    """
    Network or provider failure.

    ``retryable`` means the operation may safely be attempted again.
    ``ambiguous`` means the provider may already have side-effected (e.g. a
    charge timed out after being sent) and the outcome must be reconciled.
    """

    def __init__(
        self,
        message: str,
        kind: str = "provider_error",
        retryable: bool = False,
        ambiguous: bool = False,
        gateway: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        merged = {"kind": kind, "retryable": retryable, "ambiguous": ambiguous}
        if gateway:
            merged["gateway"] = gateway
        merged.update(context or {})

        super().__init__(
            message,
            "GATEWAY_ERROR",
            status_code=502,
            context=merged,
            recovery_hint="Retry later or check the payment provider status",
        )
        self.kind = kind
        self.retryable = retryable
        self.ambiguous = ambiguous
        self.gateway = gateway


class InvalidSignatureError(GatewayError):
    """Webhook signature verification failed."""

    def __init__(self, message: str, gateway: str | None = None) -> None:
        super().__init__(message, kind="invalid_signature", gateway=gateway)
        self.error_code = "INVALID_SIGNATURE"
        self.status_code = 400
        self.recovery_hint = "Check the webhook signing secret configured for this tenant"


class ConflictError(BillingError):
    """Another worker already owns the subscription for this cycle."""

    def __init__(self, message: str, subscription_id: str) -> None:
        super().__init__(
            message,
            "CLAIM_CONFLICT",
            status_code=409,
            context={"subscription_id": subscription_id},
        )


class ReconciliationRequiredError(BillingError):
    """
    A gateway charge may have succeeded while the local record diverged.

    Always reported to the reconciliation queue; never silently dropped.
    """

    def __init__(
        self,
        message: str,
        reason: str,
        tenant_id: str,
        gateway_id: str | None = None,
        gateway_transaction_ref: str | None = None,
        subscription_id: str | None = None,
        transaction_id: str | None = None,
        amount_minor_units: int | None = None,
        currency: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        context: dict[str, Any] = {"reason": reason, "tenant_id": tenant_id}
        for key, value in (
            ("gateway_id", gateway_id),
            ("gateway_transaction_ref", gateway_transaction_ref),
            ("subscription_id", subscription_id),
            ("transaction_id", transaction_id),
            ("amount_minor_units", amount_minor_units),
            ("currency", currency),
        ):
            if value is not None:
                context[key] = value

        super().__init__(
            message,
            "RECONCILIATION_REQUIRED",
            status_code=500,
            context=context,
            recovery_hint="An operator must reconcile the gateway charge with the local ledger",
        )
        self.reason = reason
        self.tenant_id = tenant_id
        self.gateway_id = gateway_id
        self.gateway_transaction_ref = gateway_transaction_ref
        self.subscription_id = subscription_id
        self.transaction_id = transaction_id
        self.amount_minor_units = amount_minor_units
        self.currency = currency
        self.details = details or {}


class BillingConfigurationError(BillingError):
    """Billing configuration errors."""

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "Check billing configuration settings",
        )
