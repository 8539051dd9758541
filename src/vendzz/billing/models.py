"""
Billing domain models.

Pydantic models for products, customers, subscriptions, billing
transactions and reconciliation items. Monetary amounts are always integers
in the currency's smallest unit and instants are timezone-aware UTC.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def new_id(prefix: str) -> str:
    """Generate a prefixed identifier, e.g. ``sub_3f2a...``."""
    return f"{prefix}_{uuid4().hex[:24]}"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Recurrence(str, Enum):
    """Billing recurrence of a product."""

    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class TransactionType(str, Enum):
    SETUP_FEE = "setup_fee"
    RECURRING = "recurring"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ReconciliationReason(str, Enum):
    """Why an operator has to look at a gateway charge."""

    LEDGER_WRITE_FAILED = "ledger_write_failed"
    CHARGE_OUTCOME_UNKNOWN = "charge_outcome_unknown"
    SETUP_FEE_UNCONFIRMED = "setup_fee_unconfirmed"
    REMOTE_CANCEL_FAILED = "remote_cancel_failed"
    REMOTE_SUBSCRIPTION_UNCONFIRMED = "remote_subscription_unconfirmed"
    UNMATCHED_WEBHOOK = "unmatched_webhook"


class ReconciliationStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


# Allowed subscription transitions; cancelled is terminal.
SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.TRIALING: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.CANCELLED: frozenset(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    """Check whether ``current -> target`` is a legal subscription transition."""
    return current == target or target in SUBSCRIPTION_TRANSITIONS[current]


class BillingBaseModel(BaseModel):
    """Base model for all billing entities with common fields."""

    model_config = ConfigDict(from_attributes=True, validate_assignment=True)

    tenant_id: str = Field(description="Tenant owning the record")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update timestamp")


def _normalize_currency(value: str) -> str:
    code = value.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError("currency must be a 3-letter ISO 4217 code")
    return code


class Product(BillingBaseModel):
    """An offer that customers can buy or subscribe to."""

    id: str = Field(default_factory=lambda: new_id("prod"))
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    price_minor_units: int = Field(ge=0, description="Price in the currency's smallest unit")
    currency: str = Field(description="ISO 4217 currency code")
    recurrence: Recurrence = Recurrence.MONTHLY
    trial_days: int = Field(0, ge=0)
    setup_fee_minor_units: int = Field(0, ge=0)
    active: bool = True
    gateway_plan_refs: dict[str, str] = Field(
        default_factory=dict, description="Provider plan/price id per gateway name"
    )

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return _normalize_currency(v)

    @property
    def is_recurring(self) -> bool:
        return self.recurrence != Recurrence.NONE


class Customer(BillingBaseModel):
    """A paying customer, bound to the gateway that owns its payment data."""

    id: str = Field(default_factory=lambda: new_id("cus"))
    name: str
    email: str
    gateway_id: str = Field(description="Name of the gateway holding this customer")
    gateway_customer_ref: str = Field(description="Provider-assigned customer id")
    default_payment_method_ref: str | None = None
    locale: str | None = Field(None, description="Customer locale, e.g. pt-BR")

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class Subscription(BillingBaseModel):
    """A customer's subscription to a recurring product."""

    id: str = Field(default_factory=lambda: new_id("sub"))
    product_id: str
    customer_id: str
    status: SubscriptionStatus
    trial_start: datetime
    trial_end: datetime
    next_billing_date: datetime
    last_billing_date: datetime | None = None
    billing_cycle: Recurrence
    amount_minor_units: int = Field(ge=0)
    setup_fee_minor_units: int = Field(0, ge=0)
    currency: str
    gateway_id: str
    gateway_subscription_ref: str | None = Field(
        None, description="Set when the gateway's native recurring engine bills this subscription"
    )
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None

    # Sweep bookkeeping
    claim_token: str | None = None
    claimed_at: datetime | None = None
    failed_attempts: int = Field(0, ge=0)
    retry_after: datetime | None = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return _normalize_currency(v)

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED

    @property
    def is_delegated(self) -> bool:
        """Billing is driven by the gateway's native recurring object."""
        return self.gateway_subscription_ref is not None


class BillingTransaction(BillingBaseModel):
    """A single charge attempt against a gateway."""

    id: str = Field(default_factory=lambda: new_id("txn"))
    subscription_id: str
    customer_id: str
    amount_minor_units: int = Field(ge=0)
    currency: str
    type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING
    gateway_id: str
    gateway_transaction_ref: str | None = None
    description: str = ""
    error_message: str | None = None
    billing_date: datetime | None = Field(
        None, description="Billing cycle this recurring charge pays for"
    )

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return _normalize_currency(v)


class ReconciliationItem(BillingBaseModel):
    """Operator-visible record of a possibly diverged gateway charge."""

    id: str = Field(default_factory=lambda: new_id("rec"))
    reason: ReconciliationReason
    message: str
    gateway_id: str | None = None
    gateway_transaction_ref: str | None = None
    subscription_id: str | None = None
    transaction_id: str | None = None
    amount_minor_units: int | None = None
    currency: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    status: ReconciliationStatus = ReconciliationStatus.OPEN
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None


# ============================================================================
# Requests and results
# ============================================================================


class CustomerDetails(BaseModel):
    """Purchaser details supplied at checkout."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    locale: str | None = None


class ProductCreateRequest(BaseModel):
    """Request to create a product."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    price_minor_units: int = Field(ge=0)
    currency: str | None = None
    recurrence: Recurrence = Recurrence.MONTHLY
    trial_days: int = Field(0, ge=0)
    setup_fee_minor_units: int = Field(0, ge=0)
    gateway_plan_refs: dict[str, str] = Field(default_factory=dict)


class ProductUpdateRequest(BaseModel):
    """Owner-editable product fields; existing subscriptions keep their copied terms."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    price_minor_units: int | None = Field(None, ge=0)
    active: bool | None = None


class SweepResult(BaseModel):
    """Aggregate statistics of one sweep."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    pending: int = 0
    skipped: int = 0
    timestamp_utc: datetime = Field(default_factory=utcnow)

    def to_response(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "pending": self.pending,
            "skipped": self.skipped,
            "timestampUtc": self.timestamp_utc.isoformat(),
        }


class BillingSummary(BaseModel):
    """Dashboard metrics over the ledger."""

    setup_fees_collected: int = 0
    recurring_charges_collected: int = 0
    active_subscriptions: int = 0
    trialing_subscriptions: int = 0
    past_due_subscriptions: int = 0
    revenue_minor_units: dict[str, int] = Field(
        default_factory=dict, description="Completed amounts per currency"
    )
