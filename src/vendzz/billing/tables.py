"""
Billing database tables.

Column names mirror the fields of the Pydantic models in
``vendzz.billing.models`` so rows convert with ``model_validate``.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from vendzz.billing.db import Base, StrictTenantMixin, TimestampMixin, UTCDateTime


class BillingSQLModel(Base, TimestampMixin, StrictTenantMixin):
    """Base SQLAlchemy model for billing tables."""

    __abstract__ = True

    id: Mapped[str] = mapped_column(String(50), primary_key=True)


class ProductTable(BillingSQLModel):
    """SQLAlchemy table for products."""

    __tablename__ = "billing_products"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    recurrence: Mapped[str] = mapped_column(String(20), nullable=False)
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    setup_fee_minor_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    gateway_plan_refs: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (Index("ix_billing_products_tenant_active", "tenant_id", "active"),)


class CustomerTable(BillingSQLModel):
    """SQLAlchemy table for gateway-bound customers."""

    __tablename__ = "billing_customers"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    gateway_id: Mapped[str] = mapped_column(String(50), nullable=False)
    gateway_customer_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    default_payment_method_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    locale: Mapped[str | None] = mapped_column(String(35), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "email", "gateway_id", name="uq_billing_customers_tenant_email_gateway"
        ),
    )


class SubscriptionTable(BillingSQLModel):
    """SQLAlchemy table for subscriptions."""

    __tablename__ = "billing_subscriptions"

    product_id: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(50), nullable=False)

    # trialing, active, past_due, cancelled
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    trial_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    trial_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    next_billing_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Terms copied from the product at purchase
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    setup_fee_minor_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    gateway_id: Mapped[str] = mapped_column(String(50), nullable=False)
    gateway_subscription_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Sweep claim and retry bookkeeping
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_after: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index(
            "ix_billing_subscriptions_tenant_status_next",
            "tenant_id",
            "status",
            "next_billing_date",
        ),
        Index("ix_billing_subscriptions_due", "status", "next_billing_date"),
        Index("ix_billing_subscriptions_gateway_ref", "gateway_id", "gateway_subscription_ref"),
    )


class TransactionTable(BillingSQLModel):
    """SQLAlchemy table for billing transactions."""

    __tablename__ = "billing_transactions"

    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(50), nullable=False)
    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway_id: Mapped[str] = mapped_column(String(50), nullable=False)
    gateway_transaction_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        # NULL refs are distinct, so only known gateway refs are unique.
        UniqueConstraint(
            "gateway_id", "gateway_transaction_ref", name="uq_billing_transactions_gateway_ref"
        ),
        Index("ix_billing_transactions_subscription", "subscription_id", "type", "status"),
        Index("ix_billing_transactions_tenant_status", "tenant_id", "status"),
    )


class ReconciliationItemTable(BillingSQLModel):
    """SQLAlchemy table for the operator reconciliation queue."""

    __tablename__ = "billing_reconciliation_items"

    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    gateway_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    gateway_transaction_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    amount_minor_units: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_billing_reconciliation_tenant_status", "tenant_id", "status"),
    )
