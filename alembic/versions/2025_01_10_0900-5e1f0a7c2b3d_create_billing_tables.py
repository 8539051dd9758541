"""create_billing_tables

Revision ID: 5e1f0a7c2b3d
Revises:
Create Date: 2025-01-10 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "5e1f0a7c2b3d"
down_revision = None
branch_labels = None
depends_on = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(length=50), primary_key=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create products, customers, subscriptions, transactions and reconciliation items."""

    op.create_table(
        "billing_products",
        *_base_columns(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price_minor_units", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("recurrence", sa.String(length=20), nullable=False),
        sa.Column("trial_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("setup_fee_minor_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("gateway_plan_refs", sa.JSON(), nullable=False),
    )
    op.create_index(
        "ix_billing_products_tenant_active", "billing_products", ["tenant_id", "active"]
    )

    op.create_table(
        "billing_customers",
        *_base_columns(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("gateway_id", sa.String(length=50), nullable=False),
        sa.Column("gateway_customer_ref", sa.String(length=255), nullable=False),
        sa.Column("default_payment_method_ref", sa.String(length=255), nullable=True),
        sa.Column("locale", sa.String(length=35), nullable=True),
        sa.UniqueConstraint(
            "tenant_id", "email", "gateway_id", name="uq_billing_customers_tenant_email_gateway"
        ),
    )

    op.create_table(
        "billing_subscriptions",
        *_base_columns(),
        sa.Column("product_id", sa.String(length=50), nullable=False),
        sa.Column("customer_id", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_cycle", sa.String(length=20), nullable=False),
        sa.Column("amount_minor_units", sa.Integer(), nullable=False),
        sa.Column("setup_fee_minor_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("gateway_id", sa.String(length=50), nullable=False),
        sa.Column("gateway_subscription_ref", sa.String(length=255), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("claim_token", sa.String(length=64), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_after", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_billing_subscriptions_tenant_status_next",
        "billing_subscriptions",
        ["tenant_id", "status", "next_billing_date"],
    )
    op.create_index(
        "ix_billing_subscriptions_due", "billing_subscriptions", ["status", "next_billing_date"]
    )
    op.create_index(
        "ix_billing_subscriptions_gateway_ref",
        "billing_subscriptions",
        ["gateway_id", "gateway_subscription_ref"],
    )

    op.create_table(
        "billing_transactions",
        *_base_columns(),
        sa.Column("subscription_id", sa.String(length=50), nullable=False),
        sa.Column("customer_id", sa.String(length=50), nullable=False),
        sa.Column("amount_minor_units", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("gateway_id", sa.String(length=50), nullable=False),
        sa.Column("gateway_transaction_ref", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "gateway_id", "gateway_transaction_ref", name="uq_billing_transactions_gateway_ref"
        ),
    )
    op.create_index(
        "ix_billing_transactions_subscription",
        "billing_transactions",
        ["subscription_id", "type", "status"],
    )
    op.create_index(
        "ix_billing_transactions_tenant_status", "billing_transactions", ["tenant_id", "status"]
    )

    op.create_table(
        "billing_reconciliation_items",
        *_base_columns(),
        sa.Column("reason", sa.String(length=50), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("gateway_id", sa.String(length=50), nullable=True),
        sa.Column("gateway_transaction_ref", sa.String(length=255), nullable=True),
        sa.Column("subscription_id", sa.String(length=50), nullable=True),
        sa.Column("transaction_id", sa.String(length=50), nullable=True),
        sa.Column("amount_minor_units", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.String(length=255), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_billing_reconciliation_tenant_status",
        "billing_reconciliation_items",
        ["tenant_id", "status"],
    )


def downgrade() -> None:
    """Drop the billing tables."""
    op.drop_index("ix_billing_reconciliation_tenant_status", "billing_reconciliation_items")
    op.drop_table("billing_reconciliation_items")
    op.drop_index("ix_billing_transactions_tenant_status", "billing_transactions")
    op.drop_index("ix_billing_transactions_subscription", "billing_transactions")
    op.drop_table("billing_transactions")
    op.drop_index("ix_billing_subscriptions_gateway_ref", "billing_subscriptions")
    op.drop_index("ix_billing_subscriptions_due", "billing_subscriptions")
    op.drop_index("ix_billing_subscriptions_tenant_status_next", "billing_subscriptions")
    op.drop_table("billing_subscriptions")
    op.drop_table("billing_customers")
    op.drop_index("ix_billing_products_tenant_active", "billing_products")
    op.drop_table("billing_products")
