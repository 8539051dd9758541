"""
SQLAlchemy ledger.

Every state change that must be exclusive is a single conditional
``UPDATE ... WHERE`` whose row count decides the outcome, so concurrent
sweeps and webhook deliveries on any number of processes stay consistent
without application-level locks.
"""

from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy import and_, case, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from vendzz.billing.ledger.base import CycleSettlement, Ledger
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
    TransactionType,
)
from vendzz.billing.tables import (
    CustomerTable,
    ProductTable,
    ReconciliationItemTable,
    SubscriptionTable,
    TransactionTable,
)

logger = structlog.get_logger(__name__)

_CANCELLED = SubscriptionStatus.CANCELLED.value
_PENDING = TransactionStatus.PENDING.value


def _values(model: BaseModel) -> dict[str, Any]:
    return {k: v.value if isinstance(v, Enum) else v for k, v in model.model_dump().items()}


def _due_clause(now: datetime) -> Any:
    return and_(
        SubscriptionTable.next_billing_date <= now,
        SubscriptionTable.gateway_subscription_ref.is_(None),
        or_(
            SubscriptionTable.status.in_(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value]
            ),
            and_(
                SubscriptionTable.status == SubscriptionStatus.PAST_DUE.value,
                or_(
                    SubscriptionTable.retry_after.is_(None),
                    SubscriptionTable.retry_after <= now,
                ),
            ),
        ),
    )


def _settlement_values(settlement: CycleSettlement) -> dict[str, Any]:
    values: dict[str, Any] = {
        "status": case(
            (SubscriptionTable.status == _CANCELLED, _CANCELLED),
            else_=settlement.subscription_status.value,
        ),
        "next_billing_date": settlement.next_billing_date,
        "failed_attempts": settlement.failed_attempts,
        "retry_after": settlement.retry_after,
        "updated_at": settlement.settled_at,
    }
    if settlement.last_billing_date is not None:
        values["last_billing_date"] = settlement.last_billing_date
    return values


class SqlLedger(Ledger):
    """Ledger backed by an async SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> "SqlLedger":
        return cls(async_sessionmaker(engine, expire_on_commit=False), engine=engine)

    # Products

    async def add_product(self, product: Product) -> Product:
        async with self._session_factory() as session, session.begin():
            session.add(ProductTable(**_values(product)))
        return product

    async def get_product(self, product_id: str) -> Product | None:
        async with self._session_factory() as session:
            row = await session.get(ProductTable, product_id)
            return Product.model_validate(row) if row else None

    async def update_product(
        self, product_id: str, changes: dict[str, Any], now: datetime
    ) -> Product | None:
        async with self._session_factory() as session, session.begin():
            row = await session.get(ProductTable, product_id)
            if row is None:
                return None
            for key, value in changes.items():
                setattr(row, key, value.value if isinstance(value, Enum) else value)
            row.updated_at = now
            await session.flush()
            return Product.model_validate(row)

    async def list_products(self, tenant_id: str, active_only: bool = False) -> list[Product]:
        stmt = select(ProductTable).where(ProductTable.tenant_id == tenant_id)
        if active_only:
            stmt = stmt.where(ProductTable.active.is_(True))
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt.order_by(ProductTable.created_at))).all()
            return [Product.model_validate(r) for r in rows]

    # Customers

    async def get_customer(self, customer_id: str) -> Customer | None:
        async with self._session_factory() as session:
            row = await session.get(CustomerTable, customer_id)
            return Customer.model_validate(row) if row else None

    async def find_customer(self, tenant_id: str, email: str, gateway_id: str) -> Customer | None:
        stmt = select(CustomerTable).where(
            CustomerTable.tenant_id == tenant_id,
            CustomerTable.email == email.strip().lower(),
            CustomerTable.gateway_id == gateway_id,
        )
        async with self._session_factory() as session:
            row = (await session.scalars(stmt)).first()
            return Customer.model_validate(row) if row else None

    async def add_customer(self, customer: Customer) -> Customer:
        async with self._session_factory() as session, session.begin():
            session.add(CustomerTable(**_values(customer)))
        return customer

    # Subscriptions

    async def create_subscription(
        self,
        subscription: Subscription,
        customer: Customer | None = None,
        setup_fee_transaction: BillingTransaction | None = None,
    ) -> Subscription:
        async with self._session_factory() as session, session.begin():
            if customer is not None:
                # Upsert: a returning customer may carry a new default payment method.
                await session.merge(CustomerTable(**_values(customer)))
                await session.flush()
            session.add(SubscriptionTable(**_values(subscription)))
            if setup_fee_transaction is not None:
                session.add(TransactionTable(**_values(setup_fee_transaction)))
        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        async with self._session_factory() as session:
            row = await session.get(SubscriptionTable, subscription_id)
            return Subscription.model_validate(row) if row else None

    async def find_subscription_by_gateway_ref(
        self, gateway_id: str, gateway_subscription_ref: str
    ) -> Subscription | None:
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.gateway_id == gateway_id,
            SubscriptionTable.gateway_subscription_ref == gateway_subscription_ref,
        )
        async with self._session_factory() as session:
            row = (await session.scalars(stmt)).first()
            return Subscription.model_validate(row) if row else None

    async def list_subscriptions(
        self, tenant_id: str, status: SubscriptionStatus | None = None
    ) -> list[Subscription]:
        stmt = select(SubscriptionTable).where(SubscriptionTable.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(SubscriptionTable.status == status.value)
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt.order_by(SubscriptionTable.created_at))).all()
            return [Subscription.model_validate(r) for r in rows]

    async def find_due_subscriptions(
        self, now: datetime, limit: int, stale_before: datetime | None = None
    ) -> list[Subscription]:
        stmt = select(SubscriptionTable).where(_due_clause(now))
        if stale_before is not None:
            stmt = stmt.where(
                or_(
                    SubscriptionTable.claim_token.is_(None),
                    SubscriptionTable.claimed_at.is_(None),
                    SubscriptionTable.claimed_at <= stale_before,
                )
            )
        stmt = stmt.order_by(SubscriptionTable.next_billing_date, SubscriptionTable.id).limit(limit)
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
            return [Subscription.model_validate(r) for r in rows]

    async def claim_subscription(
        self,
        subscription_id: str,
        expected_next_billing_date: datetime,
        claim_token: str,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        pending_charge = exists().where(
            TransactionTable.subscription_id == SubscriptionTable.id,
            TransactionTable.type == TransactionType.RECURRING.value,
            TransactionTable.status == _PENDING,
        )
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.id == subscription_id,
                SubscriptionTable.next_billing_date == expected_next_billing_date,
                _due_clause(now),
                or_(
                    SubscriptionTable.claim_token.is_(None),
                    and_(
                        or_(
                            SubscriptionTable.claimed_at.is_(None),
                            SubscriptionTable.claimed_at <= stale_before,
                        ),
                        ~pending_charge,
                    ),
                ),
            )
            .values(claim_token=claim_token, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def release_claim(self, subscription_id: str, claim_token: str) -> bool:
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.id == subscription_id,
                SubscriptionTable.claim_token == claim_token,
            )
            .values(claim_token=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def cancel_subscription(
        self, subscription_id: str, reason: str | None, now: datetime
    ) -> tuple[Subscription, bool] | None:
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.id == subscription_id,
                SubscriptionTable.status != _CANCELLED,
            )
            .values(
                status=_CANCELLED,
                cancelled_at=now,
                cancellation_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            row = await session.get(SubscriptionTable, subscription_id, populate_existing=True)
            if row is None:
                return None
            return Subscription.model_validate(row), result.rowcount == 1

    # Transactions

    async def add_transaction(self, transaction: BillingTransaction) -> BillingTransaction:
        async with self._session_factory() as session, session.begin():
            session.add(TransactionTable(**_values(transaction)))
        return transaction

    async def get_transaction(self, transaction_id: str) -> BillingTransaction | None:
        async with self._session_factory() as session:
            row = await session.get(TransactionTable, transaction_id)
            return BillingTransaction.model_validate(row) if row else None

    async def find_transaction_by_gateway_ref(
        self, gateway_id: str, gateway_transaction_ref: str
    ) -> BillingTransaction | None:
        stmt = select(TransactionTable).where(
            TransactionTable.gateway_id == gateway_id,
            TransactionTable.gateway_transaction_ref == gateway_transaction_ref,
        )
        async with self._session_factory() as session:
            row = (await session.scalars(stmt)).first()
            return BillingTransaction.model_validate(row) if row else None

    async def set_transaction_ref(
        self, transaction_id: str, gateway_transaction_ref: str, now: datetime
    ) -> None:
        stmt = (
            update(TransactionTable)
            .where(TransactionTable.id == transaction_id)
            .values(gateway_transaction_ref=gateway_transaction_ref, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            await session.execute(stmt)

    async def transition_transaction(
        self,
        transaction_id: str,
        status: TransactionStatus,
        now: datetime,
        error_message: str | None = None,
    ) -> bool:
        stmt = (
            update(TransactionTable)
            .where(TransactionTable.id == transaction_id, TransactionTable.status == _PENDING)
            .values(status=status.value, error_message=error_message, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def settle_cycle(
        self,
        transaction_id: str,
        settlement: CycleSettlement,
        claim_token: str | None = None,
    ) -> bool:
        async with self._session_factory() as session:
            settled = await self._settle(session, transaction_id, settlement, claim_token)
            if settled:
                await session.commit()
            else:
                await session.rollback()
            return settled

    async def _settle(
        self,
        session: AsyncSession,
        transaction_id: str,
        settlement: CycleSettlement,
        claim_token: str | None,
    ) -> bool:
        transaction = await session.get(TransactionTable, transaction_id)
        if transaction is None:
            return False
        subscription_id = transaction.subscription_id
        billing_date = transaction.billing_date

        transaction_values: dict[str, Any] = {
            "status": settlement.transaction_status.value,
            "error_message": settlement.error_message,
            "updated_at": settlement.settled_at,
        }
        if settlement.gateway_transaction_ref:
            transaction_values["gateway_transaction_ref"] = settlement.gateway_transaction_ref
        result = await session.execute(
            update(TransactionTable)
            .where(TransactionTable.id == transaction_id, TransactionTable.status == _PENDING)
            .values(**transaction_values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        release = {"claim_token": None, "claimed_at": None}
        if claim_token is not None:
            result = await session.execute(
                update(SubscriptionTable)
                .where(
                    SubscriptionTable.id == subscription_id,
                    SubscriptionTable.claim_token == claim_token,
                )
                .values(**release)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

        if billing_date is not None:
            await session.execute(
                update(SubscriptionTable)
                .where(
                    SubscriptionTable.id == subscription_id,
                    SubscriptionTable.next_billing_date == billing_date,
                )
                .values(**_settlement_values(settlement), **release)
                .execution_options(synchronize_session=False)
            )
        return True

    async def record_delegated_charge(
        self, transaction: BillingTransaction, settlement: CycleSettlement
    ) -> bool:
        async with self._session_factory() as session:
            try:
                session.add(TransactionTable(**_values(transaction)))
                await session.flush()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "ledger.delegated_charge.duplicate",
                    gateway_id=transaction.gateway_id,
                    gateway_transaction_ref=transaction.gateway_transaction_ref,
                )
                return False

            result = await session.execute(
                update(SubscriptionTable)
                .where(SubscriptionTable.id == transaction.subscription_id)
                .values(**_settlement_values(settlement))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            await session.commit()
            return True

    async def list_transactions(
        self, tenant_id: str | None = None, subscription_id: str | None = None
    ) -> list[BillingTransaction]:
        stmt = select(TransactionTable)
        if tenant_id is not None:
            stmt = stmt.where(TransactionTable.tenant_id == tenant_id)
        if subscription_id is not None:
            stmt = stmt.where(TransactionTable.subscription_id == subscription_id)
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt.order_by(TransactionTable.created_at))).all()
            return [BillingTransaction.model_validate(r) for r in rows]

    # Reconciliation queue

    async def add_reconciliation_item(self, item: ReconciliationItem) -> ReconciliationItem:
        async with self._session_factory() as session, session.begin():
            session.add(ReconciliationItemTable(**_values(item)))
        return item

    async def get_reconciliation_item(self, item_id: str) -> ReconciliationItem | None:
        async with self._session_factory() as session:
            row = await session.get(ReconciliationItemTable, item_id)
            return ReconciliationItem.model_validate(row) if row else None

    async def list_reconciliation_items(
        self,
        tenant_id: str | None = None,
        status: ReconciliationStatus | None = None,
    ) -> list[ReconciliationItem]:
        stmt = select(ReconciliationItemTable)
        if tenant_id is not None:
            stmt = stmt.where(ReconciliationItemTable.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(ReconciliationItemTable.status == status.value)
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt.order_by(ReconciliationItemTable.created_at))).all()
            return [ReconciliationItem.model_validate(r) for r in rows]

    async def resolve_reconciliation_item(
        self, item_id: str, resolution: str, resolved_by: str, now: datetime
    ) -> ReconciliationItem | None:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(ReconciliationItemTable)
                .where(
                    ReconciliationItemTable.id == item_id,
                    ReconciliationItemTable.status == ReconciliationStatus.OPEN.value,
                )
                .values(
                    status=ReconciliationStatus.RESOLVED.value,
                    resolution=resolution,
                    resolved_by=resolved_by,
                    resolved_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            row = await session.get(ReconciliationItemTable, item_id, populate_existing=True)
            return ReconciliationItem.model_validate(row) if row else None

    # Reporting

    async def summarize(self, tenant_id: str | None = None) -> BillingSummary:
        txn_stmt = (
            select(
                TransactionTable.type,
                TransactionTable.currency,
                func.count(),
                func.sum(TransactionTable.amount_minor_units),
            )
            .where(TransactionTable.status == TransactionStatus.COMPLETED.value)
            .group_by(TransactionTable.type, TransactionTable.currency)
        )
        sub_stmt = select(SubscriptionTable.status, func.count()).group_by(
            SubscriptionTable.status
        )
        if tenant_id is not None:
            txn_stmt = txn_stmt.where(TransactionTable.tenant_id == tenant_id)
            sub_stmt = sub_stmt.where(SubscriptionTable.tenant_id == tenant_id)

        summary = BillingSummary()
        revenue: dict[str, int] = {}
        async with self._session_factory() as session:
            for txn_type, currency, count, total in (await session.execute(txn_stmt)).all():
                if txn_type == TransactionType.SETUP_FEE.value:
                    summary.setup_fees_collected += count
                else:
                    summary.recurring_charges_collected += count
                revenue[currency] = revenue.get(currency, 0) + int(total or 0)

            counts = dict((await session.execute(sub_stmt)).all())
        summary.active_subscriptions = counts.get(SubscriptionStatus.ACTIVE.value, 0)
        summary.trialing_subscriptions = counts.get(SubscriptionStatus.TRIALING.value, 0)
        summary.past_due_subscriptions = counts.get(SubscriptionStatus.PAST_DUE.value, 0)
        summary.revenue_minor_units = revenue
        return summary

    async def ping(self) -> bool:
        async with self._session_factory() as session:
            await session.execute(select(1))
        return True

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
