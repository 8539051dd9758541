"""Subscription ledger implementations."""

from vendzz.billing.ledger.base import BILLABLE_STATUSES, CycleSettlement, Ledger, is_due
from vendzz.billing.ledger.memory import InMemoryLedger
from vendzz.billing.ledger.sql import SqlLedger

__all__ = [
    "BILLABLE_STATUSES",
    "CycleSettlement",
    "InMemoryLedger",
    "Ledger",
    "SqlLedger",
    "is_due",
]
