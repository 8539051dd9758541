"""
Billing composition root and FastAPI dependencies.

Gateways, ledger and services are built once per process and injected;
nothing in the engine reaches for module-level singletons.
"""

import hmac
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from vendzz.billing.catalog import ProductCatalogService
from vendzz.billing.db import create_engine_from_settings
from vendzz.billing.gateways import GatewayRegistry
from vendzz.billing.ledger import Ledger, SqlLedger
from vendzz.billing.lifecycle import SubscriptionLifecycleManager
from vendzz.billing.metrics import BillingMetrics, get_billing_metrics
from vendzz.billing.models import utcnow
from vendzz.billing.reconciliation import ReconciliationQueue
from vendzz.billing.settings import Settings
from vendzz.billing.sweep import BillingSweepProcessor
from vendzz.billing.webhooks import WebhookReconciler


@dataclass
class BillingContainer:
    settings: Settings
    ledger: Ledger
    gateways: GatewayRegistry
    reconciliation: ReconciliationQueue
    lifecycle: SubscriptionLifecycleManager
    sweep: BillingSweepProcessor
    webhooks: WebhookReconciler
    catalog: ProductCatalogService

    @classmethod
    def build(
        cls,
        settings: Settings,
        ledger: Ledger | None = None,
        gateways: GatewayRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: BillingMetrics | None = None,
    ) -> "BillingContainer":
        """Wire the engine; the SQL ledger and configured gateways are the defaults."""
        if ledger is None:
            ledger = SqlLedger.from_engine(create_engine_from_settings(settings))
        gateways = gateways or GatewayRegistry.from_settings(settings)
        metrics = metrics or get_billing_metrics()

        reconciliation = ReconciliationQueue(ledger, clock=clock, metrics=metrics)
        lifecycle = SubscriptionLifecycleManager(
            ledger,
            gateways,
            settings,
            clock=clock,
            reconciliation=reconciliation,
            metrics=metrics,
        )
        return cls(
            settings=settings,
            ledger=ledger,
            gateways=gateways,
            reconciliation=reconciliation,
            lifecycle=lifecycle,
            sweep=BillingSweepProcessor(ledger, lifecycle, settings, clock=clock, metrics=metrics),
            webhooks=WebhookReconciler(
                ledger, gateways, lifecycle, reconciliation=reconciliation, metrics=metrics
            ),
            catalog=ProductCatalogService(ledger, settings, clock=clock),
        )

    async def aclose(self) -> None:
        await self.gateways.aclose()
        await self.ledger.close()


def get_container(request: Request) -> BillingContainer:
    """Dependency returning the container attached to the application."""
    container = getattr(request.app.state, "billing", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing engine is not initialised",
        )
    return container


def verify_sweep_secret(
    container: Annotated[BillingContainer, Depends(get_container)],
    x_sweep_secret: Annotated[str | None, Header()] = None,
) -> None:
    """Constant-time check of the shared secret guarding operator endpoints."""
    expected = container.settings.sweep.secret
    if not x_sweep_secret or not hmac.compare_digest(
        x_sweep_secret.encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing sweep secret",
        )
