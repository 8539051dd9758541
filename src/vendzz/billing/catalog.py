"""
Product catalog service.

Products are never deleted: deactivation is a soft flag. Price changes only
affect future purchases because subscriptions copy their terms at creation.
"""

from collections.abc import Callable
from datetime import datetime

import structlog

from vendzz.billing.exceptions import ProductNotFoundError, ValidationError
from vendzz.billing.ledger import Ledger
from vendzz.billing.models import (
    Product,
    ProductCreateRequest,
    ProductUpdateRequest,
    Recurrence,
    utcnow,
)
from vendzz.billing.settings import Settings

logger = structlog.get_logger(__name__)


class ProductCatalogService:
    """Create, update, deactivate and list a tenant's products."""

    def __init__(
        self, ledger: Ledger, settings: Settings, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.ledger = ledger
        self.settings = settings
        self.clock = clock

    async def create_product(self, tenant_id: str, request: ProductCreateRequest) -> Product:
        if request.recurrence == Recurrence.NONE and request.trial_days:
            raise ValidationError(
                "One-time products cannot have a trial period",
                context={"trial_days": request.trial_days},
            )

        now = self.clock()
        try:
            product = Product(
                tenant_id=tenant_id,
                name=request.name,
                description=request.description,
                price_minor_units=request.price_minor_units,
                currency=request.currency or self.settings.billing.default_currency,
                recurrence=request.recurrence,
                trial_days=request.trial_days,
                setup_fee_minor_units=request.setup_fee_minor_units,
                gateway_plan_refs=request.gateway_plan_refs,
                created_at=now,
                updated_at=now,
            )
        except ValueError as e:
            raise ValidationError(f"Invalid product: {e}") from e

        product = await self.ledger.add_product(product)
        logger.info(
            "billing.product.created",
            product_id=product.id,
            tenant_id=tenant_id,
            recurrence=product.recurrence.value,
        )
        return product

    async def get_product(self, tenant_id: str, product_id: str) -> Product:
        product = await self.ledger.get_product(product_id)
        if product is None or product.tenant_id != tenant_id:
            raise ProductNotFoundError(f"Product {product_id} not found", product_id=product_id)
        return product

    async def update_product(
        self, tenant_id: str, product_id: str, request: ProductUpdateRequest
    ) -> Product:
        await self.get_product(tenant_id, product_id)
        # Only description may be cleared.
        changes = {
            key: value
            for key, value in request.model_dump(exclude_unset=True).items()
            if value is not None or key == "description"
        }
        if not changes:
            return await self.get_product(tenant_id, product_id)

        product = await self.ledger.update_product(product_id, changes, self.clock())
        if product is None:
            raise ProductNotFoundError(f"Product {product_id} not found", product_id=product_id)
        logger.info("billing.product.updated", product_id=product_id, fields=sorted(changes))
        return product

    async def deactivate_product(self, tenant_id: str, product_id: str) -> Product:
        return await self.update_product(
            tenant_id, product_id, ProductUpdateRequest(active=False)
        )

    async def list_products(self, tenant_id: str, active_only: bool = False) -> list[Product]:
        return await self.ledger.list_products(tenant_id, active_only=active_only)
