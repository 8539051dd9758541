"""
Billing HTTP router.

Exposes the sweep trigger, the gateway webhook endpoint, the operator
reconciliation queue, dashboard metrics and a health check.
"""

from typing import Annotated, Any, Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from vendzz.billing.dependencies import BillingContainer, get_container, verify_sweep_secret
from vendzz.billing.exceptions import BillingConfigurationError, InvalidSignatureError
from vendzz.billing.models import (
    BillingSummary,
    ReconciliationItem,
    TransactionStatus,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing")

SIGNATURE_HEADERS = ("stripe-signature", "x-hub-signature", "x-webhook-signature")


class ResolveReconciliationRequest(BaseModel):
    """Operator decision on a reconciliation item."""

    resolution: str = Field(min_length=1, description="What was done to reconcile the charge")
    resolved_by: str = Field(min_length=1, description="Operator identifier")
    transaction_status: Literal["completed", "failed"] | None = Field(
        None, description="Settle the item's pending transaction with this outcome"
    )


class ReconciliationListResponse(BaseModel):
    items: list[ReconciliationItem]
    total: int


# ==================== Sweep ====================


@router.post("/sweep", dependencies=[Depends(verify_sweep_secret)])
async def trigger_sweep(
    container: Annotated[BillingContainer, Depends(get_container)],
) -> dict[str, Any]:
    """Run one billing sweep. Requires the ``X-Sweep-Secret`` header."""
    result = await container.sweep.run()
    return result.to_response()


# ==================== Webhooks ====================


@router.post("/webhooks/{gateway}/{tenant_id}")
async def receive_webhook(
    gateway: str,
    tenant_id: str,
    request: Request,
    container: Annotated[BillingContainer, Depends(get_container)],
) -> dict[str, bool]:
    """
    Receive a gateway webhook.

    Signature failures are rejected with 400. Every verified delivery is
    acknowledged with 200, even when applying it failed internally.
    """
    raw_payload = await request.body()
    signature = next(
        (request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None
    )

    try:
        await container.webhooks.handle(gateway, tenant_id, raw_payload, signature)
    except InvalidSignatureError as e:
        logger.warning(
            "billing.webhook.invalid_signature", gateway=gateway, tenant_id=tenant_id
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e
    except BillingConfigurationError as e:
        logger.warning(
            "billing.webhook.unconfigured", gateway=gateway, tenant_id=tenant_id, error=e.message
        )
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Unknown gateway or tenant"
        ) from e
    except (KeyError, ValueError) as e:
        logger.warning("billing.webhook.malformed", gateway=gateway, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook payload"
        ) from e
    return {"received": True}


# ==================== Reconciliation ====================


@router.get(
    "/reconciliation",
    response_model=ReconciliationListResponse,
    dependencies=[Depends(verify_sweep_secret)],
)
async def list_reconciliation_items(
    container: Annotated[BillingContainer, Depends(get_container)],
    tenant_id: str | None = Query(None, description="Filter by tenant"),
) -> ReconciliationListResponse:
    """List open reconciliation items."""
    items = await container.reconciliation.list_open(tenant_id)
    return ReconciliationListResponse(items=items, total=len(items))


@router.post(
    "/reconciliation/{item_id}/resolve",
    response_model=ReconciliationItem,
    dependencies=[Depends(verify_sweep_secret)],
)
async def resolve_reconciliation_item(
    item_id: str,
    body: ResolveReconciliationRequest,
    container: Annotated[BillingContainer, Depends(get_container)],
) -> ReconciliationItem:
    """Resolve an item, optionally settling the pending transaction behind it."""
    item = await container.ledger.get_reconciliation_item(item_id)
    if item is not None and body.transaction_status and item.transaction_id:
        transaction = await container.ledger.get_transaction(item.transaction_id)
        if transaction is not None and transaction.status == TransactionStatus.PENDING:
            await container.lifecycle.settle_transaction(
                transaction,
                TransactionStatus(body.transaction_status),
                error_message=(
                    f"Settled by operator: {body.resolution}"
                    if body.transaction_status == "failed"
                    else None
                ),
            )
    return await container.reconciliation.resolve(item_id, body.resolution, body.resolved_by)


# ==================== Dashboard & health ====================


@router.get(
    "/summary", response_model=BillingSummary, dependencies=[Depends(verify_sweep_secret)]
)
async def get_billing_summary(
    container: Annotated[BillingContainer, Depends(get_container)],
    tenant_id: str | None = Query(None, description="Restrict to one tenant"),
) -> BillingSummary:
    """Collected setup fees and recurring charges, subscription counts and revenue."""
    return await container.ledger.summarize(tenant_id)


@router.get("/health")
async def health_check(
    container: Annotated[BillingContainer, Depends(get_container)],
) -> dict[str, Any]:
    try:
        database = await container.ledger.ping()
    except Exception as e:
        logger.warning("billing.health.ledger_unavailable", error=str(e))
        database = False
    return {
        "status": "healthy" if database else "degraded",
        "ledger": database,
        "gateways": container.gateways.names,
    }
