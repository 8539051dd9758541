"""HTTP tests for the billing router."""

import json
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from vendzz.billing.gateways import NullAdapter
from vendzz.billing.main import create_app
from vendzz.billing.models import SubscriptionStatus, TransactionStatus

from tests.conftest import SWEEP_SECRET, TENANT_ID, WEBHOOK_SECRET, create_product

pytestmark = pytest.mark.integration

FEB_15 = datetime(2025, 2, 15, tzinfo=UTC)
AUTH = {"X-Sweep-Secret": SWEEP_SECRET}


@pytest.fixture
def app(settings, container):
    return create_app(settings, container)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def subscribe(container, customer, **product_overrides):
    product = await create_product(container, **product_overrides)
    return await container.lifecycle.create_subscription(
        product.id, customer, "tok_visa", TENANT_ID
    )


class TestSweepEndpoint:
    @pytest.mark.asyncio
    async def test_requires_secret(self, client):
        missing = await client.post("/api/v1/billing/sweep")
        wrong = await client.post("/api/v1/billing/sweep", headers={"X-Sweep-Secret": "nope"})

        assert missing.status_code == 401
        assert wrong.status_code == 401

    @pytest.mark.asyncio
    async def test_runs_sweep(self, client, container, clock, customer):
        await subscribe(container, customer)
        clock.set(FEB_15)

        response = await client.post("/api/v1/billing/sweep", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {
            "processed": 1,
            "successful": 1,
            "failed": 0,
            "pending": 0,
            "skipped": 0,
            "timestampUtc": "2025-02-15T00:00:00+00:00",
        }


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_valid_delivery_is_acknowledged(
        self, client, container, ledger, gateway, clock, customer
    ):
        subscription = await subscribe(container, customer)
        gateway.queue_charge("pending")
        clock.set(FEB_15)
        await container.sweep.run()
        raw = json.dumps(
            {
                "id": "evt_1",
                "type": "payment.confirmed",
                "data": {"transaction_ref": gateway.charges[-1]["reference"]},
            }
        ).encode()

        response = await client.post(
            f"/api/v1/billing/webhooks/null/{TENANT_ID}",
            content=raw,
            headers={"X-Webhook-Signature": NullAdapter.sign(raw, WEBHOOK_SECRET)},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        stored = await ledger.get_subscription(subscription.id)
        assert stored.next_billing_date == datetime(2025, 3, 15, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(self, client):
        raw = b'{"id": "evt_1", "type": "payment.confirmed", "data": {}}'

        response = await client.post(
            f"/api/v1/billing/webhooks/null/{TENANT_ID}",
            content=raw,
            headers={"X-Webhook-Signature": "forged"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_signature_is_rejected(self, client):
        response = await client.post(
            f"/api/v1/billing/webhooks/null/{TENANT_ID}", content=b"{}"
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_gateway(self, client):
        raw = b"{}"

        response = await client.post(
            f"/api/v1/billing/webhooks/paypal/{TENANT_ID}",
            content=raw,
            headers={"X-Webhook-Signature": NullAdapter.sign(raw, WEBHOOK_SECRET)},
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_malformed_payload(self, client):
        raw = b"not json"

        response = await client.post(
            f"/api/v1/billing/webhooks/null/{TENANT_ID}",
            content=raw,
            headers={"X-Webhook-Signature": NullAdapter.sign(raw, WEBHOOK_SECRET)},
        )

        assert response.status_code == 400


class TestReconciliationEndpoints:
    @pytest.mark.asyncio
    async def test_list_and_resolve_with_settlement(
        self, client, container, ledger, gateway, clock, customer
    ):
        subscription = await subscribe(container, customer)
        gateway.queue_charge("timeout")
        clock.set(FEB_15)
        await container.sweep.run()

        listed = await client.get(
            "/api/v1/billing/reconciliation", params={"tenant_id": TENANT_ID}, headers=AUTH
        )
        assert listed.status_code == 200
        body = listed.json()
        assert body["total"] == 1
        item = body["items"][0]
        assert item["reason"] == "charge_outcome_unknown"

        resolved = await client.post(
            f"/api/v1/billing/reconciliation/{item['id']}/resolve",
            json={
                "resolution": "Confirmed in the gateway dashboard",
                "resolved_by": "ops@vendzz.com",
                "transaction_status": "completed",
            },
            headers=AUTH,
        )

        assert resolved.status_code == 200
        assert resolved.json()["status"] == "resolved"
        assert resolved.json()["resolved_by"] == "ops@vendzz.com"
        transaction = await ledger.get_transaction(item["transaction_id"])
        assert transaction.status == TransactionStatus.COMPLETED
        stored = await ledger.get_subscription(subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.claim_token is None

        after = await client.get("/api/v1/billing/reconciliation", headers=AUTH)
        assert after.json() == {"items": [], "total": 0}

    @pytest.mark.asyncio
    async def test_resolve_unknown_item(self, client):
        response = await client.post(
            "/api/v1/billing/reconciliation/rec_missing/resolve",
            json={"resolution": "n/a", "resolved_by": "ops"},
            headers=AUTH,
        )

        assert response.status_code == 404
        assert response.json()["error_code"] == "RECONCILIATION_ITEM_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_resolve_requires_resolution(self, client):
        response = await client.post(
            "/api/v1/billing/reconciliation/rec_1/resolve",
            json={"resolution": "", "resolved_by": "ops"},
            headers=AUTH,
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_requires_secret(self, client):
        response = await client.get("/api/v1/billing/reconciliation")

        assert response.status_code == 401


class TestSummaryAndHealth:
    @pytest.mark.asyncio
    async def test_summary(self, client, container, clock, customer):
        await subscribe(container, customer, setup_fee_minor_units=500)
        await subscribe(container, customer, trial_days=14)
        clock.set(FEB_15)
        await container.sweep.run()

        response = await client.get(
            "/api/v1/billing/summary", params={"tenant_id": TENANT_ID}, headers=AUTH
        )

        assert response.status_code == 200
        assert response.json() == {
            "setup_fees_collected": 1,
            "recurring_charges_collected": 1,
            "active_subscriptions": 1,
            "trialing_subscriptions": 1,
            "past_due_subscriptions": 0,
            "revenue_minor_units": {"BRL": 3490},
        }

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/v1/billing/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "ledger": True, "gateways": ["null"]}

    @pytest.mark.asyncio
    async def test_health_degraded_when_ledger_is_down(self, client, ledger, monkeypatch):
        async def down():
            raise ConnectionError("no route to host")

        monkeypatch.setattr(ledger, "ping", down)

        response = await client.get("/api/v1/billing/health")

        assert response.json()["status"] == "degraded"
        assert response.json()["ledger"] is False
