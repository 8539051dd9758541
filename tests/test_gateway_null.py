"""Tests for the in-process gateway and the gateway call timeout."""

import asyncio
import json

import pytest

from vendzz.billing.exceptions import GatewayError, InvalidSignatureError
from vendzz.billing.gateways import (
    CustomerRef,
    NullAdapter,
    WebhookEventType,
    call_gateway,
)
from vendzz.billing.models import TransactionStatus

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_find_or_create_customer_is_idempotent_per_email():
    adapter = NullAdapter()

    first = await adapter.find_or_create_customer("t1", "Ana@Example.com", "Ana")
    second = await adapter.find_or_create_customer("t1", "ana@example.com ", "Ana")
    other_tenant = await adapter.find_or_create_customer("t2", "ana@example.com", "Ana")

    assert first == second
    assert other_tenant != first
    assert adapter.customer_creations == 2


@pytest.mark.asyncio
async def test_declined_token_is_rejected_on_attach():
    adapter = NullAdapter()
    ref = await adapter.find_or_create_customer("t1", "ana@example.com", "Ana")
    adapter.decline("tok_declined")

    with pytest.raises(GatewayError) as exc_info:
        await adapter.attach_payment_method(ref, "tok_declined")

    assert exc_info.value.kind == "card_declined"
    assert await adapter.attach_payment_method(ref, "tok_ok") == "tok_ok"


@pytest.mark.asyncio
async def test_charge_outcomes_follow_queue_then_default():
    adapter = NullAdapter()
    ref = CustomerRef(gateway="null", customer_id="c1")
    adapter.queue_charge("failed", "pending")

    failed = await adapter.charge_one_time(ref, 100, "BRL", "fee")
    pending = await adapter.charge_one_time(ref, 100, "BRL", "fee")
    completed = await adapter.charge_one_time(
        ref, 100, "BRL", "fee", metadata={"transaction_id": "txn_1"}, idempotency_key="k1"
    )

    assert failed.status == TransactionStatus.FAILED
    assert pending.status == TransactionStatus.PENDING
    assert completed.status == TransactionStatus.COMPLETED
    assert adapter.charges[-1]["metadata"] == {"transaction_id": "txn_1"}
    assert adapter.charges[-1]["idempotency_key"] == "k1"


@pytest.mark.asyncio
async def test_asynchronous_adapter_charges_stay_pending():
    adapter = NullAdapter(settles_asynchronously=True)
    ref = CustomerRef(gateway="null", customer_id="c1")

    result = await adapter.charge_one_time(ref, 100, "BRL", "fee")

    assert result.status == TransactionStatus.PENDING
    assert result.reference


@pytest.mark.asyncio
async def test_queued_timeout_is_ambiguous():
    adapter = NullAdapter()
    adapter.queue_charge("timeout")

    with pytest.raises(GatewayError) as exc_info:
        await adapter.charge_one_time(CustomerRef(gateway="null", customer_id="c1"), 1, "BRL", "x")

    assert exc_info.value.ambiguous is True


class TestParseWebhook:
    def test_valid_signature(self):
        adapter = NullAdapter()
        raw = json.dumps(
            {
                "id": "evt_1",
                "type": "payment.confirmed",
                "data": {"transaction_ref": "ch_1", "correlation_id": "txn_1", "amount": 2990},
            }
        ).encode()

        event = adapter.parse_webhook(raw, NullAdapter.sign(raw, "secret"), "secret")

        assert event.type == WebhookEventType.PAYMENT_CONFIRMED
        assert event.transaction_ref == "ch_1"
        assert event.correlation_id == "txn_1"
        assert event.amount_minor_units == 2990

    def test_unknown_type_maps_to_unknown(self):
        adapter = NullAdapter()
        raw = b'{"type": "customer.updated"}'

        event = adapter.parse_webhook(raw, NullAdapter.sign(raw, "s"), "s")

        assert event.type == WebhookEventType.UNKNOWN
        assert event.raw_type == "customer.updated"

    @pytest.mark.parametrize("signature", [None, "", "deadbeef"])
    def test_bad_signature_rejected(self, signature):
        with pytest.raises(InvalidSignatureError):
            NullAdapter().parse_webhook(b'{"type": "payment.confirmed"}', signature, "secret")


class TestCallGateway:
    @pytest.mark.asyncio
    async def test_timeout_on_read_is_retryable(self):
        adapter = NullAdapter()

        with pytest.raises(GatewayError) as exc_info:
            await call_gateway(adapter, "find_customer", asyncio.sleep(1), timeout=0.01)

        assert exc_info.value.kind == "timeout"
        assert exc_info.value.retryable is True
        assert exc_info.value.ambiguous is False

    @pytest.mark.asyncio
    async def test_timeout_on_charge_is_ambiguous(self):
        adapter = NullAdapter()

        with pytest.raises(GatewayError) as exc_info:
            await call_gateway(
                adapter, "charge_one_time", asyncio.sleep(1), timeout=0.01, side_effecting=True
            )

        assert exc_info.value.retryable is False
        assert exc_info.value.ambiguous is True

    @pytest.mark.asyncio
    async def test_result_passes_through(self):
        async def answer():
            return 42

        assert await call_gateway(NullAdapter(), "op", answer(), timeout=1) == 42
