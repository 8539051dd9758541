"""
Pagar.me gateway adapter.

Talks to the Pagar.me v5 REST API with ``httpx``. Card charges are created
as orders; the order id is the transaction reference reported back by
``order.*`` and ``charge.*`` webhooks.
"""

import hashlib
import hmac
import json
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog

from vendzz.billing.exceptions import GatewayError, InvalidSignatureError
from vendzz.billing.gateways.base import (
    CustomerRef,
    GatewayAdapter,
    SubscriptionRef,
    TransactionRef,
    WebhookEvent,
    WebhookEventType,
)
from vendzz.billing.models import TransactionStatus

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.pagar.me/core/v5"

_ORDER_STATUS = {
    "paid": TransactionStatus.COMPLETED,
    "pending": TransactionStatus.PENDING,
    "processing": TransactionStatus.PENDING,
    "failed": TransactionStatus.FAILED,
    "canceled": TransactionStatus.FAILED,
}

_EVENT_TYPES = {
    "order.paid": WebhookEventType.PAYMENT_CONFIRMED,
    "charge.paid": WebhookEventType.PAYMENT_CONFIRMED,
    "order.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "charge.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "subscription.canceled": WebhookEventType.SUBSCRIPTION_CANCELLED,
}


class PagarmeAdapter(GatewayAdapter):
    """Pagar.me implementation of the gateway contract."""

    def __init__(
        self,
        api_key: str,
        name: str = "pagarme",
        base_url: str | None = None,
        timeout: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(name)
        self.client = client or httpx.AsyncClient(
            base_url=base_url or DEFAULT_BASE_URL,
            auth=(api_key, ""),
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        side_effecting: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayError(
                f"Pagar.me {operation} timed out",
                kind="timeout",
                retryable=not side_effecting,
                ambiguous=side_effecting,
                gateway=self.name,
            ) from e
        except httpx.TransportError as e:
            raise GatewayError(
                f"Pagar.me {operation} network error: {e}",
                kind="network",
                retryable=not side_effecting,
                ambiguous=side_effecting,
                gateway=self.name,
            ) from e

        if response.status_code == 429:
            raise GatewayError(
                "Pagar.me rate limit exceeded",
                kind="rate_limited",
                retryable=True,
                gateway=self.name,
            )
        if response.status_code >= 500:
            raise GatewayError(
                f"Pagar.me {operation} failed with HTTP {response.status_code}",
                kind="provider_error",
                retryable=not side_effecting,
                ambiguous=side_effecting,
                gateway=self.name,
            )
        return response

    def _raise_for_client_error(self, response: httpx.Response, operation: str) -> None:
        if response.status_code >= 400:
            logger.warning(
                "pagarme.request.rejected",
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayError(
                f"Pagar.me rejected {operation}: HTTP {response.status_code}",
                kind="rejected",
                gateway=self.name,
                context={"status_code": response.status_code},
            )

    async def find_or_create_customer(self, tenant_id: str, email: str, name: str) -> CustomerRef:
        email = email.strip().lower()
        code = f"{tenant_id}:{email}"

        response = await self._request(
            "GET", "/customers", "find_customer", params={"code": code, "size": 1}
        )
        self._raise_for_client_error(response, "find_customer")
        existing = response.json().get("data") or []
        if existing:
            return CustomerRef(gateway=self.name, customer_id=existing[0]["id"])

        response = await self._request(
            "POST",
            "/customers",
            "create_customer",
            json={
                "name": name,
                "email": email,
                "code": code,
                "type": "individual",
                "metadata": {"tenant_id": tenant_id},
            },
        )
        self._raise_for_client_error(response, "create_customer")
        customer_id = response.json()["id"]
        logger.info("pagarme.customer.created", customer_id=customer_id, tenant_id=tenant_id)
        return CustomerRef(gateway=self.name, customer_id=customer_id)

    async def attach_payment_method(self, customer_ref: CustomerRef, method_token: str) -> str:
        response = await self._request(
            "POST",
            f"/customers/{customer_ref.customer_id}/cards",
            "attach_payment_method",
            json={"token": method_token},
        )
        if response.status_code in (400, 402, 422):
            raise GatewayError(
                "Pagar.me rejected the card", kind="card_declined", gateway=self.name
            )
        self._raise_for_client_error(response, "attach_payment_method")
        return response.json()["id"]

    async def charge_one_time(
        self,
        customer_ref: CustomerRef,
        amount_minor_units: int,
        currency: str,
        description: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> TransactionRef:
        payment: dict[str, Any] = {
            "payment_method": "credit_card",
            "credit_card": {"recurrence": True, "operation_type": "auth_and_capture"},
        }
        if customer_ref.payment_method_id:
            payment["credit_card"]["card_id"] = customer_ref.payment_method_id

        body = {
            "customer_id": customer_ref.customer_id,
            "currency": currency.upper(),
            "items": [
                {
                    "amount": amount_minor_units,
                    "description": description,
                    "quantity": 1,
                    "code": (metadata or {}).get("transaction_id", "charge"),
                }
            ],
            "payments": [payment],
            "metadata": metadata or {},
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None

        response = await self._request(
            "POST",
            "/orders",
            "charge_one_time",
            side_effecting=True,
            json=body,
            headers=headers,
        )
        if response.status_code >= 400:
            return TransactionRef(
                gateway=self.name,
                status=TransactionStatus.FAILED,
                error_message=f"Order rejected with HTTP {response.status_code}",
                raw_status=str(response.status_code),
            )

        order = response.json()
        raw_status = order.get("status", "")
        status = _ORDER_STATUS.get(raw_status, TransactionStatus.PENDING)
        error_message = None
        if status == TransactionStatus.FAILED:
            charges = order.get("charges") or [{}]
            last = charges[0].get("last_transaction") or {}
            error_message = last.get("acquirer_message") or f"Order {raw_status}"
        return TransactionRef(
            gateway=self.name,
            reference=order.get("id"),
            status=status,
            error_message=error_message,
            raw_status=raw_status,
        )

    async def create_recurring_subscription(
        self, customer_ref: CustomerRef, plan_ref: str, trial_days: int
    ) -> SubscriptionRef:
        body: dict[str, Any] = {
            "plan_id": plan_ref,
            "customer_id": customer_ref.customer_id,
            "payment_method": "credit_card",
        }
        if customer_ref.payment_method_id:
            body["card_id"] = customer_ref.payment_method_id
        if trial_days > 0:
            body["start_at"] = (datetime.now(UTC) + timedelta(days=trial_days)).date().isoformat()

        response = await self._request(
            "POST",
            "/subscriptions",
            "create_recurring_subscription",
            side_effecting=True,
            json=body,
        )
        self._raise_for_client_error(response, "create_recurring_subscription")
        data = response.json()
        return SubscriptionRef(
            gateway=self.name, subscription_id=data["id"], status=data.get("status")
        )

    async def cancel_recurring_subscription(self, subscription_ref: str) -> None:
        response = await self._request(
            "DELETE", f"/subscriptions/{subscription_ref}", "cancel_recurring_subscription"
        )
        self._raise_for_client_error(response, "cancel_recurring_subscription")

    @staticmethod
    def sign(raw_payload: bytes, secret: str) -> str:
        digest = hmac.new(secret.encode(), raw_payload, hashlib.sha1).hexdigest()
        return f"sha1={digest}"

    def parse_webhook(
        self, raw_payload: bytes, signature_header: str | None, secret: str
    ) -> WebhookEvent:
        expected = self.sign(raw_payload, secret)
        if not signature_header or not hmac.compare_digest(expected, signature_header.strip()):
            raise InvalidSignatureError("Invalid Pagar.me webhook signature", gateway=self.name)

        payload = json.loads(raw_payload)
        raw_type = payload.get("type", "")
        data = payload.get("data") or {}
        event_type = _EVENT_TYPES.get(raw_type, WebhookEventType.UNKNOWN)

        transaction_ref = None
        subscription_ref = None
        metadata = data.get("metadata") or {}
        if raw_type.startswith("order."):
            transaction_ref = data.get("id")
        elif raw_type.startswith("charge."):
            order = data.get("order") or {}
            transaction_ref = order.get("id")
            metadata = metadata or order.get("metadata") or {}
            subscription_ref = (data.get("invoice") or {}).get("subscription_id")
        elif raw_type.startswith("subscription."):
            subscription_ref = data.get("id")

        error_message = None
        if event_type == WebhookEventType.PAYMENT_FAILED:
            last = data.get("last_transaction") or {}
            error_message = last.get("acquirer_message") or "Payment failed"

        return WebhookEvent(
            gateway=self.name,
            event_id=payload.get("id"),
            type=event_type,
            raw_type=raw_type,
            transaction_ref=transaction_ref,
            correlation_id=metadata.get("transaction_id"),
            subscription_ref=subscription_ref,
            amount_minor_units=data.get("amount"),
            currency=data.get("currency"),
            error_message=error_message,
            payload=payload,
        )
