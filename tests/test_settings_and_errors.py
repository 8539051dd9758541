"""Tests for configuration loading and the error taxonomy."""

import pytest

from vendzz.billing.exceptions import (
    BillingError,
    ConflictError,
    GatewayError,
    InvalidSignatureError,
    PaymentMethodRejectedError,
    ProductNotFoundError,
    ReconciliationRequiredError,
    SetupFeeDeclinedError,
    ValidationError,
)
from vendzz.billing.settings import Environment, Settings, get_settings, reset_settings

pytestmark = pytest.mark.unit


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.billing.default_currency == "BRL"
        assert settings.billing.retry_backoff_hours == [24, 72, 168]
        assert settings.sweep.claim_ttl_seconds == 900
        assert settings.database.sqlalchemy_url.startswith("sqlite+aiosqlite://")

    def test_nested_environment_variables(self, monkeypatch):
        monkeypatch.setenv("SWEEP__MAX_CONCURRENCY", "25")
        monkeypatch.setenv("BILLING__DELEGATE_RECURRING_TO_GATEWAY", "true")
        monkeypatch.setenv("ENVIRONMENT", "PRODUCTION")

        settings = Settings(_env_file=None)

        assert settings.sweep.max_concurrency == 25
        assert settings.billing.delegate_recurring_to_gateway is True
        assert settings.environment == Environment.PRODUCTION
        assert settings.is_production
        assert not settings.is_testing

    def test_postgres_url_when_password_set(self):
        settings = Settings(_env_file=None, database={"password": "pw", "host": "db"})

        assert settings.database.sqlalchemy_url == "postgresql+asyncpg://vendzz:pw@db:5432/vendzz"

    def test_test_environment(self):
        settings = Settings(_env_file=None, environment="TEST")

        assert settings.is_testing
        assert not settings.is_production

    def test_singleton_reset(self):
        reset_settings()
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first
        reset_settings()


class TestErrors:
    @pytest.mark.parametrize(
        ("error", "status_code", "error_code"),
        [
            (ValidationError("bad"), 400, "VALIDATION_ERROR"),
            (ProductNotFoundError("missing", product_id="prod_1"), 404, "PRODUCT_NOT_FOUND"),
            (PaymentMethodRejectedError("no", gateway="null"), 402, "PAYMENT_METHOD_REJECTED"),
            (SetupFeeDeclinedError("no", 100, "BRL"), 402, "SETUP_FEE_DECLINED"),
            (GatewayError("down"), 502, "GATEWAY_ERROR"),
            (InvalidSignatureError("sig"), 400, "INVALID_SIGNATURE"),
            (ConflictError("busy", "sub_1"), 409, "CLAIM_CONFLICT"),
        ],
    )
    def test_status_codes(self, error, status_code, error_code):
        assert isinstance(error, BillingError)
        assert error.status_code == status_code
        assert error.error_code == error_code
        assert error.to_dict()["status_code"] == status_code

    def test_to_dict_carries_context(self):
        error = ProductNotFoundError("Product prod_1 not found", product_id="prod_1")

        payload = error.to_dict()

        assert payload["message"] == "Product prod_1 not found"
        assert payload["context"] == {"product_id": "prod_1"}
        assert payload["recovery_hint"]

    def test_gateway_error_flags_in_context(self):
        error = GatewayError("timeout", kind="timeout", ambiguous=True, gateway="stripe")

        assert error.context == {
            "kind": "timeout",
            "retryable": False,
            "ambiguous": True,
            "gateway": "stripe",
        }

    def test_reconciliation_required_keeps_gateway_facts(self):
        error = ReconciliationRequiredError(
            "write failed",
            reason="ledger_write_failed",
            tenant_id="t1",
            gateway_id="null",
            gateway_transaction_ref="ch_1",
            amount_minor_units=100,
        )

        assert error.context["gateway_transaction_ref"] == "ch_1"
        assert "currency" not in error.context
        assert error.status_code == 500
