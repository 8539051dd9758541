"""Tests for gateway selection and adapter construction."""

import pytest

from vendzz.billing.exceptions import BillingConfigurationError
from vendzz.billing.gateways import (
    GatewayRegistry,
    NullAdapter,
    PagarmeAdapter,
    build_adapter,
)
from vendzz.billing.settings import GatewayConfig, GatewayKind

from tests.conftest import make_settings

pytestmark = pytest.mark.unit


def make_registry(**kwargs) -> GatewayRegistry:
    configs = [
        GatewayConfig(name="stripe", kind=GatewayKind.NULL, priority=10, webhook_secret="s1"),
        GatewayConfig(
            name="pagarme",
            kind=GatewayKind.NULL,
            priority=20,
            markets=["pt-BR", "BR"],
            webhook_secret="s2",
        ),
        GatewayConfig(name="mercado", kind=GatewayKind.NULL, priority=30, markets=["es"]),
    ]
    adapters = {c.name: NullAdapter(c.name) for c in configs}
    return GatewayRegistry(configs, adapters, **kwargs)


class TestSelect:
    @pytest.mark.parametrize(
        ("locale", "expected"),
        [
            ("pt-BR", "pagarme"),
            ("pt_br", "pagarme"),
            ("en-BR", "pagarme"),
            ("es-AR", "mercado"),
            ("en-US", "stripe"),
            (None, "stripe"),
        ],
    )
    def test_locale_then_priority(self, locale, expected):
        assert make_registry().select("t1", locale).name == expected

    def test_tenant_restriction(self):
        registry = make_registry(tenant_gateways={"t1": ["stripe", "mercado"]})

        assert registry.select("t1", "pt-BR").name == "stripe"
        assert registry.select("t2", "pt-BR").name == "pagarme"

    def test_priority_ties_break_on_name(self):
        configs = [
            GatewayConfig(name="zeta", kind=GatewayKind.NULL, priority=1),
            GatewayConfig(name="alpha", kind=GatewayKind.NULL, priority=1),
        ]
        registry = GatewayRegistry(configs, {c.name: NullAdapter(c.name) for c in configs})

        assert registry.select("t1").name == "alpha"

    def test_no_gateway_for_tenant(self):
        registry = make_registry(tenant_gateways={"t1": []})

        with pytest.raises(BillingConfigurationError):
            registry.select("t1")


class TestSecrets:
    def test_tenant_secret_overrides_default(self):
        registry = make_registry(webhook_secrets={"t1": {"stripe": "tenant-secret"}})

        assert registry.secret_for("t1", "stripe") == "tenant-secret"
        assert registry.secret_for("t2", "stripe") == "s1"

    def test_missing_secret(self):
        with pytest.raises(BillingConfigurationError):
            make_registry().secret_for("t1", "mercado")


class TestConstruction:
    def test_unknown_gateway_name(self):
        with pytest.raises(BillingConfigurationError):
            make_registry().get("paypal")

    def test_requires_at_least_one_gateway(self):
        with pytest.raises(BillingConfigurationError):
            GatewayRegistry([], {})

    def test_duplicate_names_rejected(self):
        configs = [
            GatewayConfig(name="a", kind=GatewayKind.NULL),
            GatewayConfig(name="a", kind=GatewayKind.NULL),
        ]
        with pytest.raises(BillingConfigurationError):
            GatewayRegistry(configs, {"a": NullAdapter("a")})

    def test_real_gateway_requires_api_key(self):
        with pytest.raises(BillingConfigurationError):
            build_adapter(GatewayConfig(name="pg", kind=GatewayKind.PAGARME))

    @pytest.mark.asyncio
    async def test_build_pagarme_adapter(self):
        adapter = build_adapter(
            GatewayConfig(
                name="pg",
                kind=GatewayKind.PAGARME,
                api_key="sk_test",
                base_url="https://api.test/core/v5",
            ),
            timeout=5.0,
        )

        assert isinstance(adapter, PagarmeAdapter)
        assert str(adapter.client.base_url).startswith("https://api.test/core/v5")
        await adapter.aclose()

    def test_from_settings(self):
        settings = make_settings(
            gateways={
                "gateways": [
                    {"name": "null", "kind": "null", "is_async": True, "webhook_secret": "x"}
                ]
            }
        )

        registry = GatewayRegistry.from_settings(settings)

        adapter = registry.get("null")
        assert isinstance(adapter, NullAdapter)
        assert adapter.settles_asynchronously is True
        assert registry.names == ["null"]
