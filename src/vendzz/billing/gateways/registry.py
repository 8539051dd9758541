"""
Gateway registry.

Built once at startup from ``GatewaySettings``; resolves which gateway a new
customer should use and which adapter owns a stored ``gateway_id``.
"""

import structlog

from vendzz.billing.exceptions import BillingConfigurationError
from vendzz.billing.gateways.base import GatewayAdapter
from vendzz.billing.gateways.null import NullAdapter
from vendzz.billing.gateways.pagarme import PagarmeAdapter
from vendzz.billing.gateways.stripe import StripeAdapter
from vendzz.billing.settings import GatewayConfig, GatewayKind, Settings

logger = structlog.get_logger(__name__)


def build_adapter(config: GatewayConfig, timeout: float = 20.0) -> GatewayAdapter:
    """Instantiate the adapter described by ``config``."""
    if config.kind == GatewayKind.NULL:
        return NullAdapter(name=config.name, settles_asynchronously=config.is_async)

    if not config.api_key:
        raise BillingConfigurationError(
            f"Gateway '{config.name}' has no API key configured",
            config_key=f"GATEWAYS__GATEWAYS[{config.name}].API_KEY",
        )
    if config.kind == GatewayKind.STRIPE:
        return StripeAdapter(api_key=config.api_key, name=config.name)
    if config.kind == GatewayKind.PAGARME:
        return PagarmeAdapter(
            api_key=config.api_key,
            name=config.name,
            base_url=config.base_url,
            timeout=timeout,
        )
    raise BillingConfigurationError(f"Unsupported gateway kind: {config.kind}")


def _locale_keys(locale: str | None) -> list[str]:
    """``pt-BR`` -> ``["pt-br", "br", "pt"]``: full tag, country, language."""
    if not locale:
        return []
    tag = locale.strip().replace("_", "-").lower()
    parts = tag.split("-")
    keys = [tag]
    if len(parts) > 1:
        keys.append(parts[-1])
    keys.append(parts[0])
    return list(dict.fromkeys(keys))


class GatewayRegistry:
    """Name -> adapter mapping plus deterministic gateway selection."""

    def __init__(
        self,
        configs: list[GatewayConfig],
        adapters: dict[str, GatewayAdapter],
        tenant_gateways: dict[str, list[str]] | None = None,
        webhook_secrets: dict[str, dict[str, str]] | None = None,
    ) -> None:
        if not configs:
            raise BillingConfigurationError(
                "At least one payment gateway must be configured",
                config_key="GATEWAYS__GATEWAYS",
            )
        names = [c.name for c in configs]
        if len(set(names)) != len(names):
            raise BillingConfigurationError("Gateway names must be unique")
        missing = set(names) - set(adapters)
        if missing:
            raise BillingConfigurationError(f"No adapter for gateways: {sorted(missing)}")

        self._configs = {c.name: c for c in configs}
        self._adapters = dict(adapters)
        self._tenant_gateways = tenant_gateways or {}
        self._webhook_secrets = webhook_secrets or {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayRegistry":
        configs = settings.gateways.gateways
        adapters = {
            c.name: build_adapter(c, timeout=settings.gateways.timeout_seconds) for c in configs
        }
        logger.info("gateway.registry.built", gateways=sorted(adapters))
        return cls(
            configs,
            adapters,
            tenant_gateways=settings.gateways.tenant_gateways,
            webhook_secrets=settings.gateways.webhook_secrets,
        )

    @property
    def names(self) -> list[str]:
        return sorted(self._adapters)

    def get(self, name: str) -> GatewayAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise BillingConfigurationError(
                f"Unknown payment gateway: {name}", config_key="GATEWAYS__GATEWAYS"
            ) from None

    def enabled_for(self, tenant_id: str) -> list[GatewayConfig]:
        allowed = self._tenant_gateways.get(tenant_id)
        configs = [
            c for c in self._configs.values() if allowed is None or c.name in allowed
        ]
        return sorted(configs, key=lambda c: (c.priority, c.name))

    def select(self, tenant_id: str, locale: str | None = None) -> GatewayAdapter:
        """
        Choose the gateway for a new customer.

        Among gateways enabled for the tenant, a market match on the full
        locale tag wins over a country match, which wins over a language
        match; otherwise the highest-priority gateway is used.
        """
        candidates = self.enabled_for(tenant_id)
        if not candidates:
            raise BillingConfigurationError(
                f"No payment gateway enabled for tenant {tenant_id}",
                config_key="GATEWAYS__TENANT_GATEWAYS",
            )

        for key in _locale_keys(locale):
            for config in candidates:
                if key in (m.strip().replace("_", "-").lower() for m in config.markets):
                    return self._adapters[config.name]
        return self._adapters[candidates[0].name]

    def secret_for(self, tenant_id: str, gateway_name: str) -> str:
        """Webhook signing secret for a tenant, falling back to the gateway default."""
        secret = self._webhook_secrets.get(tenant_id, {}).get(gateway_name)
        if secret is None:
            config = self._configs.get(gateway_name)
            secret = config.webhook_secret if config else None
        if not secret:
            raise BillingConfigurationError(
                f"No webhook secret for gateway '{gateway_name}' and tenant '{tenant_id}'",
                config_key="GATEWAYS__WEBHOOK_SECRETS",
            )
        return secret

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
