"""
Shared fixtures for the billing engine tests.

Engine tests run against the in-memory ledger and the null gateway with a
controllable clock; SQL ledger tests use a file-backed aiosqlite database.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from vendzz.billing.db import create_all_tables_async, create_engine_from_settings
from vendzz.billing.dependencies import BillingContainer
from vendzz.billing.gateways import GatewayRegistry, NullAdapter
from vendzz.billing.ledger import InMemoryLedger, SqlLedger
from vendzz.billing.models import CustomerDetails, Product, ProductCreateRequest, Recurrence
from vendzz.billing.settings import GatewayConfig, GatewayKind, Settings

TENANT_ID = "tenant-1"
WEBHOOK_SECRET = "whsec_test"
SWEEP_SECRET = "sweep-secret"


class FrozenClock:
    """Clock returning a fixed instant until moved."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "testing": True,
        "sweep": {"secret": SWEEP_SECRET, "claim_ttl_seconds": 900},
        "billing": {"retry_backoff_hours": [24, 72]},
        "gateways": {
            "gateways": [
                {"name": "null", "kind": "null", "webhook_secret": WEBHOOK_SECRET},
            ]
        },
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 1, 15, tzinfo=UTC))


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def gateway() -> NullAdapter:
    return NullAdapter("null")


@pytest.fixture
def registry(gateway: NullAdapter) -> GatewayRegistry:
    return GatewayRegistry(
        [GatewayConfig(name="null", kind=GatewayKind.NULL, webhook_secret=WEBHOOK_SECRET)],
        {"null": gateway},
    )


@pytest.fixture
def container(
    settings: Settings, ledger: InMemoryLedger, registry: GatewayRegistry, clock: FrozenClock
) -> BillingContainer:
    return BillingContainer.build(settings, ledger=ledger, gateways=registry, clock=clock)


@pytest.fixture
def customer() -> CustomerDetails:
    return CustomerDetails(name="Ana Souza", email="ana@example.com", locale="pt-BR")


async def create_product(container: BillingContainer, **overrides) -> Product:
    values = {
        "name": "Vendzz Pro",
        "price_minor_units": 2990,
        "currency": "BRL",
        "recurrence": Recurrence.MONTHLY,
        "trial_days": 0,
        "setup_fee_minor_units": 0,
    }
    values.update(overrides)
    return await container.catalog.create_product(TENANT_ID, ProductCreateRequest(**values))


@pytest_asyncio.fixture
async def sql_ledger(tmp_path):
    settings = make_settings(database={"url": f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"})
    engine = create_engine_from_settings(settings)
    await create_all_tables_async(engine)
    ledger = SqlLedger.from_engine(engine)
    yield ledger
    await ledger.close()
