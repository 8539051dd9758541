"""Tests for the CLI, Celery tasks and metrics wiring."""

import asyncio
import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner
from structlog.testing import capture_logs

from vendzz.billing import celery_app as celery_module
from vendzz.billing import tasks
from vendzz.billing.cli import CLIDependencies, cli
from vendzz.billing.db import create_all_tables_async, create_engine_from_settings
from vendzz.billing.exceptions import ReconciliationRequiredError
from vendzz.billing.metrics import BillingMetrics
from vendzz.billing.models import ReconciliationReason

from tests.conftest import TENANT_ID, create_product, make_settings

pytestmark = pytest.mark.unit


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_deps(settings, container):
    deps = CLIDependencies(settings=settings, container_factory=lambda _: container)
    with (
        patch("vendzz.billing.cli._get_cli_dependencies", return_value=deps),
        patch("vendzz.billing.cli.setup_logging"),
        capture_logs(),
    ):
        yield deps


class TestSweepCommand:
    def test_sweep_as_of_given_instant(self, runner, cli_deps, container, gateway, customer):
        async def _setup():
            product = await create_product(container)
            await container.lifecycle.create_subscription(
                product.id, customer, "tok_visa", TENANT_ID
            )

        asyncio.run(_setup())

        result = runner.invoke(cli, ["sweep", "--now", "2025-02-15T09:00:00"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["processed"] == 1
        assert payload["successful"] == 1
        assert payload["timestampUtc"] == "2025-02-15T09:00:00+00:00"
        assert len(gateway.charges) == 1

    def test_nothing_due(self, runner, cli_deps):
        result = runner.invoke(cli, ["sweep", "--limit", "10"])

        assert result.exit_code == 0
        assert json.loads(result.output)["processed"] == 0

    def test_invalid_instant(self, runner, cli_deps):
        result = runner.invoke(cli, ["sweep", "--now", "yesterday"])

        assert result.exit_code == 2
        assert "--now" in result.output


class TestReconciliationCommand:
    def test_empty_queue(self, runner, cli_deps):
        result = runner.invoke(cli, ["reconciliation"])

        assert result.exit_code == 0
        assert "No open reconciliation items." in result.output

    def test_lists_open_items(self, runner, cli_deps, container):
        asyncio.run(
            container.reconciliation.report(
                ReconciliationRequiredError(
                    "Recurring charge outcome is unknown",
                    reason=ReconciliationReason.CHARGE_OUTCOME_UNKNOWN.value,
                    tenant_id=TENANT_ID,
                    gateway_id="null",
                )
            )
        )

        result = runner.invoke(cli, ["reconciliation", "--tenant", TENANT_ID])
        other = runner.invoke(cli, ["reconciliation", "--tenant", "tenant-2"])

        assert result.exit_code == 0
        assert "charge_outcome_unknown" in result.output
        assert "Recurring charge outcome is unknown" in result.output
        assert "No open reconciliation items." in other.output


class TestInitDb:
    def test_creates_tables(self, runner, tmp_path):
        settings = make_settings(
            database={"url": f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"}
        )
        deps = CLIDependencies(settings=settings, container_factory=MagicMock())

        with patch("vendzz.billing.cli._get_cli_dependencies", return_value=deps):
            result = runner.invoke(cli, ["init-db"])

        assert result.exit_code == 0, result.output
        assert "Initializing database..." in result.output
        assert "Database initialized successfully!" in result.output
        assert (tmp_path / "billing.db").exists()


class TestTasks:
    @pytest.mark.asyncio
    async def test_run_sweep_once_against_sql_ledger(self, tmp_path):
        settings = make_settings(
            database={"url": f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"}
        )
        engine = create_engine_from_settings(settings)
        await create_all_tables_async(engine)
        await engine.dispose()

        response = await tasks.run_sweep_once(settings, limit=10)

        assert response["processed"] == 0
        assert datetime.fromisoformat(response["timestampUtc"]).tzinfo == UTC

    def test_celery_task_runs_one_sweep(self):
        response = {"processed": 2, "successful": 2, "failed": 0, "pending": 0, "skipped": 0}

        with patch.object(tasks, "run_sweep_once", AsyncMock(return_value=response)) as run:
            assert tasks.run_billing_sweep_task(limit=5) == response

        run.assert_awaited_once_with(limit=5)


class TestPeriodicSchedule:
    def test_sweep_is_scheduled(self, monkeypatch):
        settings = make_settings(sweep={"interval_seconds": 60})
        monkeypatch.setattr(celery_module, "settings", settings)
        sender = MagicMock()

        celery_module.setup_periodic_tasks(sender)

        sender.add_periodic_task.assert_called_once()
        interval, _signature = sender.add_periodic_task.call_args.args
        assert interval == 60.0
        assert sender.add_periodic_task.call_args.kwargs["name"] == "billing-sweep"

    def test_disabled_sweep_is_not_scheduled(self, monkeypatch):
        monkeypatch.setattr(celery_module, "settings", make_settings(sweep={"enabled": False}))
        sender = MagicMock()

        celery_module.setup_periodic_tasks(sender)

        sender.add_periodic_task.assert_not_called()

    def test_billing_tasks_routed_to_billing_queue(self):
        conf = celery_module.celery_app.conf
        assert conf.task_default_queue == "billing"
        assert conf.task_routes["billing.*"] == {"queue": "billing"}


class TestMetrics:
    def test_charge_recorded_with_attributes(self):
        meter = MagicMock()
        metrics = BillingMetrics(meter=meter)

        metrics.record_charge("recurring", "stripe", "completed", 2990, "BRL")

        metrics.charge_counter.add.assert_any_call(
            1, {"type": "recurring", "gateway": "stripe", "outcome": "completed"}
        )
        metrics.charge_amount_histogram.record.assert_any_call(
            2990,
            {"type": "recurring", "gateway": "stripe", "outcome": "completed", "currency": "BRL"},
        )

    def test_sweep_skips_empty_buckets(self):
        meter = MagicMock()
        meter.create_counter.side_effect = lambda **kwargs: MagicMock(name=kwargs["name"])
        metrics = BillingMetrics(meter=meter)

        metrics.record_sweep(1.5, {"successful": 3, "failed": 0})

        metrics.sweep_subscription_counter.add.assert_called_once_with(
            3, {"result": "successful"}
        )

    def test_default_meter_is_noop(self):
        metrics = BillingMetrics()

        metrics.record_webhook("null", "payment_confirmed", "settled")
        metrics.record_reconciliation("ledger_write_failed")
