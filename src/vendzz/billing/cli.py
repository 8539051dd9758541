#!/usr/bin/env python
"""
CLI management commands for the Vendzz billing engine.
"""

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import click

from vendzz.billing.db import create_all_tables_async, create_engine_from_settings
from vendzz.billing.dependencies import BillingContainer
from vendzz.billing.logging import setup_logging
from vendzz.billing.settings import Settings, get_settings


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    settings: Settings
    container_factory: Callable[[Settings], BillingContainer]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(settings=get_settings(), container_factory=BillingContainer.build)


def _parse_instant(value: str | None) -> datetime | None:
    if value is None:
        return None
    instant = datetime.fromisoformat(value)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    return instant


@click.group(name="vendzz-billing")
def cli() -> None:
    """Vendzz billing engine CLI."""
    pass


@cli.command()
@click.option("--limit", type=int, default=None, help="Max subscriptions to process")
@click.option("--now", "now_value", default=None, help="ISO-8601 instant to bill as of (UTC)")
def sweep(limit: int | None, now_value: str | None) -> None:
    """Charge every subscription that is due."""
    deps = _get_cli_dependencies()
    setup_logging(deps.settings)
    try:
        now = _parse_instant(now_value)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--now") from e

    async def _sweep() -> dict:
        container = deps.container_factory(deps.settings)
        try:
            result = await container.sweep.run(now=now, limit=limit)
        finally:
            await container.aclose()
        return result.to_response()

    click.echo(json.dumps(asyncio.run(_sweep()), indent=2))


@cli.command("init-db")
def init_db() -> None:
    """Create the billing tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")

    async def _init() -> None:
        engine = create_engine_from_settings(deps.settings)
        try:
            await create_all_tables_async(engine)
        finally:
            await engine.dispose()

    asyncio.run(_init())
    click.echo("Database initialized successfully!")


@cli.command("reconciliation")
@click.option("--tenant", "tenant_id", default=None, help="Restrict to one tenant")
def list_reconciliation(tenant_id: str | None) -> None:
    """List open reconciliation items."""
    deps = _get_cli_dependencies()

    async def _list() -> list[dict]:
        container = deps.container_factory(deps.settings)
        try:
            items = await container.reconciliation.list_open(tenant_id)
        finally:
            await container.aclose()
        return [item.model_dump(mode="json") for item in items]

    items = asyncio.run(_list())
    if not items:
        click.echo("No open reconciliation items.")
        return
    for item in items:
        click.echo(
            f"{item['id']}  {item['reason']:<24} {item['tenant_id']}  "
            f"{item['gateway_id'] or '-'}  {item['message']}"
        )


if __name__ == "__main__":
    cli()
