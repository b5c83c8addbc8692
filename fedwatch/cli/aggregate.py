"""CLI commands: aggregate (long-running aggregator), history."""

from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

import click
import structlog

from fedwatch.config import Config, load_config

logger = structlog.get_logger()

T = TypeVar("T")


def load_cli_config(ctx: click.Context) -> Config:
    """Load config honouring the group-level ``--config``/``--log-level``."""
    from fedwatch.cli import configure_logging

    obj = ctx.find_root().obj or {}
    config = load_config(obj.get("config_path"))
    if obj.get("log_level") is None:
        configure_logging(config.node.log_level, json_logs=obj.get("json_logs", False))
    return config


def run_until_signalled(main: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    """Run ``main(stop)`` on a fresh loop; SIGINT/SIGTERM set *stop*."""

    async def _run() -> T:
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()

        def _on_signal() -> None:
            logger.info("shutdown_requested")
            stop.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, _on_signal)
            except NotImplementedError:
                pass  # Windows doesn't support add_signal_handler
        return await main(stop)

    return asyncio.run(_run())


# ---------------------------------------------------------------------------
# fedwatch aggregate
# ---------------------------------------------------------------------------
@click.command()
@click.pass_context
def aggregate(ctx: click.Context) -> None:
    """Run the federation aggregator until interrupted.

    Subscribes to all node subjects, maintains network-wide statistics in
    the aggregator database and publishes a summary on
    ``truebit.stats.aggregated`` every ``aggregator.publish_interval``.
    """
    from fedwatch.aggregator.service import Aggregator
    from fedwatch.aggregator.store import AggregatorStore
    from fedwatch.errors import format_error
    from fedwatch.federation.client import FederationClient
    from fedwatch.privacy.credentials import NodeCredential

    config = load_cli_config(ctx)
    credential = NodeCredential.load_or_create(config.node.data_dir)

    click.echo("fedwatch aggregator")
    click.echo(f"  Servers:  {', '.join(config.federation.servers)}")
    click.echo(f"  Database: {config.aggregator.db_path}")
    click.echo(f"  Publish:  every {config.aggregator.publish_interval:g}s")

    with AggregatorStore(config.aggregator.db_path) as store:
        client = FederationClient(
            config.federation,
            credential,
            name=f"{config.node.name}-aggregator",
        )
        aggregator = Aggregator(config.aggregator, store, client)
        started = run_until_signalled(aggregator.run)

    if not started:
        click.secho(format_error("E001"), fg="red", err=True)
        raise SystemExit(1)
    click.echo("Aggregator stopped.")


# ---------------------------------------------------------------------------
# fedwatch history
# ---------------------------------------------------------------------------
@click.command()
@click.option("--limit", "-n", default=20, show_default=True, help="Rows to show")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output JSON")
@click.pass_context
def history(ctx: click.Context, limit: int, as_json: bool) -> None:
    """Show recent network statistics snapshots from the aggregator DB."""
    from fedwatch.aggregator.store import AggregatorStore

    config = load_cli_config(ctx)
    if not config.aggregator.db_path.exists():
        click.echo(f"No aggregator database at {config.aggregator.db_path}")
        return

    with AggregatorStore(config.aggregator.db_path) as store:
        rows = store.recent_snapshots(limit)

    if as_json:
        click.echo(
            json.dumps(
                [{"recordedAt": r.recorded_at, **r.data} for r in rows], indent=2
            )
        )
        return
    if not rows:
        click.echo("No snapshots recorded yet.")
        return

    click.echo(
        f"{'recorded (UTC)':<20} {'active':>6} {'nodes':>6} {'tasks':>8} "
        f"{'success%':>8} {'cache%':>7}"
    )
    for row in rows:
        when = datetime.fromtimestamp(row.recorded_at, tz=UTC)
        data = row.data
        click.echo(
            f"{when:%Y-%m-%d %H:%M:%S}  "
            f"{data.get('activeNodes', 0):>6} {data.get('totalNodes', 0):>6} "
            f"{data.get('totalTasks', 0):>8} {data.get('successRate', 0.0):>8} "
            f"{data.get('cacheHitRate', 0.0):>7}"
        )
