"""CLI commands: node-id, watch."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click
import structlog

from fedwatch.cli.aggregate import load_cli_config, run_until_signalled
from fedwatch.federation.envelope import Subject

logger = structlog.get_logger()


@click.command("node-id")
@click.pass_context
def node_id(ctx: click.Context) -> None:
    """Show this node's federation id, creating it on first run.

    The id is random and safe to share.  The salt stored next to it is
    never printed.
    """
    from fedwatch.privacy.credentials import CREDENTIALS_FILE, NodeCredential

    config = load_cli_config(ctx)
    credential = NodeCredential.load_or_create(config.node.data_dir)
    click.echo(credential.node_id)
    click.echo(f"  Created: {credential.created_at or 'unknown'}")
    click.echo(f"  Stored:  {config.node.data_dir / CREDENTIALS_FILE}")


@click.command()
@click.option(
    "--subject",
    "-s",
    default=Subject.ALL,
    show_default=True,
    help="Subject to watch (wildcards allowed)",
)
@click.pass_context
def watch(ctx: click.Context, subject: str) -> None:
    """Print federation envelopes as they arrive (one JSON object per line)."""
    from fedwatch.errors import TransportError, format_error
    from fedwatch.federation.client import FederationClient
    from fedwatch.federation.envelope import MessageType
    from fedwatch.federation.stats_view import NetworkStatsView
    from fedwatch.privacy.credentials import NodeCredential

    config = load_cli_config(ctx)
    credential = NodeCredential.load_or_create(config.node.data_dir)
    client = FederationClient(
        config.federation, credential, name=f"{config.node.name}-watch"
    )
    view = NetworkStatsView(stale_after=config.aggregator.stats_stale_after)

    def _print(payload: dict[str, Any], msg_subject: str) -> None:
        click.echo(json.dumps({"subject": msg_subject, **payload}))
        if payload.get("type") == MessageType.NETWORK_STATS:
            view.handle(payload, msg_subject)

    async def _main(stop: asyncio.Event) -> bool:
        if not await client.connect():
            return False
        try:
            await client.subscribe(subject, _print)
            while not stop.is_set():
                try:
                    await asyncio.wait_for(
                        stop.wait(), config.aggregator.stats_stale_after
                    )
                except TimeoutError:
                    if view.is_stale:
                        logger.warning("network_stats_stale", age=view.age)
        except TransportError as exc:
            logger.error("watch_subscribe_failed", subject=subject, error=str(exc))
        finally:
            await client.disconnect()
        return True

    if not run_until_signalled(_main):
        click.secho(format_error("E001"), fg="red", err=True)
        raise SystemExit(1)
