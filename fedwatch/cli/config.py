"""CLI commands: config show."""

from __future__ import annotations

import click

from fedwatch.config import config_as_dict


@click.group("config")
def config_group() -> None:
    """Configuration management."""


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration (credentials masked)."""
    from fedwatch.cli.aggregate import load_cli_config

    config = load_cli_config(ctx)
    for section_name, section in config_as_dict(config).items():
        click.echo(f"[{section_name}]")
        for key, value in section.items():
            click.echo(f"  {key} = {value}")
        click.echo()
