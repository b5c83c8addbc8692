"""fedwatch CLI — Click command group and sub-commands.

- ``aggregate`` — ``aggregate`` (aggregator process), ``history``
- ``node`` — ``node-id``, ``watch``
- ``config`` — ``config show``
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
import structlog

from fedwatch import __version__


def configure_logging(level: str = "info", *, json_logs: bool = False) -> None:
    """Configure structlog once per process.  Logs go to stderr."""
    processors: list[structlog.types.Processor] = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_logs:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


configure_logging()


@click.group()
@click.version_option(version=__version__, prog_name="fedwatch")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.toml (default: ~/.fedwatch/config.toml)",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Override node.log_level",
)
@click.option("--json-logs", is_flag=True, default=False, help="Emit JSON log lines")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    log_level: str | None,
    json_logs: bool,
) -> None:
    """fedwatch — privacy-preserving federation telemetry for worker nodes."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level
    ctx.obj["json_logs"] = json_logs
    if log_level or json_logs:
        configure_logging(log_level or "info", json_logs=json_logs)


# Register sub-command modules
from fedwatch.cli.aggregate import aggregate, history  # noqa: E402
from fedwatch.cli.config import config_group  # noqa: E402
from fedwatch.cli.node import node_id, watch  # noqa: E402

cli.add_command(aggregate)
cli.add_command(history)
cli.add_command(node_id)
cli.add_command(watch)
cli.add_command(config_group)
