"""Tests for the fedwatch CLI commands."""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner

from fedwatch.aggregator.store import AggregateSnapshot, AggregatorStore
from fedwatch.cli import cli, configure_logging
from fedwatch.privacy.credentials import CREDENTIALS_FILE, NodeCredential


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    # Commands reconfigure structlog against the runner's stderr
    yield
    configure_logging()


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "data"
    monkeypatch.setenv("FEDWATCH_NODE_DATA_DIR", str(path))
    return path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _invoke(runner: CliRunner, *args: str):
    # Keep log lines out of the captured output
    return runner.invoke(cli, ["--log-level", "error", *args])


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "fedwatch" in result.output


def test_help_lists_commands(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    for command in ("aggregate", "history", "node-id", "watch", "config"):
        assert command in result.output


def test_config_show_masks_secrets(
    runner: CliRunner, data_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FEDWATCH_FEDERATION_PASSWORD", "hunter2")
    result = _invoke(runner, "config", "show")
    assert result.exit_code == 0, result.output
    assert "[federation]" in result.output
    assert "password = ********" in result.output
    assert "hunter2" not in result.output


def test_node_id_is_stable(runner: CliRunner, data_dir: Path) -> None:
    first = _invoke(runner, "node-id")
    assert first.exit_code == 0, first.output
    node_id = first.output.splitlines()[0]
    assert re.match(r"^node-[0-9a-f-]{36}$", node_id)

    second = _invoke(runner, "node-id")
    assert second.output.splitlines()[0] == node_id

    credential = NodeCredential.load(data_dir)
    assert credential.salt.hex() not in first.output
    assert str(data_dir / CREDENTIALS_FILE) in first.output


def test_history_without_database(runner: CliRunner, data_dir: Path) -> None:
    result = _invoke(runner, "history")
    assert result.exit_code == 0
    assert "No aggregator database" in result.output


def test_history_rows(runner: CliRunner, data_dir: Path) -> None:
    with AggregatorStore(data_dir / "aggregator.db") as store:
        store.save_snapshot(AggregateSnapshot(active_nodes=2, total_tasks=9), now=100.0)
        store.save_snapshot(AggregateSnapshot(active_nodes=3, total_tasks=12), now=200.0)

    result = _invoke(runner, "history", "--json", "-n", "1")
    assert result.exit_code == 0, result.output
    rows = json.loads(result.output)
    assert len(rows) == 1
    assert rows[0]["recordedAt"] == 200.0
    assert rows[0]["activeNodes"] == 3

    table = _invoke(runner, "history")
    assert "1970-01-01 00:03:20" in table.output
    assert "success%" in table.output


def test_history_empty_database(runner: CliRunner, data_dir: Path) -> None:
    AggregatorStore(data_dir / "aggregator.db").close()
    result = _invoke(runner, "history")
    assert "No snapshots recorded yet." in result.output
