"""Shared test fixtures: temp data dir, fake bus, controllable clocks."""

from __future__ import annotations

from pathlib import Path

import pytest
from fakes import NODE_A, SALT, FakeClock, FakeTransport, FakeWallClock

from fedwatch.config import FederationConfig
from fedwatch.federation.client import FederationClient
from fedwatch.privacy.anonymizer import Anonymizer
from fedwatch.privacy.credentials import NodeCredential


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory for tests."""
    data_dir = tmp_path / ".fedwatch"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def credential() -> NodeCredential:
    return NodeCredential(node_id=NODE_A, salt=SALT, created_at="2026-01-01T00:00:00")


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def anonymizer(credential: NodeCredential, wall_clock: FakeWallClock) -> Anonymizer:
    return Anonymizer(credential, clock=wall_clock)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def federation_config() -> FederationConfig:
    return FederationConfig(servers=["nats://bus.test:4222"], tls=False)


@pytest.fixture
def client(
    federation_config: FederationConfig,
    credential: NodeCredential,
    transport: FakeTransport,
    clock: FakeClock,
    anonymizer: Anonymizer,
) -> FederationClient:
    return FederationClient(
        federation_config,
        credential,
        transport=transport,
        clock=clock,
        anonymizer=anonymizer,
    )
