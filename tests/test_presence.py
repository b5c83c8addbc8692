"""Tests for join/heartbeat/leave presence handling."""

from __future__ import annotations

import asyncio

import pytest
from fakes import FakeTransport

from fedwatch.federation.client import FederationClient
from fedwatch.federation.envelope import Subject
from fedwatch.federation.presence import FederationPresence
from fedwatch.federation.transport import TransportStatus
from fedwatch.privacy.anonymizer import NodeStatus


def _subjects(transport: FakeTransport) -> list[str]:
    return [subject for subject, _ in transport.published]


@pytest.mark.asyncio
async def test_start_announces_then_beats(
    client: FederationClient, transport: FakeTransport
) -> None:
    await client.connect()
    presence = FederationPresence(client, lambda: NodeStatus(active_tasks=1), interval=60)
    await presence.start()
    for _ in range(3):
        await asyncio.sleep(0)  # let the loop run its first beat
    assert presence.running
    assert _subjects(transport) == [Subject.NODES_JOINED, Subject.HEARTBEAT]
    assert presence.heartbeats_sent == 1

    await presence.stop()
    assert not presence.running
    assert _subjects(transport)[-1] == Subject.NODES_LEFT
    assert transport.drained


@pytest.mark.asyncio
async def test_start_twice_is_noop(
    client: FederationClient, transport: FakeTransport
) -> None:
    await client.connect()
    presence = FederationPresence(client, NodeStatus, interval=60)
    await presence.start()
    await presence.start()
    for _ in range(3):
        await asyncio.sleep(0)
    assert _subjects(transport).count(Subject.NODES_JOINED) == 1
    await presence.stop()


@pytest.mark.asyncio
async def test_beat_skipped_when_disconnected(
    client: FederationClient, transport: FakeTransport
) -> None:
    await client.connect()
    presence = FederationPresence(client, NodeStatus)
    transport.emit(TransportStatus.DISCONNECTED)
    assert await presence.beat() is False
    assert presence.heartbeats_skipped == 1
    assert transport.publish_calls == 0


@pytest.mark.asyncio
async def test_stop_skips_leave_when_unhealthy(
    client: FederationClient, transport: FakeTransport
) -> None:
    await client.connect()
    presence = FederationPresence(client, NodeStatus)
    transport.emit(TransportStatus.DISCONNECTED)
    await presence.stop()
    assert Subject.NODES_LEFT not in _subjects(transport)
    assert transport.drained


@pytest.mark.asyncio
async def test_status_provider_feeds_heartbeat(
    client: FederationClient, transport: FakeTransport
) -> None:
    await client.connect()
    presence = FederationPresence(
        client, lambda: NodeStatus(connected=False, continent="Europe")
    )
    assert await presence.beat() is True
    [(_, payload)] = transport.published_json()
    assert payload["data"]["status"] == "offline"
    assert payload["data"]["continentBucket"] == "europe"


@pytest.mark.asyncio
async def test_failing_status_provider_keeps_beating(
    client: FederationClient, transport: FakeTransport
) -> None:
    await client.connect()
    calls = 0

    def flaky_status() -> NodeStatus:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("status unavailable")
        return NodeStatus()

    presence = FederationPresence(client, flaky_status, interval=0)
    await presence.start()
    for _ in range(5):
        await asyncio.sleep(0)
    assert presence.running
    assert presence.heartbeats_failed == 1
    assert presence.heartbeats_sent >= 1

    await presence.stop()
    assert _subjects(transport)[-1] == Subject.NODES_LEFT
    assert transport.drained
