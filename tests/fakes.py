"""Test doubles and constants shared across the test modules."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from fedwatch.errors import TransportError
from fedwatch.federation.transport import StatusCallback, TransportStatus

NODE_A = "node-123e4567-e89b-42d3-a456-426614174000"
NODE_B = "node-223e4567-e89b-42d3-a456-426614174001"
NODE_C = "node-323e4567-e89b-42d3-a456-426614174002"
SALT = bytes(range(32))

# Fixed wall-clock time used by anonymizer and aggregator tests.
BASE_TIME = datetime(2026, 3, 14, 12, 7, 42, 123000, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock usable as both monotonic and epoch source."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """Aware-datetime clock for the anonymizer."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def subject_matches(pattern: str, subject: str) -> bool:
    """NATS subject matching (``*`` one token, ``>`` the rest)."""
    p_tokens = pattern.split(".")
    s_tokens = subject.split(".")
    for i, token in enumerate(p_tokens):
        if token == ">":
            return len(s_tokens) > i
        if i >= len(s_tokens):
            return False
        if token != "*" and token != s_tokens[i]:
            return False
    return len(p_tokens) == len(s_tokens)


class FakeSubscription:
    def __init__(
        self,
        bus: FakeTransport,
        subject: str,
        callback: Callable[[str, bytes], Awaitable[None]],
    ) -> None:
        self.bus = bus
        self.subject = subject
        self.callback = callback

    async def unsubscribe(self) -> None:
        self.bus.subscriptions.remove(self)


class FakeTransport:
    """In-memory :class:`BusTransport` that records traffic."""

    def __init__(self) -> None:
        self.connected = False
        self.fail_connect = False
        self.fail_publish = False
        self.options: dict[str, Any] = {}
        self.published: list[tuple[str, bytes]] = []
        self.publish_calls = 0
        self.subscriptions: list[FakeSubscription] = []
        self.drained = False
        self._on_status: StatusCallback | None = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, options: dict[str, Any], on_status: StatusCallback) -> None:
        self.options = options
        if self.fail_connect:
            raise TransportError("connection refused", error_code="E001")
        self._on_status = on_status
        self.connected = True

    async def publish(self, subject: str, payload: bytes) -> None:
        self.publish_calls += 1
        if self.fail_publish:
            raise TransportError("broken pipe")
        self.published.append((subject, payload))

    async def subscribe(
        self, subject: str, callback: Callable[[str, bytes], Awaitable[None]]
    ) -> FakeSubscription:
        sub = FakeSubscription(self, subject, callback)
        self.subscriptions.append(sub)
        return sub

    async def drain(self) -> None:
        self.drained = True
        self.connected = False

    # ── Test helpers ───────────────────────────────────────────

    def emit(self, status: TransportStatus, exc: Exception | None = None) -> None:
        assert self._on_status is not None
        self._on_status(status, exc)

    async def deliver(self, subject: str, payload: dict[str, Any] | bytes) -> int:
        """Deliver *payload* to every matching subscription."""
        data = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        matched = [s for s in self.subscriptions if subject_matches(s.subject, subject)]
        for sub in matched:
            await sub.callback(subject, data)
        return len(matched)

    def published_json(self) -> list[tuple[str, dict[str, Any]]]:
        return [(subj, json.loads(data)) for subj, data in self.published]
