"""Node-side view of the latest network-wide statistics.

The aggregator publishes a ``network_stats`` envelope on a fixed interval.
Its own timestamp is 5-minute rounded, so freshness is judged by when the
summary was *received* here.  If nothing arrives for ``stale_after``
seconds the view reports itself stale, which lets a display mark others'
statistics as out of date when the aggregator goes quiet.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any

import structlog

from fedwatch.errors import DecodeError
from fedwatch.federation.envelope import AnonymizedEnvelope, MessageType
from fedwatch.privacy.buckets import estimate_total

logger = structlog.get_logger()


class NetworkStatsView:
    """Holds the most recent aggregated summary."""

    def __init__(
        self,
        stale_after: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stale_after = stale_after
        self._clock = clock
        self._latest: AnonymizedEnvelope | None = None
        self._received_at: float | None = None

    @property
    def latest(self) -> Mapping[str, Any] | None:
        return self._latest.data if self._latest is not None else None

    @property
    def age(self) -> float | None:
        """Seconds since the last summary arrived, or ``None`` if none has."""
        if self._received_at is None:
            return None
        return self._clock() - self._received_at

    @property
    def is_stale(self) -> bool:
        age = self.age
        return age is None or age > self._stale_after

    def update(self, envelope: AnonymizedEnvelope) -> bool:
        """Accept *envelope* if it is a network summary."""
        if envelope.type is not MessageType.NETWORK_STATS:
            return False
        self._latest = envelope
        self._received_at = self._clock()
        return True

    def handle(self, payload: dict[str, Any], subject: str) -> None:
        """Subscription handler for ``truebit.stats.aggregated``."""
        try:
            envelope = AnonymizedEnvelope.from_dict(payload)
        except DecodeError as exc:
            logger.warning("network_stats_invalid", subject=subject, error=str(exc))
            return
        self.update(envelope)

    def get(self, key: str, default: Any = None) -> Any:
        if self._latest is None:
            return default
        return self._latest.data.get(key, default)

    def estimate_total(self, distribution_key: str) -> int | None:
        """Approximate sum of a bucket distribution (lossy lower bound).

        Returns ``None`` when no summary or no such distribution is known.
        """
        distribution = self.get(distribution_key)
        if not isinstance(distribution, Mapping):
            return None
        return estimate_total(distribution)
