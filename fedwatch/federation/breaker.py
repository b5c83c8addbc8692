"""Circuit breaker for outbound publishes.

States::

    CLOSED --(>= threshold consecutive failures)--> OPEN
    OPEN   --(cool-down elapsed)-------------------> CLOSED (counters reset)

Successful publishes leave the failure counter untouched; only closing the
breaker resets it.  The automatic close is a cancellable ``call_later``
timer when an event loop is running, and is also checked lazily on every
read so a stalled or missing loop cannot keep the breaker open forever.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()

FAILURE_THRESHOLD = 5
COOLDOWN_SECONDS = 60.0


@dataclass(frozen=True)
class BreakerState:
    """Read-only view of the breaker."""

    consecutive_failures: int
    open: bool
    opened_at: float | None


class CircuitBreaker:
    """Counts publish failures and trips after *threshold* in a row."""

    def __init__(
        self,
        threshold: int = FAILURE_THRESHOLD,
        cooldown: float = COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._threshold = threshold
        self._cooldown = cooldown
        self._clock = clock
        self._failures = 0
        self._open = False
        self._opened_at: float | None = None
        self._timer: asyncio.TimerHandle | None = None
        self.trips = 0

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def is_open(self) -> bool:
        if self._open and self._opened_at is not None:
            if self._clock() - self._opened_at >= self._cooldown:
                self.close()
        return self._open

    @property
    def state(self) -> BreakerState:
        is_open = self.is_open
        return BreakerState(self._failures, is_open, self._opened_at)

    def allow(self) -> bool:
        """True while the breaker is closed."""
        return not self.is_open

    def record_failure(self) -> bool:
        """Count one failure.  Returns ``True`` if this call tripped the breaker."""
        self._failures += 1
        if self._open or self._failures < self._threshold:
            return False

        self._open = True
        self._opened_at = self._clock()
        self.trips += 1
        logger.warning(
            "circuit_breaker_opened",
            failures=self._failures,
            cooldown=self._cooldown,
        )
        self._schedule_close()
        return True

    def close(self) -> None:
        """Close the breaker and reset all counters."""
        self._cancel_timer()
        was_open = self._open
        self._open = False
        self._opened_at = None
        self._failures = 0
        if was_open:
            logger.info("circuit_breaker_closed")

    def cancel(self) -> None:
        """Drop the pending auto-close timer (used on shutdown)."""
        self._cancel_timer()

    def _schedule_close(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cancel_timer()
        self._timer = loop.call_later(self._cooldown, self.close)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
