"""Outbound publish rate limiting — fixed 60-second window.

A rejected publish is a silent drop at the client layer: telemetry is
best-effort and must never block the caller.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()

# ── Defaults ────────────────────────────────────────────────────────────

MAX_MESSAGES_PER_MINUTE = 60
WINDOW_SECONDS = 60.0


@dataclass
class RateWindow:
    """Mutable window state, owned by one :class:`RateLimiter`."""

    count: int = 0
    window_start: float = 0.0


class RateLimiter:
    """Fixed-window publish budget.

    Usage::

        limiter = RateLimiter(max_per_minute=60)
        if limiter.check():
            ...  # publish
        else:
            ...  # drop

    Args:
        max_per_minute: Messages allowed per window.
        window: Window length in seconds.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        max_per_minute: int = MAX_MESSAGES_PER_MINUTE,
        window: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = max_per_minute
        self._window_len = window
        self._clock = clock
        self._state = RateWindow(window_start=clock())
        self.rejected = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window(self) -> RateWindow:
        """Current window state (a copy)."""
        return RateWindow(self._state.count, self._state.window_start)

    def check(self) -> bool:
        """Consume one slot if the budget allows.

        Resets the window first when it is stale, then allows while
        ``count < limit``.
        """
        now = self._clock()
        if now - self._state.window_start > self._window_len:
            self._state.count = 0
            self._state.window_start = now

        if self._state.count < self._limit:
            self._state.count += 1
            return True

        self.rejected += 1
        return False

    def remaining(self) -> int:
        return max(0, self._limit - self._state.count)
