"""Inbound envelope validation and per-node rate limiting for the aggregator.

Structural checks run first, so malformed input never touches the rate
limiter state; then a global and a per-node fixed window throttle floods.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import structlog

from fedwatch.privacy.buckets import KNOWN_LABELS

logger = structlog.get_logger()

MAX_STRING_LENGTH = 64
NODE_ID_RE = re.compile(r"^node-[a-f0-9-]{36}$", re.IGNORECASE)
HASH_RE = re.compile(r"^[a-f0-9]{8,64}$", re.IGNORECASE)

HASH_FIELDS = ("taskIdHash", "invoiceIdHash")
BUCKET_FIELDS = (
    "executionTimeBucket",
    "gasUsedBucket",
    "stepsComputedBucket",
    "memoryUsedBucket",
    "totalTasksBucket",
    "activeTasksBucket",
)
STRING_FIELDS = ("taskType", "status", "operation", "continentBucket")


class ValidationFailure(ValueError):
    """Raised by :func:`check_envelope` with the failing field name."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


def is_valid_node_id(value: object) -> bool:
    return isinstance(value, str) and bool(NODE_ID_RE.match(value))


def is_valid_hash(value: object) -> bool:
    return isinstance(value, str) and bool(HASH_RE.match(value))


def _is_short_scalar(value: object) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and len(value) <= MAX_STRING_LENGTH


def check_envelope(payload: object) -> None:
    """Raise :class:`ValidationFailure` if *payload* is not a sane envelope."""
    if not isinstance(payload, Mapping):
        raise ValidationFailure("message", "not an object")

    node_id = payload.get("nodeId")
    if node_id is not None and not is_valid_node_id(node_id):
        raise ValidationFailure("nodeId", "bad format")

    data = payload.get("data")
    if data is None:
        return
    if not isinstance(data, Mapping):
        raise ValidationFailure("data", "not an object")

    for name in HASH_FIELDS:
        if data.get(name) is not None and not is_valid_hash(data[name]):
            raise ValidationFailure(name, "not a hex hash")
    for name in BUCKET_FIELDS:
        if data.get(name) is not None and data[name] not in KNOWN_LABELS:
            raise ValidationFailure(name, "unknown bucket label")
    for name in STRING_FIELDS:
        value = data.get(name)
        if value is not None and not (
            isinstance(value, str) and len(value) <= MAX_STRING_LENGTH
        ):
            raise ValidationFailure(name, "not a short string")
    # chainId arrives as either a string or a number
    chain_id = data.get("chainId")
    if chain_id is not None and not _is_short_scalar(chain_id):
        raise ValidationFailure("chainId", "not a short scalar")


def validate_envelope(payload: object, subject: str = "") -> bool:
    """Like :func:`check_envelope` but logs and returns ``False`` on failure."""
    try:
        check_envelope(payload)
    except ValidationFailure as exc:
        logger.warning(
            "aggregator_invalid_message",
            subject=subject,
            field=exc.field,
            reason=exc.reason,
        )
        return False
    return True


# ── Inbound rate limiting ──────────────────────────────────────────────


@dataclass
class _Window:
    count: int
    start: float


class InboundRateLimiter:
    """Global plus per-node fixed-window message throttle.

    Usage::

        limiter = InboundRateLimiter(per_node=10, global_limit=1000, window=1.0)
        if limiter.allow(payload.get("nodeId")):
            ...  # ingest

    Messages without a ``nodeId`` are always rejected.
    """

    def __init__(
        self,
        per_node: int = 10,
        global_limit: int = 1000,
        window: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._per_node = per_node
        self._global_limit = global_limit
        self._window = window
        self._clock = clock
        self._global = _Window(0, clock())
        self._nodes: dict[str, _Window] = {}
        self.rejected = 0

    @property
    def tracked_nodes(self) -> int:
        return len(self._nodes)

    def allow(self, node_id: str | None) -> bool:
        now = self._clock()

        if now - self._global.start >= self._window:
            self._global = _Window(0, now)
        self._global.count += 1
        if self._global.count > self._global_limit:
            self.rejected += 1
            logger.error("aggregator_global_rate_limited", limit=self._global_limit)
            return False

        if not node_id:
            self.rejected += 1
            logger.warning("aggregator_message_without_node_id")
            return False

        entry = self._nodes.get(node_id)
        if entry is None or now - entry.start >= self._window:
            self._nodes[node_id] = _Window(1, now)
            return True

        entry.count += 1
        if entry.count > self._per_node:
            self.rejected += 1
            logger.warning(
                "aggregator_node_rate_limited",
                node=node_id[:12],
                count=entry.count,
            )
            return False
        return True

    def prune(self) -> int:
        """Forget nodes idle for more than ten windows.  Returns how many."""
        cutoff = self._clock() - self._window * 10
        idle = [nid for nid, entry in self._nodes.items() if entry.start < cutoff]
        for nid in idle:
            del self._nodes[nid]
        return len(idle)
