"""Metric bucketing — fixed, monotonic half-open intervals with stable labels.

Every continuous metric leaves the node as a bucket label instead of a
number.  Labels are part of the wire contract: the aggregator groups by
them and stats readers parse them back into approximate lower bounds, so
they must never be renamed.

Each :class:`BucketScale` is plain data (a list of ``Bucket`` rows), so a
new metric is added by declaring a scale, not by writing ``if`` ladders.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass

UNKNOWN = "unknown"

_KB = 1_000
_MB = 1_000_000
_MIB = 1024 * 1024


@dataclass(frozen=True)
class Bucket:
    """One half-open interval ``[lower, upper)`` and its wire label."""

    label: str
    lower: float
    upper: float = math.inf

    def contains(self, value: float) -> bool:
        return self.lower <= value < self.upper


@dataclass(frozen=True)
class BucketScale:
    """An ordered, gap-free set of buckets for one metric."""

    name: str
    buckets: tuple[Bucket, ...]

    def classify(self, value: object) -> str:
        """Map *value* to its bucket label.

        ``None``, booleans, non-numeric and negative values map to
        ``"unknown"``.
        """
        if value is None or isinstance(value, bool):
            return UNKNOWN
        try:
            number = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return UNKNOWN
        if math.isnan(number) or number < 0:
            return UNKNOWN
        for bucket in self.buckets:
            if bucket.contains(number):
                return bucket.label
        return UNKNOWN

    @property
    def labels(self) -> tuple[str, ...]:
        return tuple(b.label for b in self.buckets)


EXECUTION_TIME = BucketScale(
    "execution_time_ms",
    (
        Bucket("<100ms", 0, 100),
        Bucket("100-500ms", 100, 500),
        Bucket("500ms-1s", 500, 1_000),
        Bucket("1-5s", 1_000, 5_000),
        Bucket("5-10s", 5_000, 10_000),
        Bucket("10-30s", 10_000, 30_000),
        Bucket("30s-1m", 30_000, 60_000),
        Bucket(">1m", 60_000),
    ),
)

GAS_USED = BucketScale(
    "gas_used",
    (
        Bucket("<100K", 0, 100 * _KB),
        Bucket("100K-1M", 100 * _KB, _MB),
        Bucket("1M-10M", _MB, 10 * _MB),
        Bucket("10M-100M", 10 * _MB, 100 * _MB),
        Bucket(">100M", 100 * _MB),
    ),
)

# Same intervals as gas, kept separate so either can evolve on its own.
STEPS_COMPUTED = BucketScale("steps_computed", GAS_USED.buckets)

MEMORY_USED = BucketScale(
    "memory_used_bytes",
    (
        Bucket("<64MB", 0, 64 * _MIB),
        Bucket("64-256MB", 64 * _MIB, 256 * _MIB),
        Bucket("256MB-1GB", 256 * _MIB, 1024 * _MIB),
        Bucket(">1GB", 1024 * _MIB),
    ),
)

ACTIVE_TASKS = BucketScale(
    "active_tasks",
    (
        Bucket("0", 0, 1),
        Bucket("1", 1, 2),
        Bucket("2-3", 2, 4),
        Bucket("4-5", 4, 6),
        Bucket(">5", 6),
    ),
)

TOTAL_TASKS = BucketScale(
    "total_tasks",
    (
        Bucket("0", 0, 1),
        Bucket("1-10", 1, 10),
        Bucket("10-50", 10, 50),
        Bucket("50-100", 50, 100),
        Bucket("100-500", 100, 500),
        Bucket("500-1K", 500, 1_000),
        Bucket(">1K", 1_000),
    ),
)

ALL_SCALES: tuple[BucketScale, ...] = (
    EXECUTION_TIME,
    GAS_USED,
    STEPS_COMPUTED,
    MEMORY_USED,
    ACTIVE_TASKS,
    TOTAL_TASKS,
)

KNOWN_LABELS: frozenset[str] = frozenset(
    {label for scale in ALL_SCALES for label in scale.labels} | {UNKNOWN}
)


def bucket_execution_time(elapsed_ms: object) -> str:
    return EXECUTION_TIME.classify(elapsed_ms)


def bucket_gas_used(gas_used: object) -> str:
    return GAS_USED.classify(gas_used)


def bucket_steps_computed(steps: object) -> str:
    return STEPS_COMPUTED.classify(steps)


def bucket_memory_used(nbytes: object) -> str:
    return MEMORY_USED.classify(nbytes)


def bucket_active_tasks(count: object) -> str:
    return ACTIVE_TASKS.classify(count)


def bucket_total_tasks(count: object) -> str:
    return TOTAL_TASKS.classify(count)


# ── Consumer side: label → approximate magnitude ──────────────────

# Exact interval starts for every label this module emits.
APPROX_LOWER_BOUNDS: dict[str, int] = {
    bucket.label: int(bucket.lower) for scale in ALL_SCALES for bucket in scale.buckets
}

_SUFFIX = {"K": _KB, "M": _MB}
_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([KM]?)")


def _parse_number(text: str) -> int | None:
    match = _NUMBER_RE.match(text.strip())
    if match is None:
        return None
    number = float(match.group(1)) * _SUFFIX.get(match.group(2), 1)
    return int(number)


def parse_bucket_lower_bound(label: str | None) -> int | None:
    """Parse a bucket label into the lower bound of its interval.

    This is a lossy, conservative estimate meant for readers that need an
    approximate magnitude (e.g. summing a distribution).  Labels from the
    scales above resolve through :data:`APPROX_LOWER_BOUNDS`, in the
    scale's own unit.  Other labels fall back to these rules:

    - ``"0"`` → 0
    - ``">N"``, ``">NK"``, ``">NM"`` → N, N·10³, N·10⁶
    - ``"<…"`` → 0 (the interval starts at zero)
    - ``"a-b"`` → a (K/M suffixes applied)
    - anything else → its numeric prefix, ignoring units other than K/M

    Returns:
        Integer lower bound, or ``None`` for ``"unknown"``/unparseable labels.
    """
    if not label:
        return None
    text = label.strip()
    if text == UNKNOWN:
        return None
    if text in APPROX_LOWER_BOUNDS:
        return APPROX_LOWER_BOUNDS[text]
    if text == "0":
        return 0
    if text.startswith(">"):
        return _parse_number(text[1:])
    if text.startswith("<"):
        return 0
    if "-" in text:
        return _parse_number(text.split("-", 1)[0])
    return _parse_number(text)


def estimate_total(distribution: Mapping[str, int]) -> int:
    """Approximate ``Σ value`` of a bucket distribution using lower bounds.

    ``distribution`` maps labels to occurrence counts.  Unknown labels
    contribute nothing, so the result under-estimates the real total.
    """
    total = 0
    for label, count in distribution.items():
        lower = parse_bucket_lower_bound(label)
        if lower is not None:
            total += lower * int(count)
    return total
