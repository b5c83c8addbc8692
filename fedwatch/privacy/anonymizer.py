"""Federation anonymizer — local records in, privacy-safe envelopes out.

Privacy guarantees of every envelope produced here:

- no wallet addresses, private keys, IP addresses or task payloads
- identifiers (task, execution, invoice) are salted one-way hashes
- metrics are bucket labels, never exact values
- timestamps are rounded down to a 5-minute boundary

The transforms are pure apart from reading the clock for events that have
no timestamp of their own (heartbeat, join, leave).
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from fedwatch.federation.envelope import AnonymizedEnvelope, MessageType
from fedwatch.hashing import salted_hash
from fedwatch.privacy import buckets
from fedwatch.privacy.credentials import NodeCredential

logger = structlog.get_logger()

ROUND_MINUTES = 5

CONTINENTS = frozenset(
    {
        "africa",
        "antarctica",
        "asia",
        "europe",
        "north_america",
        "oceania",
        "south_america",
    }
)


# ── Domain records (what the local monitor knows) ─────────────────


@dataclass(frozen=True)
class TaskRecord:
    """A task as tracked by the local monitor."""

    execution_id: str | None = None
    id: str | int | None = None
    chain_id: str | None = None
    block_number: int | None = None
    task_type: str | None = None
    status: str | None = None
    exit_code: int | None = None
    elapsed_ms: float | None = None
    gas_used: int | None = None
    cached: bool = False
    received_at: datetime | float | str | None = None
    completed_at: datetime | float | str | None = None


@dataclass(frozen=True)
class NodeStatus:
    """Coarse node status reported in heartbeats."""

    connected: bool = True
    active_tasks: int = 0
    total_tasks: int = 0
    continent: str | None = None


@dataclass(frozen=True)
class InvoiceRecord:
    """An invoice row; ``details`` may be a JSON string or a mapping."""

    id: str | int | None = None
    timestamp: datetime | float | str | None = None
    details: Mapping[str, object] | str | None = field(default=None)


# ── Helpers ─────────────────────────────────────────────────────────


def _to_datetime(value: datetime | float | str | None, now: datetime) -> datetime:
    if value is None:
        return now
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=UTC)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("timestamp_unparseable")
        return now
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def round_timestamp(
    value: datetime | float | str | None = None,
    *,
    now: datetime | None = None,
) -> str:
    """Round down to the nearest 5-minute boundary and format as ISO-8601.

    Seconds and milliseconds are zeroed.  The output matches the
    JavaScript ``toISOString`` shape (``2026-01-01T12:05:00.000Z``) used on
    the wire.
    """
    dt = _to_datetime(value, now or datetime.now(UTC)).astimezone(UTC)
    dt = dt.replace(
        minute=(dt.minute // ROUND_MINUTES) * ROUND_MINUTES,
        second=0,
        microsecond=0,
    )
    return dt.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _invoice_details(invoice: InvoiceRecord) -> Mapping[str, object]:
    details = invoice.details
    if isinstance(details, str):
        try:
            details = json.loads(details)
        except json.JSONDecodeError:
            logger.debug("invoice_details_unparseable")
            return {}
    return details if isinstance(details, Mapping) else {}


def _first_line_item(details: Mapping[str, object]) -> Mapping[str, object]:
    items = details.get("lineItem")
    if isinstance(items, list) and items and isinstance(items[0], Mapping):
        return items[0]
    return {}


def _continent_bucket(value: str | None) -> str:
    if not value:
        return buckets.UNKNOWN
    normalized = value.strip().lower().replace(" ", "_").replace("-", "_")
    return normalized if normalized in CONTINENTS else buckets.UNKNOWN


# ── Anonymizer ─────────────────────────────────────────────────────


class Anonymizer:
    """Builds privacy-safe envelopes for one node.

    Args:
        credential: This node's id and secret salt.
        clock: Returns "now" as an aware datetime (injectable for tests).
    """

    def __init__(
        self,
        credential: NodeCredential,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._credential = credential
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def node_id(self) -> str:
        return self._credential.node_id

    def hash(self, value: object) -> str | None:
        """Salted one-way hash of an identifier (``None`` for empty input)."""
        return salted_hash(value, self._credential.salt)

    def _envelope(
        self,
        msg_type: MessageType,
        data: dict[str, object],
        at: datetime | float | str | None = None,
    ) -> AnonymizedEnvelope:
        return AnonymizedEnvelope(
            type=msg_type,
            node_id=self._credential.node_id,
            timestamp=round_timestamp(at, now=self._clock()),
            data=data,
        )

    def anonymize_task_received(self, task: TaskRecord) -> AnonymizedEnvelope:
        return self._envelope(
            MessageType.TASK_RECEIVED,
            {
                "chainId": task.chain_id,
                "blockNumber": task.block_number,
                "taskType": task.task_type or "unknown",
                "taskIdHash": self.hash(task.execution_id or task.id),
            },
            task.received_at,
        )

    def anonymize_task_completed(self, task: TaskRecord) -> AnonymizedEnvelope:
        return self._envelope(
            MessageType.TASK_COMPLETED,
            {
                "chainId": task.chain_id,
                "blockNumber": task.block_number,
                "taskType": task.task_type or "unknown",
                "taskIdHash": self.hash(task.execution_id or task.id),
                # Binary outcome only, never error details
                "status": task.status,
                "success": task.exit_code == 0,
                "executionTimeBucket": buckets.bucket_execution_time(task.elapsed_ms),
                "gasUsedBucket": buckets.bucket_gas_used(task.gas_used),
                "cached": bool(task.cached),
            },
            task.completed_at,
        )

    def anonymize_heartbeat(self, status: NodeStatus) -> AnonymizedEnvelope:
        return self._envelope(
            MessageType.HEARTBEAT,
            {
                "status": "online" if status.connected else "offline",
                "activeTasksBucket": buckets.bucket_active_tasks(status.active_tasks),
                "totalTasksBucket": buckets.bucket_total_tasks(status.total_tasks),
                "continentBucket": _continent_bucket(status.continent),
            },
        )

    def anonymize_invoice(self, invoice: InvoiceRecord) -> AnonymizedEnvelope:
        details = _invoice_details(invoice)
        item = _first_line_item(details)
        steps = details.get("totalStepsComputed")
        if steps is None:
            steps = item.get("total_steps_computed")
        memory = details.get("peakMemoryUsed")
        if memory is None:
            memory = item.get("peak_memory_used")
        return self._envelope(
            MessageType.INVOICE_CREATED,
            {
                "invoiceIdHash": self.hash(details.get("invoiceId") or invoice.id),
                "taskIdHash": self.hash(
                    details.get("taskId") or details.get("executionId")
                ),
                "chainId": details.get("chainId"),
                "stepsComputedBucket": buckets.bucket_steps_computed(steps),
                "memoryUsedBucket": buckets.bucket_memory_used(memory),
                "operation": details.get("operation")
                or item.get("operation")
                or "compute",
            },
            invoice.timestamp,
        )

    def anonymize_node_joined(self) -> AnonymizedEnvelope:
        return self._envelope(MessageType.NODE_JOINED, {"status": "online"})

    def anonymize_node_left(self) -> AnonymizedEnvelope:
        return self._envelope(MessageType.NODE_LEFT, {"status": "offline"})
