"""Federation wire format — envelope model and subject names.

Every message on the bus is a JSON envelope::

    {"version": "1.0", "type": "<kind>", "nodeId": "<id>",
     "timestamp": "<ISO-8601, 5-min rounded>", "data": {...}}

``data`` holds hashed identifiers and bucket labels only.  Consumers must
treat its fields as opaque labels, not guaranteed numbers.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType

from fedwatch.errors import DecodeError

ENVELOPE_VERSION = "1.0"
SUBJECT_PREFIX = "truebit"


class MessageType(StrEnum):
    """Envelope ``type`` values."""

    TASK_RECEIVED = "task_received"
    TASK_COMPLETED = "task_completed"
    HEARTBEAT = "heartbeat"
    NODE_JOINED = "node_joined"
    NODE_LEFT = "node_left"
    INVOICE_CREATED = "invoice_created"
    NETWORK_STATS = "network_stats"


class Subject:
    """Wire-level subject names (stable strings)."""

    TASKS_RECEIVED = f"{SUBJECT_PREFIX}.tasks.received"
    TASKS_COMPLETED = f"{SUBJECT_PREFIX}.tasks.completed"
    HEARTBEAT = f"{SUBJECT_PREFIX}.heartbeat"
    INVOICES_CREATED = f"{SUBJECT_PREFIX}.invoices.created"
    NODES_JOINED = f"{SUBJECT_PREFIX}.nodes.joined"
    NODES_LEFT = f"{SUBJECT_PREFIX}.nodes.left"
    STATS_AGGREGATED = f"{SUBJECT_PREFIX}.stats.aggregated"
    ALL = f"{SUBJECT_PREFIX}.>"


SUBJECT_FOR_TYPE: dict[MessageType, str] = {
    MessageType.TASK_RECEIVED: Subject.TASKS_RECEIVED,
    MessageType.TASK_COMPLETED: Subject.TASKS_COMPLETED,
    MessageType.HEARTBEAT: Subject.HEARTBEAT,
    MessageType.INVOICE_CREATED: Subject.INVOICES_CREATED,
    MessageType.NODE_JOINED: Subject.NODES_JOINED,
    MessageType.NODE_LEFT: Subject.NODES_LEFT,
    MessageType.NETWORK_STATS: Subject.STATS_AGGREGATED,
}


def is_wildcard(subject: str) -> bool:
    """True for subjects containing NATS wildcards (``*`` or ``>``)."""
    return any(token in ("*", ">") for token in subject.split("."))


@dataclass(frozen=True)
class AnonymizedEnvelope:
    """A privacy-safe federation message.

    Immutable once constructed: ``data`` is exposed as a read-only mapping.
    ``node_id`` is ``None`` only for aggregator summaries.
    """

    type: MessageType
    node_id: str | None
    timestamp: str
    data: Mapping[str, object]
    version: str = ENVELOPE_VERSION

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", MessageType(self.type))
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    @property
    def subject(self) -> str:
        """Default subject for this envelope's type."""
        return SUBJECT_FOR_TYPE[self.type]

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "version": self.version,
            "type": self.type.value,
        }
        if self.node_id is not None:
            payload["nodeId"] = self.node_id
        payload["timestamp"] = self.timestamp
        payload["data"] = dict(self.data)
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, payload: object) -> AnonymizedEnvelope:
        """Build an envelope from a decoded JSON object.

        Raises:
            DecodeError: If required fields are missing or malformed.
        """
        if not isinstance(payload, Mapping):
            raise DecodeError("envelope is not a JSON object")
        try:
            msg_type = MessageType(payload.get("type"))
        except ValueError as exc:
            raise DecodeError(
                f"unknown envelope type: {payload.get('type')!r}"
            ) from exc
        data = payload.get("data") or {}
        if not isinstance(data, Mapping):
            raise DecodeError("envelope data is not an object")
        node_id = payload.get("nodeId")
        if node_id is not None and not isinstance(node_id, str):
            raise DecodeError("envelope nodeId is not a string")
        return cls(
            type=msg_type,
            node_id=node_id,
            timestamp=str(payload.get("timestamp", "")),
            data=data,
            version=str(payload.get("version", ENVELOPE_VERSION)),
        )


def decode_payload(payload: bytes | str) -> dict[str, object]:
    """Decode a raw bus payload into a JSON object.

    Raises:
        DecodeError: If the payload is not UTF-8 JSON or not an object.
    """
    try:
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        decoded = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"invalid JSON payload: {exc}") from exc
    if not isinstance(decoded, dict):
        raise DecodeError("payload is not a JSON object")
    return decoded
