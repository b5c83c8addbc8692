"""Structured error codes and the federation exception hierarchy.

Every exception raised by the telemetry pipeline carries a catalog code so
that log lines and CLI output point at a concrete resolution.  Expected
backpressure (rate limiting, open circuit) is *not* modelled here: those
are ordinary publish outcomes, see :mod:`fedwatch.federation.client`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ErrorCategory(StrEnum):
    """Error category classification."""

    TRANSPORT = "TRANSPORT"
    PRIVACY = "PRIVACY"
    DECODE = "DECODE"
    BACKPRESSURE = "BACKPRESSURE"
    AGGREGATION = "AGGREGATION"
    CONFIG = "CONFIG"


@dataclass(frozen=True)
class FedwatchError:
    """Structured error with code, message, and resolution."""

    code: str
    category: ErrorCategory
    message: str
    resolution: str

    def to_dict(self) -> dict[str, object]:
        return {
            "error": {
                "code": self.code,
                "category": self.category.value,
                "message": self.message,
                "resolution": self.resolution,
            },
        }

    def format(self) -> str:
        return f"Error [{self.code}]: {self.message}\nResolution: {self.resolution}"


# ── Pre-defined error catalog ─────────────────────────────────────

ERRORS: dict[str, FedwatchError] = {
    "E001": FedwatchError(
        code="FEDWATCH_E001",
        category=ErrorCategory.TRANSPORT,
        message="Could not connect to the federation message bus",
        resolution=(
            "Check federation.servers and credentials in ~/.fedwatch/config.toml"
        ),
    ),
    "E002": FedwatchError(
        code="FEDWATCH_E002",
        category=ErrorCategory.TRANSPORT,
        message="Publish to the message bus failed",
        resolution="Transient; the transport reconnects automatically",
    ),
    "E003": FedwatchError(
        code="FEDWATCH_E003",
        category=ErrorCategory.TRANSPORT,
        message="Subscription to the message bus failed",
        resolution="Verify the subject name and that the connection is up",
    ),
    "E004": FedwatchError(
        code="FEDWATCH_E004",
        category=ErrorCategory.PRIVACY,
        message="Outbound message contains sensitive data",
        resolution=(
            "Fix the producing code path so the field is hashed or bucketed"
        ),
    ),
    "E005": FedwatchError(
        code="FEDWATCH_E005",
        category=ErrorCategory.DECODE,
        message="Inbound message is not a valid JSON object",
        resolution="Message dropped; no action needed unless it persists",
    ),
    "E006": FedwatchError(
        code="FEDWATCH_E006",
        category=ErrorCategory.BACKPRESSURE,
        message="Circuit breaker open after repeated publish failures",
        resolution="Telemetry resumes automatically after the cool-down",
    ),
    "E007": FedwatchError(
        code="FEDWATCH_E007",
        category=ErrorCategory.BACKPRESSURE,
        message="Publish rate limit exceeded",
        resolution="Raise federation.max_messages_per_minute or publish less often",
    ),
    "E008": FedwatchError(
        code="FEDWATCH_E008",
        category=ErrorCategory.AGGREGATION,
        message="Network statistics cycle failed",
        resolution="Retried on the next interval; check the aggregator database",
    ),
    "E009": FedwatchError(
        code="FEDWATCH_E009",
        category=ErrorCategory.CONFIG,
        message="Invalid configuration value",
        resolution=(
            "Check config.toml for valid values. Run 'fedwatch config show' to review."
        ),
    ),
}


def get_error(code: str) -> FedwatchError | None:
    """Look up an error by short code (e.g. 'E001')."""
    return ERRORS.get(code)


def format_error(code: str) -> str:
    """Format an error message by code."""
    err = ERRORS.get(code)
    if err is None:
        return f"Unknown error: {code}"
    return err.format()


# ── Exceptions ─────────────────────────────────────────────────────


class FederationError(Exception):
    """Base class for telemetry pipeline failures."""

    error_code = "E002"

    @property
    def info(self) -> FedwatchError:
        return ERRORS[self.error_code]


class TransportError(FederationError):
    """Connect, publish or subscribe failed at the bus layer."""

    def __init__(self, message: str, *, error_code: str = "E002") -> None:
        super().__init__(message)
        self.error_code = error_code


class PrivacyViolation(FederationError):
    """An outbound envelope matched a sensitive-data rule.

    Attributes:
        kind: Rule identifier (e.g. ``wallet_address``).
        sample: Masked excerpt of the offending text, safe to log.
    """

    error_code = "E004"

    def __init__(self, kind: str, sample: str, description: str = "") -> None:
        self.kind = kind
        self.sample = sample
        self.description = description or kind.replace("_", " ")
        super().__init__(f"Privacy violation: {self.description} ({sample})")


class DecodeError(FederationError):
    """An inbound payload could not be decoded into an envelope."""

    error_code = "E005"


class AggregationError(FederationError):
    """Snapshot computation or persistence failed for one cycle."""

    error_code = "E008"
