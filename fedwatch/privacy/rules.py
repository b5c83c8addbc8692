"""Privacy rule engine — denylist scanning for outbound federation traffic.

Rules are data: each :class:`PrivacyRule` is a compiled pattern, a kind,
a severity and a masking style.  Two rule sets are evaluated by the same
loop:

* :data:`STRICT_RULES` — the mandatory denylist.  :func:`validate_message`
  runs it over the *whole* serialized envelope and raises
  :class:`~fedwatch.errors.PrivacyViolation` on the first match.  Every
  outbound envelope passes through it, whichever code path built it.
* :data:`EXTENDED_RULES` — a wider, severity-graded set used by
  :class:`PrivacyDetector` over an envelope's ``data`` payload (the
  ``nodeId`` is UUID-shaped by construction, so it is not scanned there).

Adding a pattern means appending a rule; control flow does not change.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from fedwatch.errors import PrivacyViolation

logger = structlog.get_logger()


class Severity(StrEnum):
    """How bad a match is.  CRITICAL and HIGH block a publish."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"

    @property
    def blocking(self) -> bool:
        return self in (Severity.CRITICAL, Severity.HIGH)


class MaskStyle(StrEnum):
    """How a matched sample is rendered in logs and errors."""

    ADDRESS = "address"  # 0x1234...abcd
    IP = "ip"  # 10.20.***.***
    REDACT = "redact"  # ***REDACTED***
    FIELD = "field"  # field names are not secret themselves
    OPAQUE = "opaque"  # ***


@dataclass(frozen=True)
class PrivacyRule:
    """One sensitive-data pattern."""

    kind: str
    pattern: re.Pattern[str]
    severity: Severity
    description: str
    mask: MaskStyle = MaskStyle.OPAQUE


@dataclass(frozen=True)
class Violation:
    """A rule match found by :class:`PrivacyDetector`."""

    kind: str
    description: str
    severity: Severity
    count: int
    examples: tuple[str, ...] = ()
    location: str = "unknown"

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "description": self.description,
            "severity": self.severity.value,
            "count": self.count,
            "examples": list(self.examples),
            "location": self.location,
        }


def _rule(
    kind: str,
    pattern: str,
    severity: Severity,
    description: str,
    mask: MaskStyle = MaskStyle.OPAQUE,
    flags: int = 0,
) -> PrivacyRule:
    return PrivacyRule(kind, re.compile(pattern, flags), severity, description, mask)


STRICT_RULES: tuple[PrivacyRule, ...] = (
    _rule(
        "wallet_address",
        r"0x[a-fA-F0-9]{40}",
        Severity.CRITICAL,
        "Wallet address detected in message",
        MaskStyle.ADDRESS,
    ),
    _rule(
        "execution_id",
        r'"execution_id":',
        Severity.HIGH,
        "Execution ID in cleartext",
        MaskStyle.FIELD,
        re.IGNORECASE,
    ),
    _rule(
        "sensitive_field",
        r'"(?:input_data|output_data|error_data|private_key|wallet)":',
        Severity.HIGH,
        "Sensitive field detected in message",
        MaskStyle.FIELD,
        re.IGNORECASE,
    ),
    _rule(
        "ip_address",
        r"\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}",
        Severity.HIGH,
        "IP address detected in message",
        MaskStyle.IP,
    ),
)

EXTENDED_RULES: tuple[PrivacyRule, ...] = (
    STRICT_RULES[0],
    _rule(
        "uuid",
        r"[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}",
        Severity.HIGH,
        "Execution ID (UUID)",
        MaskStyle.REDACT,
        re.IGNORECASE,
    ),
    _rule(
        "ip_address",
        r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
        r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b",
        Severity.HIGH,
        "IP address",
        MaskStyle.IP,
    ),
    _rule(
        "private_key",
        r"(?:private[_\s-]?key|priv[_\s-]?key|secret[_\s-]?key)[\"'\s:=]+[a-fA-F0-9]{64}",
        Severity.CRITICAL,
        "Private key",
        MaskStyle.REDACT,
        re.IGNORECASE,
    ),
    _rule(
        "sensitive_field",
        r'"(?:input_data|output_data|error_data|execution_id|nodeAddress'
        r'|walletAddress|privateKey)":',
        Severity.HIGH,
        "Sensitive JSON field name",
        MaskStyle.FIELD,
        re.IGNORECASE,
    ),
    # Timestamps whose minute is not a multiple of five, or whose
    # seconds/milliseconds are not zero.
    _rule(
        "exact_timestamp",
        r"\d{4}-\d{2}-\d{2}T\d{2}:(?:\d[1-46-9]:\d{2}(?:\.\d+)?"
        r"|\d[05]:(?!00(?:\.0+)?Z)\d{2}(?:\.\d+)?)Z",
        Severity.MEDIUM,
        "Exact timestamp (should be rounded)",
    ),
)


def mask_sample(text: str, style: MaskStyle) -> str:
    """Render a matched *text* so it is safe to log."""
    if style is MaskStyle.ADDRESS and len(text) > 10:
        return f"{text[:6]}...{text[-4:]}"
    if style is MaskStyle.IP:
        parts = text.split(".")
        return f"{parts[0]}.{parts[1]}.***.***"
    if style is MaskStyle.REDACT:
        return "***REDACTED***"
    if style is MaskStyle.FIELD:
        return text
    return "***"


def serialize(message: object) -> str:
    """Serialize *message* the way it would travel on the wire."""
    if isinstance(message, str):
        return message
    to_dict = getattr(message, "to_dict", None)
    if callable(to_dict):
        message = to_dict()
    return json.dumps(message, separators=(",", ":"), default=str)


def validate_message(message: object) -> bool:
    """Check that *message* is safe to send to the federation.

    Args:
        message: An envelope (anything with ``to_dict()``), a plain mapping,
            or an already-serialized JSON string.

    Returns:
        ``True`` when no strict rule matches.

    Raises:
        PrivacyViolation: On the first strict rule that matches.
    """
    text = serialize(message)
    for rule in STRICT_RULES:
        match = rule.pattern.search(text)
        if match is not None:
            raise PrivacyViolation(
                rule.kind,
                mask_sample(match.group(0), rule.mask),
                rule.description,
            )
    return True


def _find_location(data: object, needle: str, path: str = "") -> str | None:
    """Return the dotted path of the first string value containing *needle*."""
    if isinstance(data, Mapping):
        for key, value in data.items():
            child = f"{path}.{key}" if path else str(key)
            if isinstance(value, str) and needle in value:
                return child
            if needle.strip('":').lower() == str(key).lower():
                return child
            found = _find_location(value, needle, child)
            if found:
                return found
    elif isinstance(data, (list, tuple)):
        for i, value in enumerate(data):
            child = f"{path}[{i}]"
            if isinstance(value, str) and needle in value:
                return child
            found = _find_location(value, needle, child)
            if found:
                return found
    return None


@dataclass
class PrivacyDetector:
    """Severity-graded scanner built from a rule set.

    Usage::

        detector = PrivacyDetector()
        violations = detector.scan(envelope.data)
        if any(v.severity.blocking for v in violations):
            ...
    """

    rules: tuple[PrivacyRule, ...] = field(default=EXTENDED_RULES)
    max_examples: int = 3

    def scan(self, data: object) -> list[Violation]:
        """Return every rule that matches *data* (mapping or string)."""
        text = serialize(data)
        violations: list[Violation] = []
        for rule in self.rules:
            matches = [m.group(0) for m in rule.pattern.finditer(text)]
            if not matches:
                continue
            location = "root"
            if not isinstance(data, str):
                location = _find_location(data, matches[0]) or "unknown"
            violations.append(
                Violation(
                    kind=rule.kind,
                    description=rule.description,
                    severity=rule.severity,
                    count=len(matches),
                    examples=tuple(
                        mask_sample(m, rule.mask) for m in matches[: self.max_examples]
                    ),
                    location=location,
                )
            )
        return violations

    def assert_safe(self, data: object, context: str = "data") -> list[Violation]:
        """Raise on blocking findings; return (and log) the non-blocking ones.

        Raises:
            PrivacyViolation: For the first CRITICAL/HIGH finding.
        """
        violations = self.scan(data)
        for violation in violations:
            if violation.severity.blocking:
                sample = violation.examples[0] if violation.examples else ""
                raise PrivacyViolation(
                    violation.kind,
                    sample,
                    f"{violation.description} at {context}.{violation.location}",
                )
        for violation in violations:
            logger.warning(
                "privacy_warning",
                kind=violation.kind,
                severity=violation.severity.value,
                location=f"{context}.{violation.location}",
            )
        return violations
