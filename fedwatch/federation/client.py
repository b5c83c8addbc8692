"""Resilient federation client.

Wraps a :class:`~fedwatch.federation.transport.BusTransport` with the
publish pipeline every outbound envelope goes through, in order:

1. the client must be connected
2. the circuit breaker must be closed
3. the rate limiter must accept (rejections are silent, logged drops)
4. the privacy checks must pass (severity-graded detector when enabled,
   then the mandatory denylist)
5. the transport must accept the payload

Failures at steps 4 and 5 count toward the circuit breaker.  None of the
outcomes raise: :meth:`FederationClient.publish` returns a
:class:`PublishResult` that is truthy only when the message was sent.

Inbound payloads are JSON-decoded before they reach a handler; decode
failures and handler exceptions are logged and counted, never propagated.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from fedwatch.config import FederationConfig
from fedwatch.errors import DecodeError, PrivacyViolation, TransportError
from fedwatch.federation.breaker import CircuitBreaker
from fedwatch.federation.envelope import (
    AnonymizedEnvelope,
    Subject,
    decode_payload,
    is_wildcard,
)
from fedwatch.federation.rate_limit import RateLimiter
from fedwatch.federation.transport import (
    BusTransport,
    NatsTransport,
    SubscriptionLike,
    TransportStatus,
    auth_method,
    build_connect_options,
)
from fedwatch.privacy.anonymizer import (
    Anonymizer,
    InvoiceRecord,
    NodeStatus,
    TaskRecord,
)
from fedwatch.privacy.credentials import NodeCredential
from fedwatch.privacy.rules import PrivacyDetector, validate_message

logger = structlog.get_logger()

MessageHandler = Callable[[dict[str, Any], str], Awaitable[None] | None]
Listener = Callable[..., None]


class PublishOutcome(StrEnum):
    """Why a publish did or did not reach the bus."""

    SENT = "sent"
    NOT_CONNECTED = "not_connected"
    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"
    PRIVACY_VIOLATION = "privacy_violation"
    TRANSPORT_ERROR = "transport_error"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class PublishResult:
    """Result of :meth:`FederationClient.publish`; truthy only when sent."""

    outcome: PublishOutcome
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is PublishOutcome.SENT

    def __bool__(self) -> bool:
        return self.ok


class ClientEvent(StrEnum):
    """Events re-emitted to :meth:`FederationClient.add_listener` observers."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    ERROR = "error"
    PUBLISHED = "published"
    MESSAGE = "message"


@dataclass(frozen=True)
class FederationStats:
    """Point-in-time client counters."""

    messages_sent: int
    messages_received: int
    errors: int
    reconnections: int
    connected: bool
    circuit_open: bool
    subscriptions: int
    node_id: str
    failure_count: int = 0
    rate_limited: int = 0
    decode_errors: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "messagesSent": self.messages_sent,
            "messagesReceived": self.messages_received,
            "errors": self.errors,
            "reconnections": self.reconnections,
            "connected": self.connected,
            "circuitOpen": self.circuit_open,
            "subscriptions": self.subscriptions,
            "nodeId": self.node_id,
        }


class FederationClient:
    """Privacy-checked, rate-limited, circuit-broken bus client.

    Usage::

        client = FederationClient(config.federation, credential)
        if await client.connect():
            await client.publish_heartbeat(NodeStatus(active_tasks=2))
        ...
        await client.disconnect()

    Args:
        config: Federation section of the configuration.
        credential: This node's identity; the salt never leaves the process.
        transport: Bus implementation (defaults to :class:`NatsTransport`).
        name: Connection name announced to the server.
        clock: Monotonic time source shared by the limiter and the breaker.
        anonymizer: Override the envelope builder (tests pin its clock).
    """

    def __init__(
        self,
        config: FederationConfig,
        credential: NodeCredential,
        *,
        transport: BusTransport | None = None,
        name: str = "fedwatch-monitor",
        clock: Callable[[], float] = time.monotonic,
        anonymizer: Anonymizer | None = None,
    ) -> None:
        self._config = config
        self._credential = credential
        self._transport: BusTransport = transport or NatsTransport()
        self._name = name
        self._anonymizer = anonymizer or Anonymizer(credential)
        self._limiter = RateLimiter(config.max_messages_per_minute, clock=clock)
        self._breaker = CircuitBreaker(clock=clock)
        self._detector = PrivacyDetector()

        self._connected = False
        self._messages_sent = 0
        self._messages_received = 0
        self._errors = 0
        self._reconnections = 0
        self._decode_errors = 0

        self._listeners: dict[ClientEvent, list[Listener]] = defaultdict(list)
        self._subscriptions: list[tuple[str, SubscriptionLike]] = []
        self._specific_subjects: set[str] = set()

    # ── Properties ─────────────────────────────────────────────────

    @property
    def node_id(self) -> str:
        return self._credential.node_id

    @property
    def anonymizer(self) -> Anonymizer:
        return self._anonymizer

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def connected(self) -> bool:
        return self._connected

    def is_healthy(self) -> bool:
        """Connected and the circuit breaker is closed."""
        return self._connected and not self._breaker.is_open

    def stats(self) -> FederationStats:
        return FederationStats(
            messages_sent=self._messages_sent,
            messages_received=self._messages_received,
            errors=self._errors,
            reconnections=self._reconnections,
            connected=self._connected,
            circuit_open=self._breaker.is_open,
            subscriptions=len(self._subscriptions),
            node_id=self.node_id,
            failure_count=self._breaker.failures,
            rate_limited=self._limiter.rejected,
            decode_errors=self._decode_errors,
        )

    # ── Observers ──────────────────────────────────────────────────

    def add_listener(self, event: ClientEvent | str, callback: Listener) -> None:
        """Register *callback* for *event*; many callbacks per event are fine."""
        self._listeners[ClientEvent(event)].append(callback)

    def remove_listener(self, event: ClientEvent | str, callback: Listener) -> None:
        listeners = self._listeners.get(ClientEvent(event), [])
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: ClientEvent, *args: object) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception:
                logger.exception("federation_listener_failed", event=event.value)

    # ── Connection lifecycle ───────────────────────────────────────

    async def connect(self, timeout: float | None = None) -> bool:
        """Connect to the bus.  Returns ``False`` (and logs) on failure."""
        if self._connected:
            return True
        options = build_connect_options(self._config, self._name)
        try:
            await asyncio.wait_for(
                self._transport.connect(options, self._on_status),
                timeout or self._config.connect_timeout,
            )
        except (TransportError, TimeoutError, OSError) as exc:
            self._errors += 1
            logger.error(
                "federation_connect_failed",
                servers=len(options["servers"]),
                error=str(exc) or type(exc).__name__,
            )
            self._emit(ClientEvent.ERROR, exc)
            return False

        self._connected = True
        logger.info(
            "federation_connected",
            servers=len(options["servers"]),
            auth=auth_method(options),
            tls="tls" in options,
            node_id=self.node_id[:12],
        )
        self._emit(ClientEvent.CONNECTED)
        return True

    def _on_status(self, status: TransportStatus, exc: Exception | None) -> None:
        if status is TransportStatus.DISCONNECTED:
            self._connected = False
            logger.warning("federation_disconnected")
            self._emit(ClientEvent.DISCONNECTED)
        elif status is TransportStatus.RECONNECTING:
            logger.info("federation_reconnecting")
            self._emit(ClientEvent.RECONNECTING)
        elif status is TransportStatus.RECONNECTED:
            self._connected = True
            self._reconnections += 1
            logger.info("federation_reconnected", total=self._reconnections)
            self._emit(ClientEvent.RECONNECTED)
        elif status is TransportStatus.ERROR:
            self._errors += 1
            logger.warning("federation_transport_error", error=str(exc))
            self._emit(ClientEvent.ERROR, exc)
        elif status is TransportStatus.CLOSED:
            self._connected = False
            logger.info("federation_connection_closed")

    async def disconnect(self) -> None:
        """Drain in-flight work, then close.

        Publish any "leaving" announcement *before* calling this.
        """
        self._breaker.cancel()
        try:
            await self._transport.drain()
        except (TransportError, TimeoutError, OSError) as exc:
            logger.warning("federation_drain_failed", error=str(exc))
        was_connected = self._connected
        self._connected = False
        self._subscriptions.clear()
        self._specific_subjects.clear()
        if was_connected:
            logger.info("federation_disconnected", reason="shutdown")
            self._emit(ClientEvent.DISCONNECTED)

    # ── Publish ────────────────────────────────────────────────────

    def _record_failure(self) -> None:
        self._errors += 1
        self._breaker.record_failure()

    async def publish(
        self,
        subject: str,
        envelope: AnonymizedEnvelope,
        *,
        timeout: float | None = None,
    ) -> PublishResult:
        """Run *envelope* through the publish pipeline and send it."""
        if not self._connected:
            logger.debug("federation_publish_skipped", reason="not_connected")
            return PublishResult(PublishOutcome.NOT_CONNECTED)

        if self._breaker.is_open:
            logger.debug("federation_publish_skipped", reason="circuit_open")
            return PublishResult(PublishOutcome.CIRCUIT_OPEN)

        if not self._limiter.check():
            logger.info(
                "federation_rate_limited",
                subject=subject,
                limit=self._limiter.limit,
            )
            return PublishResult(PublishOutcome.RATE_LIMITED)

        try:
            if self._config.enable_privacy_checks:
                self._detector.assert_safe(envelope.data, context=envelope.type.value)
            validate_message(envelope)
            payload = envelope.to_json().encode("utf-8")
            await asyncio.wait_for(
                self._transport.publish(subject, payload),
                timeout or self._config.publish_timeout,
            )
        except PrivacyViolation as exc:
            self._record_failure()
            logger.error(
                "federation_privacy_violation",
                kind=exc.kind,
                sample=exc.sample,
                subject=subject,
                type=envelope.type.value,
            )
            self._emit(ClientEvent.ERROR, exc)
            return PublishResult(PublishOutcome.PRIVACY_VIOLATION, exc)
        except TimeoutError as exc:
            self._record_failure()
            logger.warning("federation_publish_timeout", subject=subject)
            self._emit(ClientEvent.ERROR, exc)
            return PublishResult(PublishOutcome.TIMEOUT, exc)
        except TransportError as exc:
            self._record_failure()
            logger.warning("federation_publish_failed", subject=subject, error=str(exc))
            self._emit(ClientEvent.ERROR, exc)
            return PublishResult(PublishOutcome.TRANSPORT_ERROR, exc)

        self._messages_sent += 1
        self._emit(ClientEvent.PUBLISHED, subject, envelope)
        return PublishResult(PublishOutcome.SENT)

    async def publish_task_received(self, task: TaskRecord) -> PublishResult:
        envelope = self._anonymizer.anonymize_task_received(task)
        return await self.publish(Subject.TASKS_RECEIVED, envelope)

    async def publish_task_completed(self, task: TaskRecord) -> PublishResult:
        envelope = self._anonymizer.anonymize_task_completed(task)
        return await self.publish(Subject.TASKS_COMPLETED, envelope)

    async def publish_heartbeat(self, status: NodeStatus) -> PublishResult:
        envelope = self._anonymizer.anonymize_heartbeat(status)
        return await self.publish(Subject.HEARTBEAT, envelope)

    async def publish_invoice(self, invoice: InvoiceRecord) -> PublishResult:
        envelope = self._anonymizer.anonymize_invoice(invoice)
        return await self.publish(Subject.INVOICES_CREATED, envelope)

    async def publish_node_joined(self) -> PublishResult:
        envelope = self._anonymizer.anonymize_node_joined()
        return await self.publish(Subject.NODES_JOINED, envelope)

    async def publish_node_left(self, *, timeout: float | None = None) -> PublishResult:
        envelope = self._anonymizer.anonymize_node_left()
        return await self.publish(Subject.NODES_LEFT, envelope, timeout=timeout)

    # ── Subscribe ──────────────────────────────────────────────────

    def _counts_message(self, pattern: str, subject: str) -> bool:
        # A wildcard delivery is only counted when no specific-subject
        # subscription will see (and count) the same message.
        if not is_wildcard(pattern):
            return True
        return subject not in self._specific_subjects

    def _dispatcher(
        self, pattern: str, handler: MessageHandler
    ) -> Callable[[str, bytes], Awaitable[None]]:
        async def _on_message(subject: str, data: bytes) -> None:
            try:
                payload = decode_payload(data)
            except DecodeError as exc:
                self._errors += 1
                self._decode_errors += 1
                logger.warning(
                    "federation_decode_failed", subject=subject, error=str(exc)
                )
                return

            if self._counts_message(pattern, subject):
                self._messages_received += 1
                self._emit(ClientEvent.MESSAGE, subject, payload)

            try:
                result = handler(payload, subject)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._errors += 1
                logger.exception("federation_handler_failed", subject=subject)

        return _on_message

    async def subscribe(
        self, subject: str, handler: MessageHandler
    ) -> SubscriptionLike:
        """Register *handler* for *subject*.

        The handler receives ``(payload, subject)`` with ``payload`` already
        JSON-decoded.  It may be a plain function or a coroutine function.

        Raises:
            TransportError: If not connected or the bus refuses the subscription.
        """
        if not self._connected:
            raise TransportError("not connected", error_code="E003")
        handle = await self._transport.subscribe(
            subject, self._dispatcher(subject, handler)
        )
        self._subscriptions.append((subject, handle))
        if not is_wildcard(subject):
            self._specific_subjects.add(subject)
        logger.info("federation_subscribed", subject=subject)
        return handle

    async def subscribe_to_federation(
        self, handlers: Mapping[str, MessageHandler]
    ) -> list[SubscriptionLike]:
        """Subscribe each subject in *handlers*, plus ``truebit.>``."""
        handles = [
            await self.subscribe(subject, handler)
            for subject, handler in handlers.items()
        ]
        handles.append(await self.subscribe(Subject.ALL, self._log_message))
        return handles

    @staticmethod
    def _log_message(payload: dict[str, Any], subject: str) -> None:
        logger.debug("federation_message", subject=subject, type=payload.get("type"))
