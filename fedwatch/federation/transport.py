"""Message bus transport — structural contract plus the NATS adapter.

The resilient client depends only on :class:`BusTransport`.  The
production implementation, :class:`NatsTransport`, is a thin wrapper over
``nats-py``: the library owns reconnection and backoff, and reports
connection-status changes through callbacks that are forwarded to the
client as :class:`TransportStatus` events.
"""

from __future__ import annotations

import ssl
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

import nats
import structlog
from nats.aio.client import Client as NatsClient
from nats.aio.msg import Msg

from fedwatch.config import FederationConfig
from fedwatch.errors import TransportError

logger = structlog.get_logger()


class TransportStatus(StrEnum):
    """Connection-status events reported by a transport."""

    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    ERROR = "error"
    CLOSED = "closed"


StatusCallback = Callable[[TransportStatus, Exception | None], None]
MessageCallback = Callable[[str, bytes], Awaitable[None]]


# ── Transport protocol ──────────────────────────────────────────────


@runtime_checkable
class SubscriptionLike(Protocol):
    """Handle returned by :meth:`BusTransport.subscribe`."""

    async def unsubscribe(self) -> None:
        """Stop delivery for this subscription."""
        ...


@runtime_checkable
class BusTransport(Protocol):
    """Structural interface for a publish/subscribe bus connection.

    Any object with these members works, including the in-memory fake
    used by the test-suite.
    """

    @property
    def is_connected(self) -> bool: ...  # noqa: D102

    async def connect(
        self, options: dict[str, Any], on_status: StatusCallback
    ) -> None:
        """Open the connection; raise on failure."""
        ...

    async def publish(self, subject: str, payload: bytes) -> None:
        """Enqueue *payload* on *subject*."""
        ...

    async def subscribe(
        self, subject: str, callback: MessageCallback
    ) -> SubscriptionLike:
        """Register *callback* for *subject* (wildcards allowed)."""
        ...

    async def drain(self) -> None:
        """Flush in-flight work, then close."""
        ...


# ── Connect options ─────────────────────────────────────────────────


def build_ssl_context(config: FederationConfig) -> ssl.SSLContext | None:
    """TLS context for the connection, or ``None`` when TLS is disabled."""
    if not config.tls:
        return None
    ctx = ssl.create_default_context(
        cafile=str(config.tls_ca) if config.tls_ca else None
    )
    if config.tls_cert and config.tls_key:
        ctx.load_cert_chain(str(config.tls_cert), str(config.tls_key))
    return ctx


def build_connect_options(
    config: FederationConfig, name: str = "fedwatch-monitor"
) -> dict[str, Any]:
    """Translate a :class:`FederationConfig` into ``nats.connect`` kwargs.

    Credential precedence: user/password, then token, then an nkey seed,
    then a credentials (JWT) file.  Only one method is passed on.
    """
    options: dict[str, Any] = {
        "servers": list(config.servers),
        "name": name,
        "allow_reconnect": config.reconnect,
        "max_reconnect_attempts": config.max_reconnect_attempts,
        "reconnect_time_wait": config.reconnect_time_wait,
        "connect_timeout": config.connect_timeout,
    }

    if config.user and config.password:
        options["user"] = config.user
        options["password"] = config.password
    elif config.token:
        options["token"] = config.token
    elif config.nkey_seed:
        options["nkeys_seed_str"] = config.nkey_seed
    elif config.credentials_file:
        options["user_credentials"] = str(config.credentials_file)

    ctx = build_ssl_context(config)
    if ctx is not None:
        options["tls"] = ctx
    return options


def auth_method(options: dict[str, Any]) -> str:
    """Name of the credential type in *options* (for logging, never values)."""
    if "user" in options:
        return "user_password"
    if "token" in options:
        return "token"
    if "nkeys_seed_str" in options:
        return "nkey"
    if "user_credentials" in options:
        return "credentials_file"
    return "none"


# ── NATS adapter ────────────────────────────────────────────────────


class NatsTransport:
    """:class:`BusTransport` backed by a ``nats-py`` client."""

    def __init__(self) -> None:
        self._nc: NatsClient | None = None

    @property
    def is_connected(self) -> bool:
        return self._nc is not None and self._nc.is_connected

    async def connect(
        self, options: dict[str, Any], on_status: StatusCallback
    ) -> None:
        reconnect = bool(options.get("allow_reconnect", True))

        async def _disconnected() -> None:
            on_status(TransportStatus.DISCONNECTED, None)
            if reconnect:
                # nats-py has no separate "reconnecting" hook
                on_status(TransportStatus.RECONNECTING, None)

        async def _reconnected() -> None:
            on_status(TransportStatus.RECONNECTED, None)

        async def _error(exc: Exception) -> None:
            on_status(TransportStatus.ERROR, exc)

        async def _closed() -> None:
            on_status(TransportStatus.CLOSED, None)

        try:
            self._nc = await nats.connect(
                disconnected_cb=_disconnected,
                reconnected_cb=_reconnected,
                error_cb=_error,
                closed_cb=_closed,
                **options,
            )
        except Exception as exc:
            raise TransportError(str(exc), error_code="E001") from exc

    async def publish(self, subject: str, payload: bytes) -> None:
        if self._nc is None:
            raise TransportError("not connected")
        try:
            await self._nc.publish(subject, payload)
        except Exception as exc:
            raise TransportError(str(exc)) from exc

    async def subscribe(
        self, subject: str, callback: MessageCallback
    ) -> SubscriptionLike:
        if self._nc is None:
            raise TransportError("not connected", error_code="E003")

        async def _deliver(msg: Msg) -> None:
            await callback(msg.subject, msg.data)

        try:
            return await self._nc.subscribe(subject, cb=_deliver)
        except Exception as exc:
            raise TransportError(str(exc), error_code="E003") from exc

    async def drain(self) -> None:
        if self._nc is None:
            return
        nc, self._nc = self._nc, None
        if nc.is_closed:
            return
        await nc.drain()
