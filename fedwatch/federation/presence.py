"""Node presence — join announcement, periodic heartbeats, leave on shutdown."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from fedwatch.federation.client import FederationClient
from fedwatch.privacy.anonymizer import NodeStatus

logger = structlog.get_logger()

StatusProvider = Callable[[], NodeStatus]


class FederationPresence:
    """Keeps this node visible to the federation.

    ``start()`` publishes ``node_joined``, then a heartbeat immediately and
    every *interval* seconds.  Heartbeats are skipped while the client is
    unhealthy (disconnected or circuit open).  ``stop()`` cancels the loop,
    makes one best-effort ``node_left`` publish bounded by *leave_timeout*,
    then drains the connection.

    Args:
        client: A connected :class:`FederationClient`.
        status_provider: Returns the current coarse node status.
        interval: Seconds between heartbeats.
        leave_timeout: Upper bound for the final leave publish.
    """

    def __init__(
        self,
        client: FederationClient,
        status_provider: StatusProvider,
        *,
        interval: float = 30.0,
        leave_timeout: float = 2.0,
    ) -> None:
        self._client = client
        self._status = status_provider
        self._interval = interval
        self._leave_timeout = leave_timeout
        self._task: asyncio.Task[None] | None = None
        self.heartbeats_sent = 0
        self.heartbeats_skipped = 0
        self.heartbeats_failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        await self._client.publish_node_joined()
        self._task = asyncio.create_task(self._loop(), name="federation-heartbeat")
        logger.info("presence_started", interval=self._interval)

    async def beat(self) -> bool:
        """Publish one heartbeat if the client is healthy."""
        if not self._client.is_healthy():
            self.heartbeats_skipped += 1
            logger.debug("heartbeat_skipped")
            return False
        result = await self._client.publish_heartbeat(self._status())
        if result:
            self.heartbeats_sent += 1
        return result.ok

    async def _loop(self) -> None:
        while True:
            try:
                await self.beat()
            except Exception:  # noqa: BLE001
                self.heartbeats_failed += 1
                logger.exception("heartbeat_failed")
            await asyncio.sleep(self._interval)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        if self._client.is_healthy():
            try:
                await asyncio.wait_for(
                    self._client.publish_node_left(timeout=self._leave_timeout),
                    self._leave_timeout,
                )
            except TimeoutError:
                logger.warning("presence_leave_timeout")
        await self._client.disconnect()
        logger.info("presence_stopped", heartbeats=self.heartbeats_sent)
