"""Federation aggregator — turns the anonymized event stream into network stats.

The aggregator is a long-running process with its own
:class:`~fedwatch.federation.client.FederationClient`.  It:

* ingests ``tasks.received``, ``tasks.completed``, ``invoices.created``,
  ``heartbeat``, ``nodes.joined`` and ``nodes.left`` envelopes into the
  :class:`~fedwatch.aggregator.store.AggregatorStore` (upserts keyed by
  hashed id or ``nodeId``)
* every ``publish_interval`` recomputes an
  :class:`~fedwatch.aggregator.store.AggregateSnapshot`, publishes it on
  ``truebit.stats.aggregated`` and persists it as history
* every ``stale_check_interval`` evicts silent peers in small batches
* every ``cleanup_interval`` prunes history older than ``retention_days``

All timers are independent asyncio tasks, cancelled together on shutdown.
A failing cycle is logged and retried on the next tick; nothing here ends
the process.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from fedwatch.aggregator.store import AggregateSnapshot, AggregatorStore
from fedwatch.aggregator.validation import InboundRateLimiter, validate_envelope
from fedwatch.config import AggregatorConfig
from fedwatch.errors import AggregationError
from fedwatch.federation.client import FederationClient
from fedwatch.federation.envelope import AnonymizedEnvelope, MessageType, Subject
from fedwatch.privacy.anonymizer import round_timestamp

logger = structlog.get_logger()

RATE_LIMIT_PRUNE_INTERVAL = 60.0

Ingestor = Callable[[str, dict[str, Any], float], bool]


class Aggregator:
    """Consumes federation events and publishes network-wide statistics.

    Args:
        config: Aggregator section of the configuration.
        store: Record store (the caller owns and closes it).
        client: Federation client used to subscribe and to publish summaries.
        clock: Wall-clock time source in epoch seconds.
    """

    def __init__(
        self,
        config: AggregatorConfig,
        store: AggregatorStore,
        client: FederationClient,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._store = store
        self._client = client
        self._clock = clock
        self._limiter = InboundRateLimiter(
            per_node=config.rate_limit_per_node,
            global_limit=config.global_rate_limit,
            window=config.rate_limit_window,
            clock=clock,
        )
        self._ingestors: dict[str, Ingestor] = {
            Subject.TASKS_RECEIVED: self._ingest_task_received,
            Subject.TASKS_COMPLETED: self._ingest_task_completed,
            Subject.INVOICES_CREATED: self._ingest_invoice,
            Subject.HEARTBEAT: self._ingest_heartbeat,
            Subject.NODES_JOINED: self._ingest_node_joined,
            Subject.NODES_LEFT: self._ingest_node_left,
        }
        self._tasks: list[asyncio.Task[None]] = []
        self.ingested = 0
        self.rejected = 0
        self.failed_cycles = 0

    @property
    def store(self) -> AggregatorStore:
        return self._store

    @property
    def subjects(self) -> tuple[str, ...]:
        return tuple(self._ingestors)

    # ── Ingestion ──────────────────────────────────────────────

    def ingest(self, payload: dict[str, Any], subject: str) -> bool:
        """Validate, rate-limit and store one decoded envelope.

        Returns ``True`` if the envelope changed aggregator state.
        """
        ingestor = self._ingestors.get(subject)
        if ingestor is None:
            return False
        if not validate_envelope(payload, subject):
            self.rejected += 1
            return False

        node_id = payload.get("nodeId")
        if not self._limiter.allow(node_id):
            self.rejected += 1
            return False

        data = payload.get("data") or {}
        now = self._clock()
        try:
            accepted = ingestor(node_id, data, now)
            if accepted:
                self._store.record_ingest(subject, now=now)
        except sqlite3.Error as exc:
            logger.error("aggregator_ingest_failed", subject=subject, error=str(exc))
            return False

        if accepted:
            self.ingested += 1
        else:
            self.rejected += 1
        return accepted

    def _handle(self, payload: dict[str, Any], subject: str) -> None:
        self.ingest(payload, subject)

    def _ingest_task_received(
        self, node_id: str, data: dict[str, Any], now: float
    ) -> bool:
        task_hash = data.get("taskIdHash")
        if not task_hash:
            return False
        self._store.touch_node(node_id, now=now)
        self._store.upsert_task(
            task_hash,
            chain_id=data.get("chainId"),
            task_type=data.get("taskType"),
            now=now,
        )
        logger.debug("aggregator_task_received", task=task_hash[:12])
        return True

    def _ingest_task_completed(
        self, node_id: str, data: dict[str, Any], now: float
    ) -> bool:
        task_hash = data.get("taskIdHash")
        if not task_hash:
            return False
        self._store.touch_node(node_id, now=now)
        self._store.upsert_task_completed(
            task_hash,
            status=data.get("status") or "completed",
            success=data.get("success"),
            execution_time_bucket=data.get("executionTimeBucket"),
            gas_used_bucket=data.get("gasUsedBucket"),
            cached=bool(data.get("cached")),
            chain_id=data.get("chainId"),
            task_type=data.get("taskType"),
            now=now,
        )
        logger.debug("aggregator_task_completed", task=task_hash[:12])
        return True

    def _ingest_invoice(self, node_id: str, data: dict[str, Any], now: float) -> bool:
        invoice_hash = data.get("invoiceIdHash")
        if not invoice_hash:
            return False
        self._store.touch_node(node_id, now=now)
        self._store.upsert_invoice(
            invoice_hash,
            task_id_hash=data.get("taskIdHash"),
            chain_id=data.get("chainId"),
            steps_computed_bucket=data.get("stepsComputedBucket"),
            memory_used_bucket=data.get("memoryUsedBucket"),
            operation=data.get("operation"),
            now=now,
        )
        logger.debug("aggregator_invoice_created", invoice=invoice_hash[:12])
        return True

    def _ingest_heartbeat(self, node_id: str, data: dict[str, Any], now: float) -> bool:
        self._store.upsert_node(
            node_id,
            status=data.get("status") or "online",
            total_tasks_bucket=data.get("totalTasksBucket"),
            active_tasks_bucket=data.get("activeTasksBucket"),
            continent_bucket=data.get("continentBucket"),
            now=now,
        )
        logger.debug("aggregator_heartbeat", node=node_id[:12])
        return True

    def _ingest_node_joined(
        self, node_id: str, data: dict[str, Any], now: float
    ) -> bool:
        self._store.upsert_node(node_id, status="online", now=now)
        logger.info("aggregator_node_joined", node=node_id[:12])
        return True

    def _ingest_node_left(self, node_id: str, data: dict[str, Any], now: float) -> bool:
        self._store.remove_nodes([node_id])
        logger.info("aggregator_node_left", node=node_id[:12])
        return True

    # ── Periodic work ──────────────────────────────────────────

    async def publish_stats(self) -> AggregateSnapshot | None:
        """Compute, persist and publish one network summary."""
        now = self._clock()
        try:
            snapshot = self._store.compute_snapshot(
                active_window=self._config.stale_threshold, now=now
            )
            self._store.save_snapshot(snapshot, now=now)
        except sqlite3.Error as exc:
            self.failed_cycles += 1
            err = AggregationError(str(exc))
            logger.error("aggregator_cycle_failed", code=err.info.code, error=str(err))
            return None

        envelope = AnonymizedEnvelope(
            type=MessageType.NETWORK_STATS,
            node_id=None,
            timestamp=round_timestamp(now),
            data=snapshot.to_data(),
        )
        result = await self._client.publish(Subject.STATS_AGGREGATED, envelope)
        logger.info(
            "aggregator_stats_published",
            active_nodes=snapshot.active_nodes,
            tasks=snapshot.total_tasks,
            invoices=snapshot.total_invoices,
            outcome=result.outcome.value,
        )
        return snapshot

    def run_retention_cleanup(self) -> int:
        """Delete history older than ``retention_days``."""
        try:
            return self._store.cleanup_old_data(
                self._config.retention_days, now=self._clock()
            )
        except sqlite3.Error as exc:
            logger.error("aggregator_cleanup_failed", error=str(exc))
            return 0

    async def evict_stale_peers(self) -> int:
        """Remove peers silent for longer than ``stale_threshold``.

        Deletes in batches of ``stale_batch_size`` with a short sleep between
        batches, so a large sweep never blocks the event loop.
        """
        try:
            stale = self._store.get_stale_nodes(
                self._config.stale_threshold, now=self._clock()
            )
        except sqlite3.Error as exc:
            self.failed_cycles += 1
            logger.error("aggregator_eviction_failed", error=str(exc))
            return 0
        if not stale:
            return 0
        size = self._config.stale_batch_size
        removed = 0
        for start in range(0, len(stale), size):
            if start:
                await asyncio.sleep(self._config.stale_batch_delay)
            try:
                removed += self._store.remove_nodes(stale[start : start + size])
            except sqlite3.Error as exc:
                logger.error("aggregator_eviction_failed", error=str(exc))
                break
        logger.info("aggregator_stale_peers_evicted", count=removed)
        return removed

    def prune_rate_limits(self) -> None:
        pruned = self._limiter.prune()
        if pruned:
            logger.debug("aggregator_rate_limit_pruned", nodes=pruned)

    # ── Lifecycle ──────────────────────────────────────────────

    def _every(
        self, interval: float, action: Callable[[], Awaitable[Any] | Any], name: str
    ) -> asyncio.Task[None]:
        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    result = action()
                    if asyncio.iscoroutine(result):
                        await result
                except Exception:  # noqa: BLE001
                    self.failed_cycles += 1
                    logger.exception("aggregator_cycle_failed", task=name)

        return asyncio.create_task(_loop(), name=name)

    async def start(self) -> bool:
        """Connect, subscribe and start the periodic tasks.

        Returns ``False`` if the initial connection failed.
        """
        if not self._client.connected and not await self._client.connect():
            return False
        for subject in self._ingestors:
            await self._client.subscribe(subject, self._handle)

        cfg = self._config
        self._tasks = [
            self._every(cfg.publish_interval, self.publish_stats, "aggregator-publish"),
            self._every(
                cfg.stale_check_interval, self.evict_stale_peers, "aggregator-evict"
            ),
            self._every(
                cfg.cleanup_interval, self.run_retention_cleanup, "aggregator-cleanup"
            ),
            self._every(
                RATE_LIMIT_PRUNE_INTERVAL, self.prune_rate_limits, "aggregator-prune"
            ),
        ]
        logger.info(
            "aggregator_started",
            subjects=len(self._ingestors),
            publish_interval=cfg.publish_interval,
        )
        await self.publish_stats()
        return True

    async def shutdown(self) -> None:
        """Cancel the periodic tasks, then drain the connection."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self._client.disconnect()
        logger.info(
            "aggregator_stopped",
            ingested=self.ingested,
            rejected=self.rejected,
        )

    async def run(self, stop: asyncio.Event) -> bool:
        """Run until *stop* is set.  Returns ``False`` if startup failed."""
        if not await self.start():
            return False
        try:
            await stop.wait()
        finally:
            await self.shutdown()
        return True
