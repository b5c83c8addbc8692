"""Aggregator record store — network-wide state built from anonymized events.

Tables:

* ``aggregated_tasks`` / ``aggregated_invoices`` — one row per hashed id,
  upserted so that replayed or out-of-order events stay idempotent.
* ``active_nodes`` — one row per ``nodeId`` (the peer records); rows are
  evicted once a node falls silent.
* ``network_stats_history`` — immutable snapshot rows, one per publish.
* ``ingest_history`` — per-subject message counts per hour.

Only the two history tables are subject to retention cleanup; current
task/invoice/node state is never deleted by it.

All timestamps are epoch seconds (``REAL``).  Every method that reads the
clock accepts ``now`` so callers and tests can control time.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

import structlog

from fedwatch.db import SQLiteStore

logger = structlog.get_logger()

# ── Constants ───────────────────────────────────────────────────────────

ACTIVE_WINDOW_SECONDS = 300.0  # heartbeat within the last 5 minutes
DAY_SECONDS = 86_400.0
HOUR_SECONDS = 3_600

# Distribution name -> (table, column).  Only these columns are ever
# interpolated into SQL.
_DISTRIBUTIONS: dict[str, tuple[str, str]] = {
    "execution_time": ("aggregated_tasks", "execution_time_bucket"),
    "gas_usage": ("aggregated_tasks", "gas_used_bucket"),
    "steps_computed": ("aggregated_invoices", "steps_computed_bucket"),
    "memory_used": ("aggregated_invoices", "memory_used_bucket"),
    "chain": ("aggregated_tasks", "chain_id"),
    "task_type": ("aggregated_tasks", "task_type"),
    "continent": ("active_nodes", "continent_bucket"),
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass(frozen=True)
class AggregateSnapshot:
    """Network-wide statistics at one point in time."""

    active_nodes: int = 0
    total_nodes: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    cached_tasks: int = 0
    tasks_last_24h: int = 0
    total_invoices: int = 0
    invoices_last_24h: int = 0
    success_rate: float = 0.0
    cache_hit_rate: float = 0.0
    execution_time_distribution: dict[str, int] = field(default_factory=dict)
    gas_usage_distribution: dict[str, int] = field(default_factory=dict)
    steps_computed_distribution: dict[str, int] = field(default_factory=dict)
    memory_used_distribution: dict[str, int] = field(default_factory=dict)
    chain_distribution: dict[str, int] = field(default_factory=dict)
    task_type_distribution: dict[str, int] = field(default_factory=dict)
    continent_distribution: dict[str, int] = field(default_factory=dict)

    def to_data(self) -> dict[str, object]:
        """Wire form (camelCase keys) for the ``network_stats`` envelope."""
        data = {_camel(k): v for k, v in asdict(self).items()}
        # "tasks_last_24h" camel-cases to "tasksLast24H"
        data["tasksLast24h"] = data.pop("tasksLast24H")
        data["invoicesLast24h"] = data.pop("invoicesLast24H")
        return data


@dataclass(frozen=True)
class StoredSnapshot:
    """A persisted history row."""

    id: int
    recorded_at: float
    data: dict[str, object]


@dataclass(frozen=True)
class PeerRecord:
    """A node known to the aggregator."""

    node_id: str
    first_seen: float
    last_seen: float
    status: str
    total_tasks_bucket: str | None
    active_tasks_bucket: str | None
    continent_bucket: str | None
    heartbeat_count: int


class AggregatorStore(SQLiteStore):
    """SQLite-backed aggregator state.

    Usage::

        store = AggregatorStore(Path("~/.fedwatch/aggregator.db"))
        store.upsert_node("node-...", status="online")
        snapshot = store.compute_snapshot()
        store.save_snapshot(snapshot)
        store.close()
    """

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS aggregated_tasks (
            task_id_hash          TEXT PRIMARY KEY,
            first_seen            REAL NOT NULL,
            last_seen             REAL NOT NULL,
            chain_id              TEXT,
            task_type             TEXT,
            status                TEXT NOT NULL DEFAULT 'received',
            success               INTEGER,
            execution_time_bucket TEXT,
            gas_used_bucket       TEXT,
            cached                INTEGER
        );
        CREATE TABLE IF NOT EXISTS aggregated_invoices (
            invoice_id_hash       TEXT PRIMARY KEY,
            task_id_hash          TEXT,
            first_seen            REAL NOT NULL,
            last_seen             REAL NOT NULL,
            chain_id              TEXT,
            steps_computed_bucket TEXT,
            memory_used_bucket    TEXT,
            operation             TEXT
        );
        CREATE TABLE IF NOT EXISTS active_nodes (
            node_id             TEXT PRIMARY KEY,
            first_seen          REAL NOT NULL,
            last_seen           REAL NOT NULL,
            status              TEXT NOT NULL DEFAULT 'online',
            total_tasks_bucket  TEXT,
            active_tasks_bucket TEXT,
            continent_bucket    TEXT,
            heartbeat_count     INTEGER NOT NULL DEFAULT 1
        );
        CREATE TABLE IF NOT EXISTS network_stats_history (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            recorded_at     REAL NOT NULL,
            active_nodes    INTEGER,
            total_nodes     INTEGER,
            total_tasks     INTEGER,
            completed_tasks INTEGER,
            failed_tasks    INTEGER,
            cached_tasks    INTEGER,
            total_invoices  INTEGER,
            success_rate    REAL,
            cache_hit_rate  REAL,
            data            TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS ingest_history (
            hour    INTEGER NOT NULL,
            subject TEXT NOT NULL,
            count   INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (hour, subject)
        );
        CREATE INDEX IF NOT EXISTS idx_tasks_first_seen
            ON aggregated_tasks (first_seen);
        CREATE INDEX IF NOT EXISTS idx_invoices_first_seen
            ON aggregated_invoices (first_seen);
        CREATE INDEX IF NOT EXISTS idx_nodes_last_seen
            ON active_nodes (last_seen);
        CREATE INDEX IF NOT EXISTS idx_stats_recorded
            ON network_stats_history (recorded_at);
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        super().__init__(db_path)

    # ── Tasks ──────────────────────────────────────────────────

    def upsert_task(
        self,
        task_id_hash: str,
        *,
        chain_id: str | None = None,
        task_type: str | None = None,
        now: float | None = None,
    ) -> None:
        """Record a ``task_received`` event.

        A task already known (for instance completed first) keeps its
        status; only ``last_seen`` and missing metadata are updated.
        """
        now = time.time() if now is None else now
        self._conn.execute(
            """
            INSERT INTO aggregated_tasks
                (task_id_hash, first_seen, last_seen, chain_id, task_type)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(task_id_hash) DO UPDATE SET
                last_seen = excluded.last_seen,
                chain_id = COALESCE(chain_id, excluded.chain_id),
                task_type = COALESCE(task_type, excluded.task_type)
            """,
            (task_id_hash, now, now, chain_id, task_type),
        )
        self._conn.commit()

    def upsert_task_completed(
        self,
        task_id_hash: str,
        *,
        status: str = "completed",
        success: bool | None = None,
        execution_time_bucket: str | None = None,
        gas_used_bucket: str | None = None,
        cached: bool = False,
        chain_id: str | None = None,
        task_type: str | None = None,
        now: float | None = None,
    ) -> None:
        """Record a ``task_completed`` event, creating the task if unseen."""
        now = time.time() if now is None else now
        success_int = None if success is None else int(bool(success))
        self._conn.execute(
            """
            INSERT INTO aggregated_tasks (
                task_id_hash, first_seen, last_seen, chain_id, task_type,
                status, success, execution_time_bucket, gas_used_bucket, cached
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(task_id_hash) DO UPDATE SET
                last_seen = excluded.last_seen,
                chain_id = COALESCE(excluded.chain_id, chain_id),
                task_type = COALESCE(excluded.task_type, task_type),
                status = excluded.status,
                success = excluded.success,
                execution_time_bucket = excluded.execution_time_bucket,
                gas_used_bucket = excluded.gas_used_bucket,
                cached = excluded.cached
            """,
            (
                task_id_hash,
                now,
                now,
                chain_id,
                task_type,
                status,
                success_int,
                execution_time_bucket,
                gas_used_bucket,
                int(bool(cached)),
            ),
        )
        self._conn.commit()

    def get_task(self, task_id_hash: str) -> dict[str, object] | None:
        row = self._conn.execute(
            "SELECT * FROM aggregated_tasks WHERE task_id_hash = ?",
            (task_id_hash,),
        ).fetchone()
        return dict(row) if row else None

    def task_count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) FROM aggregated_tasks").fetchone()
        return int(row[0]) if row else 0

    # ── Invoices ───────────────────────────────────────────────

    def upsert_invoice(
        self,
        invoice_id_hash: str,
        *,
        task_id_hash: str | None = None,
        chain_id: str | None = None,
        steps_computed_bucket: str | None = None,
        memory_used_bucket: str | None = None,
        operation: str | None = None,
        now: float | None = None,
    ) -> None:
        now = time.time() if now is None else now
        self._conn.execute(
            """
            INSERT INTO aggregated_invoices (
                invoice_id_hash, task_id_hash, first_seen, last_seen, chain_id,
                steps_computed_bucket, memory_used_bucket, operation
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(invoice_id_hash) DO UPDATE SET
                last_seen = excluded.last_seen,
                steps_computed_bucket = excluded.steps_computed_bucket,
                memory_used_bucket = excluded.memory_used_bucket,
                operation = COALESCE(excluded.operation, operation)
            """,
            (
                invoice_id_hash,
                task_id_hash,
                now,
                now,
                chain_id,
                steps_computed_bucket,
                memory_used_bucket,
                operation,
            ),
        )
        self._conn.commit()

    def invoice_count(self) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM aggregated_invoices"
        ).fetchone()
        return int(row[0]) if row else 0

    # ── Nodes (peer records) ───────────────────────────────────

    def upsert_node(
        self,
        node_id: str,
        *,
        status: str = "online",
        total_tasks_bucket: str | None = None,
        active_tasks_bucket: str | None = None,
        continent_bucket: str | None = None,
        now: float | None = None,
    ) -> None:
        """Insert or refresh a peer.  ``first_seen`` is never overwritten."""
        now = time.time() if now is None else now
        self._conn.execute(
            """
            INSERT INTO active_nodes (
                node_id, first_seen, last_seen, status,
                total_tasks_bucket, active_tasks_bucket, continent_bucket
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(node_id) DO UPDATE SET
                last_seen = excluded.last_seen,
                status = excluded.status,
                total_tasks_bucket =
                    COALESCE(excluded.total_tasks_bucket, total_tasks_bucket),
                active_tasks_bucket =
                    COALESCE(excluded.active_tasks_bucket, active_tasks_bucket),
                continent_bucket =
                    COALESCE(excluded.continent_bucket, continent_bucket),
                heartbeat_count = heartbeat_count + 1
            """,
            (
                node_id,
                now,
                now,
                status,
                total_tasks_bucket,
                active_tasks_bucket,
                continent_bucket,
            ),
        )
        self._conn.commit()

    def touch_node(self, node_id: str, *, now: float | None = None) -> None:
        """Refresh ``last_seen`` for any message from *node_id*."""
        now = time.time() if now is None else now
        self._conn.execute(
            """
            INSERT INTO active_nodes (node_id, first_seen, last_seen)
            VALUES (?, ?, ?)
            ON CONFLICT(node_id) DO UPDATE SET last_seen = excluded.last_seen
            """,
            (node_id, now, now),
        )
        self._conn.commit()

    def get_node(self, node_id: str) -> PeerRecord | None:
        row = self._conn.execute(
            """
            SELECT node_id, first_seen, last_seen, status, total_tasks_bucket,
                   active_tasks_bucket, continent_bucket, heartbeat_count
            FROM active_nodes WHERE node_id = ?
            """,
            (node_id,),
        ).fetchone()
        return PeerRecord(*row) if row else None

    def remove_nodes(self, node_ids: list[str]) -> int:
        """Delete peers by id.  Returns the number removed."""
        if not node_ids:
            return 0
        cursor = self._conn.executemany(
            "DELETE FROM active_nodes WHERE node_id = ?",
            [(node_id,) for node_id in node_ids],
        )
        self._conn.commit()
        return cursor.rowcount

    def get_stale_nodes(
        self, threshold: float = ACTIVE_WINDOW_SECONDS, *, now: float | None = None
    ) -> list[str]:
        """Ids of peers silent for longer than *threshold* seconds."""
        now = time.time() if now is None else now
        rows = self._conn.execute(
            "SELECT node_id FROM active_nodes WHERE last_seen < ? ORDER BY last_seen",
            (now - threshold,),
        ).fetchall()
        return [r[0] for r in rows]

    def node_count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) FROM active_nodes").fetchone()
        return int(row[0]) if row else 0

    def active_node_count(
        self, window: float = ACTIVE_WINDOW_SECONDS, *, now: float | None = None
    ) -> int:
        now = time.time() if now is None else now
        row = self._conn.execute(
            "SELECT COUNT(*) FROM active_nodes WHERE last_seen > ?",
            (now - window,),
        ).fetchone()
        return int(row[0]) if row else 0

    # ── Statistics ─────────────────────────────────────────────

    def distribution(self, name: str) -> dict[str, int]:
        """Counts per label for one whitelisted distribution."""
        table, column = _DISTRIBUTIONS[name]
        rows = self._conn.execute(
            f"SELECT {column}, COUNT(*) FROM {table} "  # noqa: S608
            f"WHERE {column} IS NOT NULL GROUP BY {column}"
        ).fetchall()
        return {str(r[0]): int(r[1]) for r in rows}

    def compute_snapshot(
        self,
        *,
        active_window: float = ACTIVE_WINDOW_SECONDS,
        now: float | None = None,
    ) -> AggregateSnapshot:
        """Recompute network statistics from the current record sets."""
        now = time.time() if now is None else now
        day_ago = now - DAY_SECONDS

        task_row = self._conn.execute(
            """
            SELECT
                COUNT(*),
                COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0),
                COALESCE(SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END), 0),
                COALESCE(SUM(CASE WHEN cached = 1 THEN 1 ELSE 0 END), 0),
                COALESCE(SUM(CASE WHEN first_seen > ? THEN 1 ELSE 0 END), 0)
            FROM aggregated_tasks
            """,
            (day_ago,),
        ).fetchone()
        total, completed, failed, cached, tasks_24h = (int(v) for v in task_row)

        invoice_row = self._conn.execute(
            """
            SELECT
                COUNT(*),
                COALESCE(SUM(CASE WHEN first_seen > ? THEN 1 ELSE 0 END), 0)
            FROM aggregated_invoices
            """,
            (day_ago,),
        ).fetchone()

        success_rate = completed / total * 100 if total else 0.0
        cache_hit_rate = cached / completed * 100 if completed else 0.0

        return AggregateSnapshot(
            active_nodes=self.active_node_count(active_window, now=now),
            total_nodes=self.node_count(),
            total_tasks=total,
            completed_tasks=completed,
            failed_tasks=failed,
            cached_tasks=cached,
            tasks_last_24h=tasks_24h,
            total_invoices=int(invoice_row[0]),
            invoices_last_24h=int(invoice_row[1]),
            success_rate=round(success_rate, 1),
            cache_hit_rate=round(cache_hit_rate, 1),
            execution_time_distribution=self.distribution("execution_time"),
            gas_usage_distribution=self.distribution("gas_usage"),
            steps_computed_distribution=self.distribution("steps_computed"),
            memory_used_distribution=self.distribution("memory_used"),
            chain_distribution=self.distribution("chain"),
            task_type_distribution=self.distribution("task_type"),
            continent_distribution=self.distribution("continent"),
        )

    # ── History ────────────────────────────────────────────────

    def save_snapshot(
        self, snapshot: AggregateSnapshot, *, now: float | None = None
    ) -> int:
        """Persist *snapshot* as an immutable history row.  Returns its id."""
        now = time.time() if now is None else now
        cursor = self._conn.execute(
            """
            INSERT INTO network_stats_history (
                recorded_at, active_nodes, total_nodes, total_tasks,
                completed_tasks, failed_tasks, cached_tasks, total_invoices,
                success_rate, cache_hit_rate, data
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                now,
                snapshot.active_nodes,
                snapshot.total_nodes,
                snapshot.total_tasks,
                snapshot.completed_tasks,
                snapshot.failed_tasks,
                snapshot.cached_tasks,
                snapshot.total_invoices,
                snapshot.success_rate,
                snapshot.cache_hit_rate,
                json.dumps(snapshot.to_data(), separators=(",", ":")),
            ),
        )
        self._conn.commit()
        return int(cursor.lastrowid or 0)

    def recent_snapshots(self, limit: int = 20) -> list[StoredSnapshot]:
        """Most recent history rows, newest first."""
        rows = self._conn.execute(
            """
            SELECT id, recorded_at, data FROM network_stats_history
            ORDER BY recorded_at DESC, id DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [StoredSnapshot(r[0], r[1], json.loads(r[2])) for r in rows]

    def snapshot_count(self) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM network_stats_history"
        ).fetchone()
        return int(row[0]) if row else 0

    def record_ingest(self, subject: str, *, now: float | None = None) -> None:
        """Bump the hourly message counter for *subject*."""
        now = time.time() if now is None else now
        hour = int(now // HOUR_SECONDS) * HOUR_SECONDS
        self._conn.execute(
            """
            INSERT INTO ingest_history (hour, subject, count) VALUES (?, ?, 1)
            ON CONFLICT(hour, subject) DO UPDATE SET count = count + 1
            """,
            (hour, subject),
        )
        self._conn.commit()

    def ingest_counts(self, *, since: float = 0.0) -> dict[str, int]:
        """Total messages per subject since *since* (epoch seconds)."""
        rows = self._conn.execute(
            """
            SELECT subject, SUM(count) FROM ingest_history
            WHERE hour >= ? GROUP BY subject
            """,
            (int(since // HOUR_SECONDS) * HOUR_SECONDS,),
        ).fetchall()
        return {r[0]: int(r[1]) for r in rows}

    # ── Maintenance ────────────────────────────────────────────

    def cleanup_old_data(
        self, retention_days: int = 30, *, now: float | None = None
    ) -> int:
        """Delete history rows older than *retention_days*.

        Current task, invoice and node state is left untouched.

        Returns:
            Number of rows removed.
        """
        now = time.time() if now is None else now
        cutoff = now - retention_days * DAY_SECONDS
        removed = self._conn.execute(
            "DELETE FROM network_stats_history WHERE recorded_at < ?", (cutoff,)
        ).rowcount
        removed += self._conn.execute(
            "DELETE FROM ingest_history WHERE hour + ? <= ?",
            (HOUR_SECONDS, cutoff),
        ).rowcount
        self._conn.commit()
        if removed:
            logger.info("aggregator_history_pruned", removed=removed)
        return removed
