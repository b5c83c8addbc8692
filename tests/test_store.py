"""Tests for the aggregator record store."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fakes import NODE_A, NODE_B, NODE_C

from fedwatch.aggregator.store import DAY_SECONDS, AggregateSnapshot, AggregatorStore

NOW = 1_773_490_000.0
TASK_1 = "a1b2c3d4e5f60718"
TASK_2 = "b1b2c3d4e5f60718"
TASK_3 = "c1b2c3d4e5f60718"


@pytest.fixture
def store(tmp_path: Path) -> Iterator[AggregatorStore]:
    s = AggregatorStore(tmp_path / "aggregator.db")
    yield s
    s.close()


class TestTasks:
    def test_replay_is_idempotent(self, store: AggregatorStore) -> None:
        store.upsert_task(TASK_1, chain_id="1", task_type="compute", now=NOW)
        first = store.get_task(TASK_1)
        for _ in range(3):
            store.upsert_task(TASK_1, chain_id="1", task_type="compute", now=NOW)
        assert store.task_count() == 1
        assert store.get_task(TASK_1) == first
        assert first is not None
        assert first["status"] == "received"

    def test_completed_not_downgraded(self, store: AggregatorStore) -> None:
        store.upsert_task_completed(TASK_1, success=True, now=NOW)
        store.upsert_task(TASK_1, chain_id="137", task_type="compute", now=NOW + 5)
        task = store.get_task(TASK_1)
        assert task is not None
        assert task["status"] == "completed"
        # Missing metadata is filled in by the late "received" event
        assert task["chain_id"] == "137"
        assert task["last_seen"] == NOW + 5

    def test_completion_updates_received(self, store: AggregatorStore) -> None:
        store.upsert_task(TASK_1, chain_id="1", now=NOW)
        store.upsert_task_completed(
            TASK_1,
            success=False,
            status="failed",
            execution_time_bucket="1-5s",
            gas_used_bucket="<100K",
            now=NOW + 10,
        )
        task = store.get_task(TASK_1)
        assert task is not None
        assert task["status"] == "failed"
        assert task["success"] == 0
        assert task["first_seen"] == NOW
        assert task["chain_id"] == "1"

    def test_unknown_task(self, store: AggregatorStore) -> None:
        assert store.get_task("ffffffff") is None


class TestNodes:
    def test_upsert_keeps_first_seen_and_buckets(self, store: AggregatorStore) -> None:
        store.upsert_node(NODE_A, total_tasks_bucket="1-10", continent_bucket="asia", now=NOW)
        store.upsert_node(NODE_A, active_tasks_bucket="1", now=NOW + 30)
        peer = store.get_node(NODE_A)
        assert peer is not None
        assert peer.first_seen == NOW
        assert peer.last_seen == NOW + 30
        assert peer.total_tasks_bucket == "1-10"
        assert peer.active_tasks_bucket == "1"
        assert peer.continent_bucket == "asia"
        assert peer.heartbeat_count == 2

    def test_touch_creates_and_refreshes(self, store: AggregatorStore) -> None:
        store.touch_node(NODE_A, now=NOW)
        store.touch_node(NODE_A, now=NOW + 60)
        peer = store.get_node(NODE_A)
        assert peer is not None
        assert peer.last_seen == NOW + 60
        assert peer.heartbeat_count == 1

    def test_stale_and_active(self, store: AggregatorStore) -> None:
        store.upsert_node(NODE_A, now=NOW - 400)
        store.upsert_node(NODE_B, now=NOW - 100)
        store.upsert_node(NODE_C, now=NOW)
        assert store.get_stale_nodes(300, now=NOW) == [NODE_A]
        assert store.active_node_count(300, now=NOW) == 2
        assert store.node_count() == 3

    def test_remove_nodes(self, store: AggregatorStore) -> None:
        store.upsert_node(NODE_A, now=NOW)
        store.upsert_node(NODE_B, now=NOW)
        assert store.remove_nodes([NODE_A, NODE_B, NODE_C]) == 2
        assert store.remove_nodes([]) == 0
        assert store.node_count() == 0


class TestSnapshot:
    def test_empty_store(self, store: AggregatorStore) -> None:
        snapshot = store.compute_snapshot(now=NOW)
        assert snapshot == AggregateSnapshot()

    def test_rates_and_distributions(self, store: AggregatorStore) -> None:
        store.upsert_task_completed(
            TASK_1, success=True, cached=True, chain_id="1",
            task_type="compute", execution_time_bucket="1-5s", now=NOW,
        )
        store.upsert_task_completed(
            TASK_2, success=True, chain_id="1",
            task_type="compute", execution_time_bucket="<100ms", now=NOW,
        )
        store.upsert_task_completed(
            TASK_3, status="failed", success=False, chain_id="137", now=NOW,
        )
        store.upsert_task("d1b2c3d4e5f60718", now=NOW - 2 * DAY_SECONDS)
        store.upsert_invoice("e1b2c3d4e5f60718", steps_computed_bucket="<100K", now=NOW)
        store.upsert_node(NODE_A, continent_bucket="europe", now=NOW)

        snapshot = store.compute_snapshot(now=NOW)
        assert snapshot.total_tasks == 4
        assert snapshot.completed_tasks == 2
        assert snapshot.failed_tasks == 1
        assert snapshot.cached_tasks == 1
        assert snapshot.tasks_last_24h == 3
        assert snapshot.success_rate == 50.0
        assert snapshot.cache_hit_rate == 50.0
        assert snapshot.total_invoices == 1
        assert snapshot.invoices_last_24h == 1
        assert snapshot.active_nodes == 1
        assert snapshot.chain_distribution == {"1": 2, "137": 1}
        assert snapshot.execution_time_distribution == {"1-5s": 1, "<100ms": 1}
        assert snapshot.steps_computed_distribution == {"<100K": 1}
        assert snapshot.continent_distribution == {"europe": 1}

    def test_rates_rounded(self, store: AggregatorStore) -> None:
        store.upsert_task_completed(TASK_1, success=True, now=NOW)
        store.upsert_task(TASK_2, now=NOW)
        store.upsert_task(TASK_3, now=NOW)
        assert store.compute_snapshot(now=NOW).success_rate == 33.3

    def test_wire_keys(self) -> None:
        data = AggregateSnapshot(tasks_last_24h=5, invoices_last_24h=2).to_data()
        assert data["tasksLast24h"] == 5
        assert data["invoicesLast24h"] == 2
        assert "activeNodes" in data
        assert "executionTimeDistribution" in data
        assert "tasksLast24H" not in data


class TestHistory:
    def test_save_and_read_back(self, store: AggregatorStore) -> None:
        first = store.save_snapshot(AggregateSnapshot(active_nodes=1), now=NOW)
        second = store.save_snapshot(AggregateSnapshot(active_nodes=2), now=NOW + 30)
        assert second > first
        rows = store.recent_snapshots(limit=5)
        assert [r.data["activeNodes"] for r in rows] == [2, 1]
        assert rows[0].recorded_at == NOW + 30
        assert store.snapshot_count() == 2

    def test_ingest_counts(self, store: AggregatorStore) -> None:
        store.record_ingest("truebit.heartbeat", now=NOW)
        store.record_ingest("truebit.heartbeat", now=NOW + 1)
        store.record_ingest("truebit.nodes.joined", now=NOW)
        assert store.ingest_counts() == {
            "truebit.heartbeat": 2,
            "truebit.nodes.joined": 1,
        }
        assert store.ingest_counts(since=NOW + 7200) == {}

    def test_cleanup_keeps_current_state(self, store: AggregatorStore) -> None:
        old = NOW - 31 * DAY_SECONDS
        store.save_snapshot(AggregateSnapshot(), now=old)
        store.save_snapshot(AggregateSnapshot(), now=NOW)
        store.record_ingest("truebit.heartbeat", now=old)
        store.upsert_task(TASK_1, now=old)
        store.upsert_node(NODE_A, now=old)

        removed = store.cleanup_old_data(30, now=NOW)
        assert removed == 2
        assert store.snapshot_count() == 1
        assert store.ingest_counts() == {}
        assert store.task_count() == 1
        assert store.node_count() == 1


def test_in_memory_store() -> None:
    with AggregatorStore() as store:
        assert store.db_path == ":memory:"
        store.upsert_node(NODE_A, now=NOW)
        assert store.node_count() == 1
