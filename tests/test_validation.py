"""Tests for inbound envelope validation and the aggregator rate limiter."""

from __future__ import annotations

import pytest
from fakes import NODE_A, NODE_B, FakeClock

from fedwatch.aggregator.validation import (
    InboundRateLimiter,
    ValidationFailure,
    check_envelope,
    is_valid_hash,
    is_valid_node_id,
    validate_envelope,
)


def _payload(**data: object) -> dict[str, object]:
    return {
        "version": "1.0",
        "type": "task_completed",
        "nodeId": NODE_A,
        "timestamp": "2026-03-14T12:05:00.000Z",
        "data": data,
    }


class TestFormats:
    @pytest.mark.parametrize(
        ("value", "valid"),
        [
            (NODE_A, True),
            ("node-123", False),
            ("123e4567-e89b-42d3-a456-426614174000", False),
            ("node-123e4567-e89b-42d3-a456-42661417400z", False),
            (42, False),
        ],
    )
    def test_node_id(self, value: object, valid: bool) -> None:
        assert is_valid_node_id(value) is valid

    @pytest.mark.parametrize(
        ("value", "valid"),
        [
            ("a1b2c3d4", True),
            ("a" * 64, True),
            ("a1b2c3d", False),
            ("a" * 65, False),
            ("not-hex!", False),
            (None, False),
        ],
    )
    def test_hash(self, value: object, valid: bool) -> None:
        assert is_valid_hash(value) is valid


class TestCheckEnvelope:
    def test_valid_completed(self) -> None:
        check_envelope(
            _payload(
                taskIdHash="a1b2c3d4e5f60718",
                chainId="1",
                taskType="compute",
                status="completed",
                executionTimeBucket="1-5s",
                gasUsedBucket="<100K",
                cached=False,
            )
        )

    def test_numeric_chain_id_allowed(self) -> None:
        check_envelope(_payload(chainId=137))

    def test_aggregator_summary_without_node_id(self) -> None:
        check_envelope({"type": "network_stats", "data": {"activeNodes": 3}})

    @pytest.mark.parametrize(
        ("payload", "field"),
        [
            ([], "message"),
            ({"nodeId": "10.0.0.1"}, "nodeId"),
            ({"nodeId": NODE_A, "data": "x"}, "data"),
            (_payload(taskIdHash="3f2a9c1e-7b4d-4e8a"), "taskIdHash"),
            (_payload(invoiceIdHash=12345678), "invoiceIdHash"),
            (_payload(executionTimeBucket="1234ms"), "executionTimeBucket"),
            (_payload(taskType="x" * 65), "taskType"),
            (_payload(status=["completed"]), "status"),
            (_payload(chainId=True), "chainId"),
            (_payload(chainId={"id": 1}), "chainId"),
        ],
    )
    def test_rejects(self, payload: object, field: str) -> None:
        with pytest.raises(ValidationFailure) as exc_info:
            check_envelope(payload)
        assert exc_info.value.field == field

    def test_validate_returns_bool(self) -> None:
        assert validate_envelope(_payload(status="completed"), "truebit.tasks.completed")
        assert not validate_envelope(_payload(gasUsedBucket="lots"), "truebit.tasks.completed")


class TestInboundRateLimiter:
    def test_per_node_limit(self) -> None:
        clock = FakeClock()
        limiter = InboundRateLimiter(per_node=3, global_limit=100, window=1.0, clock=clock)
        assert [limiter.allow(NODE_A) for _ in range(4)] == [True, True, True, False]
        # Other nodes have their own budget
        assert limiter.allow(NODE_B)
        assert limiter.rejected == 1

        clock.advance(1.0)
        assert limiter.allow(NODE_A)

    def test_global_limit(self) -> None:
        clock = FakeClock()
        limiter = InboundRateLimiter(per_node=100, global_limit=2, window=1.0, clock=clock)
        assert limiter.allow(NODE_A)
        assert limiter.allow(NODE_B)
        assert not limiter.allow(NODE_A)
        clock.advance(1.0)
        assert limiter.allow(NODE_A)

    def test_missing_node_id_rejected(self) -> None:
        limiter = InboundRateLimiter(clock=FakeClock())
        assert not limiter.allow(None)
        assert not limiter.allow("")
        assert limiter.rejected == 2
        assert limiter.tracked_nodes == 0

    def test_prune_idle_nodes(self) -> None:
        clock = FakeClock()
        limiter = InboundRateLimiter(window=1.0, clock=clock)
        limiter.allow(NODE_A)
        clock.advance(5)
        limiter.allow(NODE_B)
        clock.advance(6)
        assert limiter.prune() == 1
        assert limiter.tracked_nodes == 1
