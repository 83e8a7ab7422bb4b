"""Tests for node state tracking."""

from datetime import timedelta

import pytest

from conftest import T0, cycle, make_observation
from peerwatch.errors import EmptyBatchError
from peerwatch.models import NodeHistoryRecord
from peerwatch.node_tracker import (
    NodeStateTracker,
    classify_health,
    percentile_finalization_lag,
    summarize_network,
)


@pytest.fixture
def tracker(db):
    """Create a tracker on the in-memory database."""
    return NodeStateTracker(db)


def _kinds(result, node_id=None):
    return [e.kind for e in result.events if node_id is None or e.node_id == node_id]


@pytest.mark.parametrize(
    "lag, consensus, expected",
    [
        (0, True, "healthy"),
        (2, True, "healthy"),
        (3, True, "lagging"),
        (5, True, "lagging"),
        (6, True, "issue"),
        (0, False, "issue"),
    ],
)
def test_classify_health(lag, consensus, expected):
    assert classify_health(lag, consensus) == expected


def test_percentile_lag_uses_rank():
    """The lag is taken at index floor(n * 0.05) of heights sorted descending."""
    heights = [100] + [90] * 19
    assert percentile_finalization_lag(heights, 100) == 10

    assert percentile_finalization_lag([100, 99, 98], 100) == 0
    assert percentile_finalization_lag([], 100) == 0


def test_summarize_network_example():
    observations = [
        make_observation("n1", finalized_block_height=100, peers_count=4),
        make_observation("n2", finalized_block_height=95, peers_count=2, consensus_running=False),
    ]
    snapshot = summarize_network(observations, 100, T0)

    assert snapshot.total_nodes == 2
    assert snapshot.healthy_nodes == 1
    assert snapshot.issue_nodes == 1
    assert snapshot.avg_peers == 3.0
    assert snapshot.avg_latency is None
    assert snapshot.consensus_participation_pct == 50.0


def test_summarize_ignores_non_positive_pings():
    observations = [
        make_observation("n1", average_ping=30.0),
        make_observation("n2", average_ping=0.0),
        make_observation("n3", average_ping=50.0),
    ]
    assert summarize_network(observations, 100, T0).avg_latency == 40.0


class TestProcessNodes:
    """Tests for NodeStateTracker.process_nodes."""

    async def test_health_classification_example(self, tracker, db):
        """n1 at the tip is healthy, n2 five blocks behind is lagging."""
        observations = [
            make_observation("n1", finalized_block_height=100),
            make_observation("n2", finalized_block_height=95),
        ]
        result = await tracker.process_nodes(observations, 100, now=cycle(0))

        assert (await db.get_history("n1")).last_health == "healthy"
        assert (await db.get_history("n2")).last_health == "lagging"
        assert result.snapshot.avg_latency is None
        assert result.snapshot.healthy_nodes == 1
        assert result.snapshot.lagging_nodes == 1

    async def test_new_nodes(self, tracker, db, sample_observations):
        result = await tracker.process_nodes(sample_observations, 100, now=cycle(0))

        assert result.new_nodes == ["n1", "n2", "n3"]
        assert _kinds(result) == ["new", "new", "new"]
        assert result.snapshots_recorded == 3
        assert result.health_changes == []
        assert len(await db.get_snapshots()) == 1

        sessions = await db.get_sessions("n1")
        assert sessions[0].started_at == cycle(0) - timedelta(hours=1)

    async def test_identical_uptime_is_not_a_restart(self, tracker):
        obs = [make_observation("n1", uptime_ms=5000)]
        await tracker.process_nodes(obs, 100, now=cycle(0))
        result = await tracker.process_nodes(obs, 100, now=cycle(1))

        assert result.restarts == []
        assert result.events == []

    async def test_restart_on_continuously_present_node(self, tracker, db):
        await tracker.process_nodes([make_observation("n1", uptime_ms=3_600_000)], 100, now=cycle(0))
        result = await tracker.process_nodes([make_observation("n1", uptime_ms=1000)], 100, now=cycle(1))

        assert result.restarts == ["n1"]
        restart = result.events[0]
        assert restart.kind == "restart"
        assert restart.detail == {"old_uptime_ms": 3_600_000, "new_uptime_ms": 1000}

        sessions = await db.get_sessions("n1")
        assert len(sessions) == 2
        assert sessions[0].end_reason == "restart_detected"
        assert sessions[0].ended_at == cycle(1)
        assert sessions[1].started_at == cycle(1) - timedelta(seconds=1)
        assert sessions[1].ended_at is None

    async def test_first_seen_is_invariant(self, tracker, db):
        for n in range(5):
            obs = make_observation("n1", uptime_ms=1000 * (5 - n), client=f"6.{n}.0")
            await tracker.process_nodes([obs], 100, now=cycle(n))
            if n == 2:
                await tracker.process_nodes([make_observation("other")], 100, now=cycle(n) + timedelta(seconds=1))

        record = await db.get_history("n1")
        assert record.first_seen_at == cycle(0)
        assert record.last_seen_at == cycle(4)

    async def test_one_disappeared_then_one_reappeared(self, tracker, db):
        both = [make_observation("n1"), make_observation("n2")]
        only_n1 = [make_observation("n1")]

        await tracker.process_nodes(both, 100, now=cycle(0))
        gone = await tracker.process_nodes(only_n1, 100, now=cycle(1))
        still_gone = await tracker.process_nodes(only_n1, 100, now=cycle(2))
        back = await tracker.process_nodes(both, 100, now=cycle(3))

        assert gone.disappeared == ["n2"]
        assert still_gone.disappeared == []
        assert still_gone.events == []
        assert back.reappeared == ["n2"]
        assert _kinds(back, "n2") == ["reappeared"]

        all_events = await db.get_events(node_id="n2")
        assert sorted(e.kind for e in all_events) == ["disappeared", "new", "reappeared"]

        record = await db.get_history("n2")
        assert record.is_currently_present is True
        assert record.missed_poll_streak == 0

    async def test_missed_streak_counts_every_absence(self, tracker, db):
        await tracker.process_nodes([make_observation("n1"), make_observation("n2")], 100, now=cycle(0))
        for n in range(1, 4):
            await tracker.process_nodes([make_observation("n1")], 100, now=cycle(n))

        record = await db.get_history("n2")
        assert record.is_currently_present is False
        assert record.missed_poll_streak == 3

        sessions = await db.get_sessions("n2")
        assert sessions[0].end_reason == "disappeared"
        assert sessions[0].ended_at == cycle(1)

    async def test_exactly_one_disappeared_of_three(self, tracker):
        await tracker.process_nodes(
            [make_observation("n1"), make_observation("n2"), make_observation("n3")], 100, now=cycle(0)
        )
        result = await tracker.process_nodes(
            [make_observation("n1"), make_observation("n3")], 100, now=cycle(1)
        )

        assert result.disappeared == ["n2"]
        assert _kinds(result) == ["disappeared"]

    async def test_health_and_version_changes(self, tracker):
        await tracker.process_nodes([make_observation("n1")], 100, now=cycle(0))
        result = await tracker.process_nodes(
            [make_observation("n1", finalized_block_height=90, client="6.4.0")], 100, now=cycle(1)
        )

        assert len(result.health_changes) == 1
        change = result.health_changes[0]
        assert (change.old, change.new) == ("healthy", "issue")
        assert change.model_dump() == {"node_id": "n1", "old": "healthy", "new": "issue"}

        assert len(result.version_changes) == 1
        assert result.version_changes[0].new == "6.4.0"
        assert _kinds(result) == ["health_change", "version_change"]

    async def test_reappeared_node_with_lower_uptime_also_restarts(self, tracker):
        await tracker.process_nodes(
            [make_observation("n1", uptime_ms=10_000), make_observation("n2")], 100, now=cycle(0)
        )
        await tracker.process_nodes([make_observation("n2")], 100, now=cycle(1))
        result = await tracker.process_nodes(
            [make_observation("n1", uptime_ms=500), make_observation("n2")], 100, now=cycle(2)
        )

        assert _kinds(result, "n1") == ["reappeared", "restart"]

    async def test_empty_batch_is_an_error(self, tracker, db):
        await tracker.process_nodes([make_observation("n1")], 100, now=cycle(0))

        with pytest.raises(EmptyBatchError):
            await tracker.process_nodes([], 100, now=cycle(1))

        record = await db.get_history("n1")
        assert record.is_currently_present is True
        assert len(await db.get_snapshots()) == 1

    async def test_malformed_observation_is_skipped(self, tracker, db):
        observations = [
            make_observation("n1"),
            make_observation("n2", finalized_block_height=150),
            make_observation("n3", uptime_ms=-1),
        ]
        result = await tracker.process_nodes(observations, 100, now=cycle(0))

        assert result.new_nodes == ["n1"]
        assert len(result.warnings) == 2
        assert await db.get_history("n2") is None
        assert result.snapshot.total_nodes == 1

    async def test_all_malformed_is_an_error(self, tracker):
        with pytest.raises(EmptyBatchError):
            await tracker.process_nodes([make_observation("n1", peers_count=-3)], 100, now=cycle(0))

    async def test_duplicate_node_ids_last_wins(self, tracker, db):
        result = await tracker.process_nodes(
            [make_observation("n1", client="a"), make_observation("n1", client="b")], 100, now=cycle(0)
        )

        assert result.new_nodes == ["n1"]
        assert (await db.get_history("n1")).last_client_version == "b"

    async def test_integrity_violation_is_isolated(self, tracker, db):
        broken = NodeHistoryRecord(
            node_id="broken",
            first_seen_at=None,
            last_seen_at=T0,
            last_observation=make_observation("broken"),
        )
        await db.commit_node_update(broken, [])

        result = await tracker.process_nodes(
            [make_observation("broken"), make_observation("n1")], 100, now=cycle(1)
        )

        assert result.new_nodes == ["n1"]
        assert len(result.errors) == 1
        assert result.errors[0].startswith("broken:")
        assert (await db.get_history("broken")).first_seen_at is None

    async def test_injected_pulse_function(self, db):
        calls = []

        def pulse(lag, latency, consensus_nodes, total):
            calls.append((lag, latency, consensus_nodes, total))
            return 42.0

        tracker = NodeStateTracker(db, pulse=pulse)
        result = await tracker.process_nodes(
            [make_observation("n1", average_ping=20.0), make_observation("n2", consensus_running=False)],
            100,
            now=cycle(0),
        )

        assert calls == [(0, 20.0, 1, 2)]
        assert result.snapshot.pulse_score == 42.0


class TestHistoryQueries:
    """Tests for range queries on tracked history."""

    async def test_new_nodes_in_range_excludes_reappearances(self, tracker):
        await tracker.process_nodes([make_observation("n1")], 100, now=cycle(0))
        await tracker.process_nodes([make_observation("n2")], 100, now=cycle(1))
        await tracker.process_nodes([make_observation("n1"), make_observation("n2")], 100, now=cycle(2))

        new_nodes = await tracker.get_new_nodes_in_range(cycle(1), cycle(2))
        assert [r.node_id for r in new_nodes] == ["n2"]

    async def test_node_health_history(self, tracker):
        await tracker.process_nodes([make_observation("n1")], 100, now=cycle(0))
        await tracker.process_nodes([make_observation("n1", finalized_block_height=97)], 100, now=cycle(1))

        samples = await tracker.get_node_health_history("n1", cycle(0), cycle(1))
        assert [s.health for s in samples] == ["healthy", "lagging"]
        assert samples[1].finalization_lag == 3
