"""Node state tracking: folds successive polls into history and change events."""

import logging
from datetime import datetime, timedelta

from peerwatch.database import AsyncDatabase
from peerwatch.errors import EmptyBatchError, HistoryIntegrityError
from peerwatch.models import (
    ChangeEvent,
    HealthChange,
    HealthStatus,
    NetworkSnapshot,
    NodeHistoryRecord,
    NodeObservation,
    NodeSample,
    ProcessResult,
    VersionChange,
    utc_now,
)
from peerwatch.pulse import PulseFunction, network_pulse

logger = logging.getLogger(__name__)

HEALTHY_MAX_LAG = 2
LAGGING_MAX_LAG = 5

# Rank of the node whose lag is reported as the network's finalization lag
LAG_PERCENTILE_FRACTION = 0.05


def classify_health(finalization_lag: int, consensus_running: bool) -> HealthStatus:
    """Classify a node by how far its finalized height trails the network."""
    if not consensus_running:
        return "issue"
    if finalization_lag <= HEALTHY_MAX_LAG:
        return "healthy"
    if finalization_lag <= LAGGING_MAX_LAG:
        return "lagging"
    return "issue"


def percentile_finalization_lag(heights: list[int], network_max_height: int) -> int:
    """Lag of the node at the 95th percentile by rank.

    Heights are sorted descending and the entry at ``floor(n * 0.05)`` is used.
    """
    if not heights:
        return 0
    ordered = sorted(heights, reverse=True)
    index = int(len(ordered) * LAG_PERCENTILE_FRACTION)
    return network_max_height - ordered[index]


def summarize_network(
    observations: list[NodeObservation],
    network_max_height: int,
    timestamp: datetime,
    pulse: PulseFunction = network_pulse,
) -> NetworkSnapshot:
    """Aggregate one batch of observations into a ``NetworkSnapshot``."""
    total = len(observations)
    counts = {"healthy": 0, "lagging": 0, "issue": 0}
    for obs in observations:
        lag = network_max_height - obs.finalized_block_height
        counts[classify_health(lag, obs.consensus_running)] += 1

    pings = [o.average_ping for o in observations if o.average_ping is not None and o.average_ping > 0]
    avg_latency = sum(pings) / len(pings) if pings else None
    avg_peers = sum(o.peers_count for o in observations) / total if total else 0.0

    max_lag = percentile_finalization_lag(
        [o.finalized_block_height for o in observations], network_max_height
    )
    consensus_nodes = sum(1 for o in observations if o.consensus_running)
    participation = consensus_nodes / total * 100 if total else 0.0

    return NetworkSnapshot(
        timestamp=timestamp,
        total_nodes=total,
        healthy_nodes=counts["healthy"],
        lagging_nodes=counts["lagging"],
        issue_nodes=counts["issue"],
        avg_peers=avg_peers,
        avg_latency=avg_latency,
        max_finalization_lag=max_lag,
        consensus_participation_pct=participation,
        pulse_score=pulse(max_lag, avg_latency, consensus_nodes, total),
    )


def _malformed_reason(obs: NodeObservation, network_max_height: int) -> str | None:
    if not obs.node_id.strip():
        return "blank node id"
    if obs.uptime_ms < 0:
        return f"negative uptime {obs.uptime_ms}"
    if obs.peers_count < 0:
        return f"negative peer count {obs.peers_count}"
    if obs.finalized_block_height < 0 or obs.best_block_height < 0:
        return "negative block height"
    if obs.finalized_block_height > network_max_height:
        return (
            f"finalized height {obs.finalized_block_height} above "
            f"network maximum {network_max_height}"
        )
    return None


class NodeStateTracker:
    """Turns successive node polls into change events and durable history."""

    def __init__(self, db: AsyncDatabase, pulse: PulseFunction = network_pulse):
        """Initialize the tracker.

        Args:
            db: Store that owns node history, events and snapshots
            pulse: Scoring function for the network snapshot
        """
        self.db = db
        self.pulse = pulse

    async def process_nodes(
        self,
        observations: list[NodeObservation],
        network_max_height: int,
        now: datetime | None = None,
    ) -> ProcessResult:
        """Fold a batch of observations into history.

        Detects new, disappeared, reappeared and restarted nodes plus health
        and client-version changes, then appends one network snapshot.

        Args:
            observations: Complete batch for this cycle
            network_max_height: Highest finalized height in the network
            now: Cycle timestamp; defaults to the current time

        Returns:
            ProcessResult describing every change

        Raises:
            EmptyBatchError: If the batch contains no usable observation
        """
        if not observations:
            raise EmptyBatchError("Refusing to process an empty observation batch")

        now = now or utc_now()
        result = ProcessResult()

        batch: dict[str, NodeObservation] = {}
        for obs in observations:
            reason = _malformed_reason(obs, network_max_height)
            if reason:
                message = f"Skipping observation for {obs.node_id or '<blank>'}: {reason}"
                logger.warning(message)
                result.warnings.append(message)
                continue
            batch.pop(obs.node_id, None)
            batch[obs.node_id] = obs

        if not batch:
            raise EmptyBatchError("No valid observations in batch")

        known = {record.node_id: record for record in await self.db.get_all_history()}

        for node_id, obs in batch.items():
            try:
                await self._fold_observation(obs, known.get(node_id), network_max_height, now, result)
            except HistoryIntegrityError as e:
                logger.error("History update for %s aborted: %s", node_id, e)
                result.errors.append(f"{node_id}: {e}")

        for node_id, record in known.items():
            if node_id in batch:
                continue
            try:
                await self._mark_absent(record, now, result)
            except HistoryIntegrityError as e:
                logger.error("History update for %s aborted: %s", node_id, e)
                result.errors.append(f"{node_id}: {e}")

        snapshot = summarize_network(list(batch.values()), network_max_height, now, self.pulse)
        await self.db.append_snapshot(snapshot)
        result.snapshot = snapshot

        logger.info(
            "Processed %d node(s): %d new, %d disappeared, %d reappeared, %d restarted",
            len(batch),
            len(result.new_nodes),
            len(result.disappeared),
            len(result.reappeared),
            len(result.restarts),
        )
        return result

    async def _fold_observation(
        self,
        obs: NodeObservation,
        record: NodeHistoryRecord | None,
        network_max_height: int,
        now: datetime,
        result: ProcessResult,
    ) -> None:
        """Apply one observation to its history record and persist the update."""
        lag = network_max_height - obs.finalized_block_height
        health = classify_health(lag, obs.consensus_running)
        session_start = now - timedelta(milliseconds=obs.uptime_ms)

        events: list[ChangeEvent] = []
        health_change: HealthChange | None = None
        version_change: VersionChange | None = None
        close_session: tuple[datetime, str] | None = None
        open_session_at: datetime | None = None

        def emit(kind: str, **detail) -> None:
            events.append(ChangeEvent(kind=kind, node_id=obs.node_id, occurred_at=now, detail=detail))

        if record is None:
            record = NodeHistoryRecord(
                node_id=obs.node_id,
                first_seen_at=now,
                last_seen_at=now,
                last_health=health,
                last_client_version=obs.client,
            )
            emit("new", node_name=obs.node_name, client=obs.client)
            open_session_at = session_start
        else:
            if record.first_seen_at is None:
                raise HistoryIntegrityError(f"history record for {obs.node_id} has no first_seen_at")
            record = record.model_copy(deep=True)

            if not record.is_currently_present:
                emit("reappeared", missed_polls=record.missed_poll_streak)
                open_session_at = session_start

            previous = record.last_observation
            if previous is not None and obs.uptime_ms < previous.uptime_ms:
                emit("restart", old_uptime_ms=previous.uptime_ms, new_uptime_ms=obs.uptime_ms)
                if record.is_currently_present:
                    close_session = (now, "restart_detected")
                open_session_at = session_start

            if record.last_health is not None and record.last_health != health:
                emit("health_change", old=record.last_health, new=health, finalization_lag=lag)
                health_change = HealthChange(node_id=obs.node_id, old=record.last_health, new=health)

            if record.last_client_version is not None and obs.client != record.last_client_version:
                emit("version_change", old=record.last_client_version, new=obs.client)
                version_change = VersionChange(
                    node_id=obs.node_id, old=record.last_client_version, new=obs.client
                )

            record.last_health = health
            record.last_client_version = obs.client
            record.is_currently_present = True
            record.missed_poll_streak = 0

        record.last_seen_at = now
        record.last_observation = obs

        sample = NodeSample(
            timestamp=now,
            node_id=obs.node_id,
            health=health,
            peers_count=obs.peers_count,
            average_ping=obs.average_ping,
            finalized_block_height=obs.finalized_block_height,
            finalization_lag=lag,
            bandwidth_in_bps=obs.bandwidth_in_bps,
            bandwidth_out_bps=obs.bandwidth_out_bps,
        )
        await self.db.commit_node_update(
            record,
            events,
            sample=sample,
            close_session=close_session,
            open_session_at=open_session_at,
        )

        for event in events:
            match event.kind:
                case "new":
                    result.new_nodes.append(obs.node_id)
                case "reappeared":
                    result.reappeared.append(obs.node_id)
                case "restart":
                    result.restarts.append(obs.node_id)
        if health_change:
            result.health_changes.append(health_change)
        if version_change:
            result.version_changes.append(version_change)
        result.events.extend(events)
        result.snapshots_recorded += 1

    async def _mark_absent(self, record: NodeHistoryRecord, now: datetime, result: ProcessResult) -> None:
        """Record a node's absence from this poll; only the first absence emits an event."""
        if record.first_seen_at is None:
            raise HistoryIntegrityError(f"history record for {record.node_id} has no first_seen_at")

        updated = record.model_copy(update={"missed_poll_streak": record.missed_poll_streak + 1})
        events: list[ChangeEvent] = []
        close_session: tuple[datetime, str] | None = None

        if record.is_currently_present:
            updated.is_currently_present = False
            events.append(
                ChangeEvent(
                    kind="disappeared",
                    node_id=record.node_id,
                    occurred_at=now,
                    detail={"last_seen_at": record.last_seen_at.isoformat()},
                )
            )
            close_session = (now, "disappeared")

        await self.db.commit_node_update(updated, events, close_session=close_session)

        if events:
            result.disappeared.append(record.node_id)
            result.events.extend(events)

    async def get_new_nodes_in_range(self, start: datetime, end: datetime) -> list[NodeHistoryRecord]:
        """Get nodes first seen within a time range (reappearances excluded)."""
        events = await self.db.get_events(start=start, end=end, kind="new")
        records = []
        for event in events:
            record = await self.db.get_history(event.node_id)
            if record is not None:
                records.append(record)
        return records

    async def get_node_health_history(
        self, node_id: str, start: datetime, end: datetime
    ) -> list[NodeSample]:
        """Get a node's per-cycle health samples in a time range."""
        return await self.db.get_samples(node_id, start, end)
