"""Database operations for peerwatch."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from peerwatch.models import (
    ChangeEvent,
    GeoLocation,
    NetworkSnapshot,
    NodeHistoryRecord,
    NodeObservation,
    NodeSample,
    NodeSession,
    Peer,
)


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class AsyncDatabase:
    """Async SQLite store for node history, events, snapshots and peers.

    History and peers are upserted by key; events, samples and snapshots
    are append-only.
    """

    def __init__(self, db_path: str | Path = "peerwatch.db"):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Connect to the database."""
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def initialize(self) -> None:
        """Initialize database schema."""
        if not self._conn:
            await self.connect()

        await self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS node_history (
                node_id TEXT PRIMARY KEY,
                first_seen_at TEXT,
                last_seen_at TEXT NOT NULL,
                last_observation TEXT,
                last_health TEXT,
                last_client_version TEXT,
                is_currently_present INTEGER NOT NULL DEFAULT 1,
                missed_poll_streak INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS node_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                node_id TEXT NOT NULL,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                end_reason TEXT,
                FOREIGN KEY (node_id) REFERENCES node_history(node_id)
            );

            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                occurred_at TEXT NOT NULL,
                node_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                detail TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS node_samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                node_id TEXT NOT NULL,
                health TEXT NOT NULL,
                peers_count INTEGER,
                average_ping REAL,
                finalized_block_height INTEGER,
                finalization_lag INTEGER,
                bandwidth_in_bps REAL,
                bandwidth_out_bps REAL
            );

            CREATE TABLE IF NOT EXISTS network_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                total_nodes INTEGER NOT NULL,
                healthy_nodes INTEGER NOT NULL,
                lagging_nodes INTEGER NOT NULL,
                issue_nodes INTEGER NOT NULL,
                avg_peers REAL NOT NULL,
                avg_latency REAL,
                max_finalization_lag INTEGER NOT NULL,
                consensus_participation_pct REAL NOT NULL,
                pulse_score REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS peers (
                ip TEXT NOT NULL,
                port INTEGER NOT NULL,
                sources TEXT NOT NULL DEFAULT '[]',
                hostname TEXT,
                hostnames TEXT NOT NULL DEFAULT '[]',
                linked_node_id TEXT,
                linked_baker_id INTEGER,
                node_name TEXT,
                client_version TEXT,
                catchup_status TEXT,
                latency_ms REAL,
                field_sources TEXT NOT NULL DEFAULT '{}',
                is_bootstrapper INTEGER NOT NULL DEFAULT 0,
                reported_bootstrapper INTEGER NOT NULL DEFAULT 0,
                seen_by_count INTEGER NOT NULL DEFAULT 0,
                geo TEXT,
                geo_updated_at TEXT,
                first_observed TEXT NOT NULL,
                last_observed TEXT NOT NULL,
                PRIMARY KEY (ip, port)
            );

            CREATE TABLE IF NOT EXISTS peer_sightings (
                observer TEXT NOT NULL,
                ip TEXT NOT NULL,
                port INTEGER NOT NULL,
                last_seen TEXT NOT NULL,
                PRIMARY KEY (observer, ip, port)
            );

            CREATE INDEX IF NOT EXISTS idx_history_present ON node_history(is_currently_present);
            CREATE INDEX IF NOT EXISTS idx_sessions_node ON node_sessions(node_id);
            CREATE INDEX IF NOT EXISTS idx_events_time ON events(occurred_at);
            CREATE INDEX IF NOT EXISTS idx_events_kind ON events(kind);
            CREATE INDEX IF NOT EXISTS idx_events_node ON events(node_id);
            CREATE INDEX IF NOT EXISTS idx_samples_node_time ON node_samples(node_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_snapshots_time ON network_snapshots(timestamp);
            CREATE INDEX IF NOT EXISTS idx_peers_node ON peers(linked_node_id);
            CREATE INDEX IF NOT EXISTS idx_sightings_peer ON peer_sightings(ip, port);
            """
        )
        await self._conn.commit()

    # ------------------------------------------------------------------
    # Node history
    # ------------------------------------------------------------------

    async def get_history(self, node_id: str) -> NodeHistoryRecord | None:
        """Get the history record for a node.

        Args:
            node_id: Node ID to retrieve

        Returns:
            NodeHistoryRecord or None if the node was never seen
        """
        if not self._conn:
            await self.connect()

        cursor = await self._conn.execute(
            "SELECT * FROM node_history WHERE node_id = ?",
            (node_id,),
        )
        row = await cursor.fetchone()

        if not row:
            return None

        return self._row_to_history(row)

    async def get_all_history(self, present_only: bool = False) -> list[NodeHistoryRecord]:
        """Get every history record.

        Args:
            present_only: If True, only return nodes present in the latest poll

        Returns:
            List of NodeHistoryRecord objects ordered by node id
        """
        if not self._conn:
            await self.connect()

        query = "SELECT * FROM node_history"
        if present_only:
            query += " WHERE is_currently_present = 1"
        query += " ORDER BY node_id"

        cursor = await self._conn.execute(query)
        rows = await cursor.fetchall()

        return [self._row_to_history(row) for row in rows]

    async def commit_node_update(
        self,
        record: NodeHistoryRecord,
        events: list[ChangeEvent],
        sample: NodeSample | None = None,
        close_session: tuple[datetime, str] | None = None,
        open_session_at: datetime | None = None,
    ) -> None:
        """Write one node's update as a single transaction.

        The history row is upserted; ``first_seen_at`` of an existing row is
        never changed.

        Args:
            record: History record to upsert
            events: Change events detected for the node this cycle
            sample: Optional per-node health sample
            close_session: Optional (ended_at, reason) for the open session
            open_session_at: Optional start time of a new session
        """
        if not self._conn:
            await self.connect()

        try:
            await self._conn.execute(
                """
                INSERT INTO node_history (
                    node_id, first_seen_at, last_seen_at, last_observation,
                    last_health, last_client_version, is_currently_present,
                    missed_poll_streak
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(node_id) DO UPDATE SET
                    last_seen_at = excluded.last_seen_at,
                    last_observation = excluded.last_observation,
                    last_health = excluded.last_health,
                    last_client_version = excluded.last_client_version,
                    is_currently_present = excluded.is_currently_present,
                    missed_poll_streak = excluded.missed_poll_streak
                """,
                (
                    record.node_id,
                    _dt(record.first_seen_at),
                    _dt(record.last_seen_at),
                    record.last_observation.model_dump_json() if record.last_observation else None,
                    record.last_health,
                    record.last_client_version,
                    1 if record.is_currently_present else 0,
                    record.missed_poll_streak,
                ),
            )

            for event in events:
                await self._insert_event(event)

            if sample is not None:
                await self._insert_sample(sample)

            if close_session is not None:
                ended_at, reason = close_session
                await self._conn.execute(
                    """
                    UPDATE node_sessions SET ended_at = ?, end_reason = ?
                    WHERE node_id = ? AND ended_at IS NULL
                    """,
                    (ended_at.isoformat(), reason, record.node_id),
                )

            if open_session_at is not None:
                await self._conn.execute(
                    "INSERT INTO node_sessions (node_id, started_at) VALUES (?, ?)",
                    (record.node_id, open_session_at.isoformat()),
                )

            await self._conn.commit()
        except Exception:
            await self._conn.rollback()
            raise

    async def get_sessions(self, node_id: str) -> list[NodeSession]:
        """Get all uptime sessions of a node, oldest first."""
        if not self._conn:
            await self.connect()

        cursor = await self._conn.execute(
            "SELECT * FROM node_sessions WHERE node_id = ? ORDER BY id",
            (node_id,),
        )
        rows = await cursor.fetchall()
        return [
            NodeSession(
                node_id=row["node_id"],
                started_at=datetime.fromisoformat(row["started_at"]),
                ended_at=_parse_dt(row["ended_at"]),
                end_reason=row["end_reason"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Events, samples and snapshots (append-only)
    # ------------------------------------------------------------------

    async def _insert_event(self, event: ChangeEvent) -> None:
        await self._conn.execute(
            "INSERT INTO events (occurred_at, node_id, kind, detail) VALUES (?, ?, ?, ?)",
            (
                event.occurred_at.isoformat(),
                event.node_id,
                event.kind,
                json.dumps(event.detail, default=str),
            ),
        )

    async def _insert_sample(self, sample: NodeSample) -> None:
        await self._conn.execute(
            """
            INSERT INTO node_samples (
                timestamp, node_id, health, peers_count, average_ping,
                finalized_block_height, finalization_lag, bandwidth_in_bps,
                bandwidth_out_bps
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                sample.timestamp.isoformat(),
                sample.node_id,
                sample.health,
                sample.peers_count,
                sample.average_ping,
                sample.finalized_block_height,
                sample.finalization_lag,
                sample.bandwidth_in_bps,
                sample.bandwidth_out_bps,
            ),
        )

    async def get_events(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        kind: str | None = None,
        node_id: str | None = None,
        limit: int | None = None,
    ) -> list[ChangeEvent]:
        """Get change events, newest first.

        Args:
            start: Optional inclusive lower bound on occurred_at
            end: Optional inclusive upper bound on occurred_at
            kind: Optional event kind filter
            node_id: Optional node filter
            limit: Optional maximum number of events

        Returns:
            List of ChangeEvent objects
        """
        if not self._conn:
            await self.connect()

        clauses = []
        params: list[Any] = []
        if start is not None:
            clauses.append("occurred_at >= ?")
            params.append(start.isoformat())
        if end is not None:
            clauses.append("occurred_at <= ?")
            params.append(end.isoformat())
        if kind:
            clauses.append("kind = ?")
            params.append(kind)
        if node_id:
            clauses.append("node_id = ?")
            params.append(node_id)

        query = "SELECT * FROM events"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY occurred_at DESC, id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        cursor = await self._conn.execute(query, params)
        rows = await cursor.fetchall()
        return [
            ChangeEvent(
                kind=row["kind"],
                node_id=row["node_id"],
                occurred_at=datetime.fromisoformat(row["occurred_at"]),
                detail=json.loads(row["detail"]),
            )
            for row in rows
        ]

    async def get_samples(
        self, node_id: str, start: datetime, end: datetime
    ) -> list[NodeSample]:
        """Get a node's health samples in a time range, oldest first."""
        if not self._conn:
            await self.connect()

        cursor = await self._conn.execute(
            """
            SELECT * FROM node_samples
            WHERE node_id = ? AND timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp ASC
            """,
            (node_id, start.isoformat(), end.isoformat()),
        )
        rows = await cursor.fetchall()
        return [
            NodeSample(
                timestamp=datetime.fromisoformat(row["timestamp"]),
                node_id=row["node_id"],
                health=row["health"],
                peers_count=row["peers_count"],
                average_ping=row["average_ping"],
                finalized_block_height=row["finalized_block_height"],
                finalization_lag=row["finalization_lag"],
                bandwidth_in_bps=row["bandwidth_in_bps"],
                bandwidth_out_bps=row["bandwidth_out_bps"],
            )
            for row in rows
        ]

    async def append_snapshot(self, snapshot: NetworkSnapshot) -> None:
        """Append a network snapshot.

        Args:
            snapshot: NetworkSnapshot to store
        """
        if not self._conn:
            await self.connect()

        await self._conn.execute(
            """
            INSERT INTO network_snapshots (
                timestamp, total_nodes, healthy_nodes, lagging_nodes,
                issue_nodes, avg_peers, avg_latency, max_finalization_lag,
                consensus_participation_pct, pulse_score
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot.timestamp.isoformat(),
                snapshot.total_nodes,
                snapshot.healthy_nodes,
                snapshot.lagging_nodes,
                snapshot.issue_nodes,
                snapshot.avg_peers,
                snapshot.avg_latency,
                snapshot.max_finalization_lag,
                snapshot.consensus_participation_pct,
                snapshot.pulse_score,
            ),
        )
        await self._conn.commit()

    async def get_snapshots(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[NetworkSnapshot]:
        """Get network snapshots, newest first."""
        if not self._conn:
            await self.connect()

        clauses = []
        params: list[Any] = []
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(start.isoformat())
        if end is not None:
            clauses.append("timestamp <= ?")
            params.append(end.isoformat())

        query = "SELECT * FROM network_snapshots"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY timestamp DESC, id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        cursor = await self._conn.execute(query, params)
        rows = await cursor.fetchall()
        return [self._row_to_snapshot(row) for row in rows]

    # ------------------------------------------------------------------
    # Peers
    # ------------------------------------------------------------------

    async def get_peer(self, ip: str, port: int) -> Peer | None:
        """Get a peer by endpoint.

        Returns:
            Peer object or None if not found
        """
        if not self._conn:
            await self.connect()

        cursor = await self._conn.execute(
            "SELECT * FROM peers WHERE ip = ? AND port = ?",
            (ip, port),
        )
        row = await cursor.fetchone()
        return self._row_to_peer(row) if row else None

    async def get_all_peers(self, bootstrappers_only: bool = False) -> list[Peer]:
        """Get every peer in the registry."""
        if not self._conn:
            await self.connect()

        query = "SELECT * FROM peers"
        if bootstrappers_only:
            query += " WHERE is_bootstrapper = 1"
        query += " ORDER BY ip, port"

        cursor = await self._conn.execute(query)
        rows = await cursor.fetchall()
        return [self._row_to_peer(row) for row in rows]

    async def get_peers_without_geo(self) -> list[Peer]:
        """Get peers that have an address but no location yet."""
        if not self._conn:
            await self.connect()

        cursor = await self._conn.execute(
            "SELECT * FROM peers WHERE geo IS NULL ORDER BY ip, port"
        )
        rows = await cursor.fetchall()
        return [self._row_to_peer(row) for row in rows]

    async def save_peer(self, peer: Peer) -> None:
        """Insert or replace a merged peer record.

        The caller is responsible for merging; this stores the result.
        """
        if not self._conn:
            await self.connect()

        await self._conn.execute(
            """
            INSERT INTO peers (
                ip, port, sources, hostname, hostnames, linked_node_id,
                linked_baker_id, node_name, client_version, catchup_status,
                latency_ms, field_sources, is_bootstrapper,
                reported_bootstrapper, seen_by_count, geo, geo_updated_at,
                first_observed, last_observed
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(ip, port) DO UPDATE SET
                sources = excluded.sources,
                hostname = excluded.hostname,
                hostnames = excluded.hostnames,
                linked_node_id = excluded.linked_node_id,
                linked_baker_id = excluded.linked_baker_id,
                node_name = excluded.node_name,
                client_version = excluded.client_version,
                catchup_status = excluded.catchup_status,
                latency_ms = excluded.latency_ms,
                field_sources = excluded.field_sources,
                is_bootstrapper = excluded.is_bootstrapper,
                reported_bootstrapper = excluded.reported_bootstrapper,
                seen_by_count = excluded.seen_by_count,
                geo = excluded.geo,
                geo_updated_at = excluded.geo_updated_at,
                first_observed = excluded.first_observed,
                last_observed = excluded.last_observed
            """,
            (
                peer.ip,
                peer.port,
                json.dumps(sorted(peer.sources)),
                peer.hostname,
                json.dumps(peer.hostnames),
                peer.linked_node_id,
                peer.linked_baker_id,
                peer.node_name,
                peer.client_version,
                peer.catchup_status,
                peer.latency_ms,
                json.dumps(peer.field_sources, sort_keys=True),
                1 if peer.is_bootstrapper else 0,
                1 if peer.reported_bootstrapper else 0,
                peer.seen_by_count,
                peer.geo.model_dump_json() if peer.geo else None,
                _dt(peer.geo_updated_at),
                peer.first_observed.isoformat(),
                peer.last_observed.isoformat(),
            ),
        )
        await self._conn.commit()

    async def record_sighting(self, observer: str, ip: str, port: int, seen_at: datetime) -> None:
        """Record that *observer* saw the peer at ``ip:port``.

        Repeated sightings by the same observer only move ``last_seen`` forward.
        """
        if not self._conn:
            await self.connect()

        await self._conn.execute(
            """
            INSERT INTO peer_sightings (observer, ip, port, last_seen)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(observer, ip, port) DO UPDATE SET
                last_seen = MAX(peer_sightings.last_seen, excluded.last_seen)
            """,
            (observer, ip, port, seen_at.isoformat()),
        )
        await self._conn.commit()

    async def get_sighting_counts(self) -> dict[tuple[str, int], int]:
        """Get the number of distinct observers per peer."""
        if not self._conn:
            await self.connect()

        cursor = await self._conn.execute(
            "SELECT ip, port, COUNT(*) AS n FROM peer_sightings GROUP BY ip, port"
        )
        rows = await cursor.fetchall()
        return {(row["ip"], row["port"]): row["n"] for row in rows}

    async def get_observers(self, ip: str, port: int) -> list[str]:
        """Get the observers that have seen a peer."""
        if not self._conn:
            await self.connect()

        cursor = await self._conn.execute(
            "SELECT observer FROM peer_sightings WHERE ip = ? AND port = ? ORDER BY observer",
            (ip, port),
        )
        rows = await cursor.fetchall()
        return [row["observer"] for row in rows]

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    def _row_to_history(self, row: aiosqlite.Row) -> NodeHistoryRecord:
        """Convert database row to NodeHistoryRecord object."""
        observation = row["last_observation"]
        return NodeHistoryRecord(
            node_id=row["node_id"],
            first_seen_at=_parse_dt(row["first_seen_at"]),
            last_seen_at=datetime.fromisoformat(row["last_seen_at"]),
            last_observation=NodeObservation.model_validate_json(observation) if observation else None,
            last_health=row["last_health"],
            last_client_version=row["last_client_version"],
            is_currently_present=bool(row["is_currently_present"]),
            missed_poll_streak=row["missed_poll_streak"],
        )

    def _row_to_snapshot(self, row: aiosqlite.Row) -> NetworkSnapshot:
        """Convert database row to NetworkSnapshot object."""
        return NetworkSnapshot(
            timestamp=datetime.fromisoformat(row["timestamp"]),
            total_nodes=row["total_nodes"],
            healthy_nodes=row["healthy_nodes"],
            lagging_nodes=row["lagging_nodes"],
            issue_nodes=row["issue_nodes"],
            avg_peers=row["avg_peers"],
            avg_latency=row["avg_latency"],
            max_finalization_lag=row["max_finalization_lag"],
            consensus_participation_pct=row["consensus_participation_pct"],
            pulse_score=row["pulse_score"],
        )

    def _row_to_peer(self, row: aiosqlite.Row) -> Peer:
        """Convert database row to Peer object."""
        geo = row["geo"]
        return Peer(
            ip=row["ip"],
            port=row["port"],
            sources=set(json.loads(row["sources"])),
            hostname=row["hostname"],
            hostnames=json.loads(row["hostnames"]),
            linked_node_id=row["linked_node_id"],
            linked_baker_id=row["linked_baker_id"],
            node_name=row["node_name"],
            client_version=row["client_version"],
            catchup_status=row["catchup_status"],
            latency_ms=row["latency_ms"],
            field_sources=json.loads(row["field_sources"]),
            is_bootstrapper=bool(row["is_bootstrapper"]),
            reported_bootstrapper=bool(row["reported_bootstrapper"]),
            seen_by_count=row["seen_by_count"],
            geo=GeoLocation.model_validate_json(geo) if geo else None,
            geo_updated_at=_parse_dt(row["geo_updated_at"]),
            first_observed=datetime.fromisoformat(row["first_observed"]),
            last_observed=datetime.fromisoformat(row["last_observed"]),
        )

    async def __aenter__(self) -> "AsyncDatabase":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
