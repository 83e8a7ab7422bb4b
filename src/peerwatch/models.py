"""Data models for peerwatch."""

import math
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer

HealthStatus = Literal["healthy", "lagging", "issue"]
EventKind = Literal["new", "disappeared", "reappeared", "restart", "health_change", "version_change"]
PeerSource = Literal["reporting", "grpc", "inferred"]
GeoConfidence = Literal["lookup", "low", "medium", "high"]

# Higher wins when two sources disagree on a scalar field.
SOURCE_PRIORITY: dict[str, int] = {
    "reporting": 3,
    "grpc": 2,
    "inferred": 1,
}


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class NodeObservation(BaseModel):
    """One poll sample for one node, as reported by the status source."""

    node_id: str = Field(..., description="Stable opaque node identifier")
    node_name: str = Field("", description="Operator-chosen node name")
    client: str = Field("", description="Client version string")
    peer_type: str | None = Field(None, description="Node or Bootstrapper")
    peers_count: int = Field(0, description="Number of connected peers")
    peers_list: list[str] = Field(default_factory=list, description="Node ids of connected peers")
    average_ping: float | None = Field(None, description="Average ping to peers in ms")
    uptime_ms: int = Field(0, description="Node uptime in milliseconds")
    finalized_block_height: int = Field(0, description="Last finalized block height")
    best_block_height: int = Field(0, description="Best block height")
    consensus_running: bool = Field(False, description="Whether consensus is running")
    bandwidth_in_bps: float | None = Field(None, description="Average inbound bytes per second")
    bandwidth_out_bps: float | None = Field(None, description="Average outbound bytes per second")
    consensus_baker_id: int | None = Field(None, description="Baker id the node runs, if any")
    baking_committee_member: str | None = Field(None, description="Committee membership status")
    observed_at: datetime = Field(default_factory=utc_now, description="When the sample was taken")


class NodeHistoryRecord(BaseModel):
    """Durable per-node history, one row per node id."""

    node_id: str = Field(..., description="Node id")
    first_seen_at: datetime | None = Field(..., description="First sighting, set once")
    last_seen_at: datetime = Field(..., description="Most recent sighting")
    last_observation: NodeObservation | None = Field(None, description="Most recent observation")
    last_health: HealthStatus | None = Field(None, description="Health at the most recent sighting")
    last_client_version: str | None = Field(None, description="Client version at the most recent sighting")
    is_currently_present: bool = Field(True, description="Whether the node was in the latest poll")
    missed_poll_streak: int = Field(0, description="Consecutive polls the node was absent from")


class ChangeEvent(BaseModel):
    """An immutable state change detected between two polls."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind = Field(..., description="Kind of change")
    node_id: str = Field(..., description="Node the change applies to")
    occurred_at: datetime = Field(..., description="When the change was detected")
    detail: dict[str, Any] = Field(default_factory=dict, description="Old/new values and context")


class NodeSession(BaseModel):
    """A continuous uptime period of a node."""

    node_id: str = Field(..., description="Node id")
    started_at: datetime = Field(..., description="Session start (detection time minus uptime)")
    ended_at: datetime | None = Field(None, description="Session end, None while open")
    end_reason: Literal["restart_detected", "disappeared"] | None = Field(
        None, description="Why the session ended"
    )


class NodeSample(BaseModel):
    """Per-node health sample recorded every cycle."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Cycle timestamp")
    node_id: str = Field(..., description="Node id")
    health: HealthStatus = Field(..., description="Health classification")
    peers_count: int = Field(..., description="Peer count")
    average_ping: float | None = Field(None, description="Average ping in ms")
    finalized_block_height: int = Field(..., description="Finalized height")
    finalization_lag: int = Field(..., description="Blocks behind the network maximum")
    bandwidth_in_bps: float | None = Field(None, description="Inbound bytes per second")
    bandwidth_out_bps: float | None = Field(None, description="Outbound bytes per second")


class NetworkSnapshot(BaseModel):
    """Network-wide aggregate recorded once per cycle."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Cycle timestamp")
    total_nodes: int = Field(..., description="Nodes in the batch")
    healthy_nodes: int = Field(..., description="Nodes classified healthy")
    lagging_nodes: int = Field(..., description="Nodes classified lagging")
    issue_nodes: int = Field(..., description="Nodes classified issue")
    avg_peers: float = Field(..., description="Mean peer count")
    avg_latency: float | None = Field(None, description="Mean positive ping, None if no node reports one")
    max_finalization_lag: int = Field(..., description="Lag of the 95th-percentile node")
    consensus_participation_pct: float = Field(..., description="Share of nodes running consensus, 0-100")
    pulse_score: float = Field(..., description="Composite network health score")


class HealthChange(BaseModel):
    """A node's health transition within one cycle."""

    node_id: str
    old: HealthStatus = Field(..., description="Classification in the previous cycle")
    new: HealthStatus = Field(..., description="Classification in this cycle")


class VersionChange(BaseModel):
    """A node's client version transition within one cycle."""

    node_id: str
    old: str
    new: str


class ProcessResult(BaseModel):
    """Outcome of folding one batch of observations into history."""

    new_nodes: list[str] = Field(default_factory=list)
    disappeared: list[str] = Field(default_factory=list)
    reappeared: list[str] = Field(default_factory=list)
    restarts: list[str] = Field(default_factory=list)
    health_changes: list[HealthChange] = Field(default_factory=list)
    version_changes: list[VersionChange] = Field(default_factory=list)
    snapshots_recorded: int = Field(0, description="Per-node samples written this cycle")
    events: list[ChangeEvent] = Field(default_factory=list)
    snapshot: NetworkSnapshot | None = Field(None, description="Network snapshot appended this cycle")
    warnings: list[str] = Field(default_factory=list, description="Skipped observations")
    errors: list[str] = Field(default_factory=list, description="Per-node update failures")


class PeerObservation(BaseModel):
    """One sighting of a network endpoint from one source."""

    ip: str = Field(..., description="IPv4 or IPv6 address")
    port: int = Field(..., description="Listening port")
    source: PeerSource = Field(..., description="Where the sighting came from")
    hostnames: list[str] = Field(default_factory=list, description="Hostnames known for the endpoint")
    as_of: datetime = Field(default_factory=utc_now, description="When the sighting was made")
    peer_id: str | None = Field(None, description="Node id advertised by the endpoint")
    node_name: str | None = Field(None, description="Node name, if reported")
    client_version: str | None = Field(None, description="Client version, if reported")
    catchup_status: str | None = Field(None, description="UPTODATE, PENDING or CATCHINGUP")
    latency_ms: float | None = Field(None, description="Measured latency to the peer")
    is_bootstrapper: bool = Field(False, description="Explicitly tagged as a bootstrapper")
    observed_by: str | None = Field(None, description="Reporter or endpoint that saw the peer")

    @property
    def key(self) -> tuple[str, int]:
        return (self.ip, self.port)


class GeoLocation(BaseModel):
    """Geographic location of a peer."""

    country: str | None = Field(None, description="Country name")
    city: str | None = Field(None, description="City name")
    lat: float = Field(..., description="Latitude")
    lon: float = Field(..., description="Longitude")
    isp: str | None = Field(None, description="ISP or AS organization")
    confidence: GeoConfidence = Field("lookup", description="lookup for measured data, else inference confidence")


class Peer(BaseModel):
    """Canonical merged record for one network endpoint."""

    ip: str = Field(..., description="IPv4 or IPv6 address")
    port: int = Field(..., description="Listening port")
    sources: set[PeerSource] = Field(default_factory=set, description="Every source that has seen the peer")
    hostname: str | None = Field(None, description="Preferred hostname")
    hostnames: list[str] = Field(default_factory=list, description="Every hostname seen for the peer")
    linked_node_id: str | None = Field(None, description="Node id the endpoint belongs to")
    linked_baker_id: int | None = Field(None, description="Validator id, once resolved")
    node_name: str | None = Field(None, description="Node name")
    client_version: str | None = Field(None, description="Client version")
    catchup_status: str | None = Field(None, description="Catch-up status from peer discovery")
    latency_ms: float | None = Field(None, description="Latency from peer discovery")
    field_sources: dict[str, PeerSource] = Field(
        default_factory=dict, description="Source that last set each scalar field"
    )
    is_bootstrapper: bool = Field(False, description="Flagged as a bootstrapper")
    reported_bootstrapper: bool = Field(False, description="Explicitly tagged as a bootstrapper by a source")
    seen_by_count: int = Field(0, description="Distinct reporters that have seen the peer")
    geo: GeoLocation | None = Field(None, description="Geographic location")
    geo_updated_at: datetime | None = Field(None, description="When geo was last set")
    first_observed: datetime = Field(..., description="Earliest sighting")
    last_observed: datetime = Field(..., description="Latest sighting")

    @property
    def key(self) -> tuple[str, int]:
        return (self.ip, self.port)

    @field_serializer("sources")
    def _serialize_sources(self, sources: set[str]) -> list[str]:
        return sorted(sources)


class MergeResult(BaseModel):
    """Outcome of merging a batch of peer observations."""

    merged: int = Field(0, description="Distinct peers touched")
    new_peers: int = Field(0, description="Peers created by this batch")


class GeoUpdateStats(BaseModel):
    """Outcome of a geo-enrichment pass."""

    attempted: int = 0
    succeeded: int = 0
    not_found: int = 0
    failed: int = 0
    degraded: bool = Field(False, description="Pass stopped early because the lookup service was failing")


class InferenceResult(BaseModel):
    """Outcome of location and bootstrapper inference."""

    locations_inferred: int = 0
    bootstrappers_detected: int = 0


class LinkResult(BaseModel):
    """Outcome of linking peers to validator identities."""

    linked: int = Field(0, description="Peers that gained a validator id")
    already_linked: int = Field(0, description="Peers that already had one")
    unresolved: int = Field(0, description="Peers with a node id but no active validator")


class TopologyNode(BaseModel):
    """A node and the ids it lists as peers."""

    id: str
    peer_ids: list[str] = Field(default_factory=list)


class TopologySummary(BaseModel):
    """Resilience metrics for the peer graph."""

    node_count: int = 0
    edge_count: int = 0
    avg_degree: float = 0.0
    diameter: int | float = Field(0, description="Longest shortest path; math.inf when disconnected")
    global_clustering_coefficient: float = 0.0
    is_connected: bool = True
    bottlenecks: list[str] = Field(default_factory=list)
    bridges: list[tuple[str, str]] = Field(default_factory=list)
    articulation_points: list[str] = Field(default_factory=list)
    degree_distribution: dict[int, int] = Field(default_factory=dict)

    @property
    def diameter_is_infinite(self) -> bool:
        return isinstance(self.diameter, float) and math.isinf(self.diameter)


class CycleReport(BaseModel):
    """Everything one poll cycle produced."""

    started_at: datetime
    finished_at: datetime | None = None
    status: Literal["ok", "partial"] = "ok"
    nodes_polled: int = 0
    network_max_height: int = 0
    source_errors: dict[str, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    process: ProcessResult | None = None
    merge: MergeResult | None = None
    references_recorded: int = 0
    geo: GeoUpdateStats | None = None
    inference: InferenceResult | None = None
    links: LinkResult | None = None
    phantom_validators: list[int] = Field(default_factory=list)
    topology: TopologySummary | None = None
