"""Peer reconciliation: merges sightings from several sources into one registry."""

import logging
import statistics
from datetime import datetime, timedelta

from peerwatch.database import AsyncDatabase
from peerwatch.errors import GeoLookupError
from peerwatch.geo import GeoLookupClient
from peerwatch.models import (
    SOURCE_PRIORITY,
    GeoLocation,
    GeoUpdateStats,
    InferenceResult,
    LinkResult,
    MergeResult,
    NodeObservation,
    Peer,
    PeerObservation,
    PeerSource,
    utc_now,
)
from peerwatch.roster import ValidatorRoster

logger = logging.getLogger(__name__)

# Scalar peer fields and the observation attribute that feeds each one
SCALAR_FIELDS: dict[str, str] = {
    "linked_node_id": "peer_id",
    "node_name": "node_name",
    "client_version": "client_version",
    "catchup_status": "catchup_status",
    "latency_ms": "latency_ms",
}


def _set_scalar(peer: Peer, field: str, value: object, source: PeerSource) -> None:
    """Set a scalar field unless a higher-priority source already owns it."""
    if value is None:
        return
    current = getattr(peer, field)
    owner = peer.field_sources.get(field)
    if current is not None and owner is not None and SOURCE_PRIORITY[source] < SOURCE_PRIORITY[owner]:
        return
    setattr(peer, field, value)
    peer.field_sources[field] = source


def merge_peer(existing: Peer | None, observations: list[PeerObservation]) -> Peer:
    """Merge observations of one endpoint into its canonical record.

    Sources and hostnames are unioned. Scalar fields follow source priority
    (reporting > grpc > inferred): a lower-priority source only fills a field
    that is unset. Merging the same observations again yields the same record.

    Args:
        existing: Current record, or None for a new peer
        observations: Sightings of the same (ip, port)

    Returns:
        The merged Peer (a new object; *existing* is not modified)
    """
    if not observations:
        raise ValueError("merge_peer needs at least one observation")

    ordered = sorted(observations, key=lambda o: o.as_of)
    first = ordered[0]
    if existing is None:
        peer = Peer(
            ip=first.ip,
            port=first.port,
            first_observed=first.as_of,
            last_observed=ordered[-1].as_of,
        )
    else:
        peer = existing.model_copy(deep=True)

    for obs in ordered:
        if obs.key != peer.key:
            raise ValueError(f"Observation for {obs.ip}:{obs.port} merged into {peer.ip}:{peer.port}")

        peer.sources.add(obs.source)
        peer.first_observed = min(peer.first_observed, obs.as_of)
        peer.last_observed = max(peer.last_observed, obs.as_of)

        if obs.hostnames:
            peer.hostnames = sorted(set(peer.hostnames) | set(obs.hostnames))
            _set_scalar(peer, "hostname", sorted(obs.hostnames)[0], obs.source)

        for field, attr in SCALAR_FIELDS.items():
            _set_scalar(peer, field, getattr(obs, attr), obs.source)

        if obs.is_bootstrapper:
            peer.reported_bootstrapper = True
            peer.is_bootstrapper = True

    return peer


def _confidence(source_count: int) -> str:
    if source_count >= 3:
        return "high"
    if source_count == 2:
        return "medium"
    return "low"


class PeerReconciler:
    """Maintains the canonical peer registry."""

    def __init__(
        self,
        db: AsyncDatabase,
        geo: GeoLookupClient | None = None,
        bootstrapper_degree_factor: float = 3.0,
        bootstrapper_min_seen_by: int = 10,
        bootstrapper_min_age_days: float = 7.0,
        max_consecutive_geo_failures: int = 5,
    ):
        """Initialize the reconciler.

        Args:
            db: Store that owns the peer registry
            geo: Geolocation collaborator; None disables enrichment
            bootstrapper_degree_factor: Multiple of the median seen-by count a
                peer must reach to be considered a bootstrapper
            bootstrapper_min_seen_by: Absolute floor for that threshold
            bootstrapper_min_age_days: Minimum age before a peer can be flagged
            max_consecutive_geo_failures: Failed lookups in a row after which
                enrichment stops for the cycle
        """
        self.db = db
        self.geo = geo
        self.bootstrapper_degree_factor = bootstrapper_degree_factor
        self.bootstrapper_min_seen_by = bootstrapper_min_seen_by
        self.bootstrapper_min_age_days = bootstrapper_min_age_days
        self.max_consecutive_geo_failures = max_consecutive_geo_failures

    async def merge_peer_observations(self, observations: list[PeerObservation]) -> MergeResult:
        """Merge a complete batch of peer observations into the registry.

        Args:
            observations: Sightings from every source for this cycle

        Returns:
            MergeResult with the number of peers touched and created
        """
        groups: dict[tuple[str, int], list[PeerObservation]] = {}
        for obs in observations:
            groups.setdefault(obs.key, []).append(obs)

        result = MergeResult()
        for (ip, port), group in groups.items():
            existing = await self.db.get_peer(ip, port)
            peer = merge_peer(existing, group)
            await self.db.save_peer(peer)

            for obs in group:
                if obs.observed_by:
                    await self.db.record_sighting(obs.observed_by, ip, port, obs.as_of)

            result.merged += 1
            if existing is None:
                result.new_peers += 1
                logger.debug("New peer %s:%s from %s", ip, port, sorted(peer.sources))

        if groups:
            await self._refresh_seen_by_counts()

        logger.info("Merged %d peer(s), %d new", result.merged, result.new_peers)
        return result

    async def record_peer_references(self, node_observations: list[NodeObservation]) -> int:
        """Record reporting nodes that list a known peer among their peers.

        Args:
            node_observations: Current status batch

        Returns:
            Number of sightings recorded
        """
        peers_by_node: dict[str, list[Peer]] = {}
        for peer in await self.db.get_all_peers():
            if peer.linked_node_id:
                peers_by_node.setdefault(peer.linked_node_id, []).append(peer)

        recorded = 0
        for obs in node_observations:
            for peer_node_id in set(obs.peers_list):
                if peer_node_id == obs.node_id:
                    continue
                for peer in peers_by_node.get(peer_node_id, []):
                    await self.db.record_sighting(obs.node_id, peer.ip, peer.port, obs.observed_at)
                    recorded += 1

        if recorded:
            await self._refresh_seen_by_counts()
        return recorded

    async def _refresh_seen_by_counts(self) -> None:
        counts = await self.db.get_sighting_counts()
        for peer in await self.db.get_all_peers():
            count = counts.get(peer.key, 0)
            if count != peer.seen_by_count:
                peer.seen_by_count = count
                await self.db.save_peer(peer)

    async def enrich_geo(self, now: datetime | None = None) -> GeoUpdateStats:
        """Look up locations for peers that have none.

        A failed lookup is recorded and skipped. After too many failures in a
        row the pass stops for this cycle instead of raising.
        """
        stats = GeoUpdateStats()
        if self.geo is None:
            return stats

        now = now or utc_now()
        consecutive_failures = 0

        for peer in await self.db.get_peers_without_geo():
            stats.attempted += 1
            try:
                location = await self.geo.lookup(peer.ip)
            except GeoLookupError as e:
                stats.failed += 1
                consecutive_failures += 1
                logger.warning("Geo lookup failed for %s: %s", peer.ip, e)
                if consecutive_failures >= self.max_consecutive_geo_failures:
                    stats.degraded = True
                    logger.warning(
                        "Geo lookup unavailable after %d failures; skipping enrichment this cycle",
                        consecutive_failures,
                    )
                    break
                continue

            consecutive_failures = 0
            if location is None:
                stats.not_found += 1
                continue

            peer.geo = location
            peer.geo_updated_at = now
            await self.db.save_peer(peer)
            stats.succeeded += 1

        return stats

    async def run_inference(self, now: datetime | None = None) -> InferenceResult:
        """Infer missing locations and flag bootstrappers.

        A peer without a location gets the centroid of the locations of the
        reporting nodes that saw it. A peer is a bootstrapper when a source
        tagged it as one, or when it has been seen by many more reporters
        than the median peer and is old enough.
        """
        now = now or utc_now()
        result = InferenceResult()
        peers = await self.db.get_all_peers()

        located_nodes = {
            peer.linked_node_id: peer.geo
            for peer in peers
            if peer.linked_node_id and peer.geo is not None
        }
        for peer in peers:
            if peer.geo is not None:
                continue
            observers = await self.db.get_observers(peer.ip, peer.port)
            points = [located_nodes[o] for o in observers if o in located_nodes]
            if not points:
                continue
            peer.geo = GeoLocation(
                lat=sum(p.lat for p in points) / len(points),
                lon=sum(p.lon for p in points) / len(points),
                confidence=_confidence(len(points)),
            )
            peer.geo_updated_at = now
            await self.db.save_peer(peer)
            result.locations_inferred += 1

        seen_counts = [peer.seen_by_count for peer in peers if peer.seen_by_count > 0]
        median = statistics.median(seen_counts) if seen_counts else 0
        threshold = max(self.bootstrapper_min_seen_by, self.bootstrapper_degree_factor * median)
        oldest_allowed = now - timedelta(days=self.bootstrapper_min_age_days)

        for peer in peers:
            well_connected = (
                peer.seen_by_count > 0
                and peer.seen_by_count >= threshold
                and peer.first_observed <= oldest_allowed
            )
            flagged = peer.reported_bootstrapper or well_connected
            if flagged != peer.is_bootstrapper:
                peer.is_bootstrapper = flagged
                await self.db.save_peer(peer)
            if flagged:
                result.bootstrappers_detected += 1

        logger.info(
            "Inference: %d location(s) inferred, %d bootstrapper(s) (threshold %.1f)",
            result.locations_inferred,
            result.bootstrappers_detected,
            threshold,
        )
        return result

    async def link_validators(
        self, node_observations: list[NodeObservation], roster: ValidatorRoster
    ) -> LinkResult:
        """Attach validator ids to peers that belong to active consensus nodes.

        A peer is linked only when its node reports a baker id that the
        roster confirms as active. Existing links are never cleared.
        """
        active = await roster.active_participants()
        baker_by_node = {
            obs.node_id: obs.consensus_baker_id
            for obs in node_observations
            if obs.consensus_baker_id is not None
        }

        result = LinkResult()
        for peer in await self.db.get_all_peers():
            if not peer.linked_node_id:
                continue
            baker_id = baker_by_node.get(peer.linked_node_id)
            if baker_id is not None and baker_id in active and peer.linked_baker_id != baker_id:
                peer.linked_baker_id = baker_id
                await self.db.save_peer(peer)
                result.linked += 1
            elif peer.linked_baker_id is not None:
                result.already_linked += 1
            else:
                result.unresolved += 1

        return result

    async def phantom_validators(self, active_ids: set[int]) -> list[int]:
        """Active validators that no known peer is linked to."""
        linked = {
            peer.linked_baker_id
            for peer in await self.db.get_all_peers()
            if peer.linked_baker_id is not None
        }
        return sorted(active_ids - linked)
