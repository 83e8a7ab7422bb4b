"""Tests for peer reconciliation."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import T0, cycle, make_observation, make_peer
from peerwatch.errors import GeoLookupError
from peerwatch.models import GeoLocation, Peer
from peerwatch.peer_reconciler import PeerReconciler, merge_peer
from peerwatch.roster import CommitteeRoster, StaticRoster


@pytest.fixture
def reconciler(db):
    """Create a reconciler without geo enrichment."""
    return PeerReconciler(db, bootstrapper_min_seen_by=2, bootstrapper_min_age_days=7)


class TestMergePeer:
    """Tests for the pure merge function."""

    def test_new_peer_from_observations(self):
        peer = merge_peer(
            None,
            [
                make_peer("8.8.8.8", source="grpc", peer_id="aa", latency_ms=80.0, as_of=cycle(1)),
                make_peer("8.8.8.8", source="inferred", hostnames=["boot.example"], as_of=cycle(0)),
            ],
        )

        assert peer.sources == {"grpc", "inferred"}
        assert peer.hostname == "boot.example"
        assert peer.linked_node_id == "aa"
        assert peer.latency_ms == 80.0
        assert peer.first_observed == cycle(0)
        assert peer.last_observed == cycle(1)
        assert peer.field_sources == {"hostname": "inferred", "linked_node_id": "grpc", "latency_ms": "grpc"}

    def test_lower_priority_never_overwrites(self):
        reported = merge_peer(None, [make_peer("8.8.8.8", source="reporting", hostnames=["node.example"])])
        merged = merge_peer(
            reported,
            [make_peer("8.8.8.8", source="inferred", hostnames=["other.example"], as_of=cycle(5))],
        )

        assert merged.hostname == "node.example"
        assert merged.field_sources["hostname"] == "reporting"
        assert merged.hostnames == ["node.example", "other.example"]
        assert merged.last_observed == cycle(5)

    def test_higher_priority_overwrites(self):
        inferred = merge_peer(None, [make_peer("8.8.8.8", source="inferred", hostnames=["dns.example"])])
        merged = merge_peer(inferred, [make_peer("8.8.8.8", source="reporting", hostnames=["self.example"])])

        assert merged.hostname == "self.example"
        assert merged.field_sources["hostname"] == "reporting"

    def test_lower_priority_fills_unset_field(self):
        reported = merge_peer(None, [make_peer("8.8.8.8", source="reporting", node_name="alpha")])
        merged = merge_peer(reported, [make_peer("8.8.8.8", source="grpc", latency_ms=12.0, node_name="beta")])

        assert merged.node_name == "alpha"
        assert merged.latency_ms == 12.0

    def test_existing_record_is_not_mutated(self):
        existing = merge_peer(None, [make_peer("8.8.8.8", source="grpc")])
        merge_peer(existing, [make_peer("8.8.8.8", source="reporting")])
        assert existing.sources == {"grpc"}

    def test_bootstrapper_tag(self):
        peer = merge_peer(None, [make_peer("8.8.8.8", is_bootstrapper=True)])
        assert peer.reported_bootstrapper is True
        assert peer.is_bootstrapper is True

    def test_mismatched_endpoint_raises(self):
        existing = merge_peer(None, [make_peer("8.8.8.8")])
        with pytest.raises(ValueError):
            merge_peer(existing, [make_peer("8.8.4.4")])


class TestMergePeerObservations:
    """Tests for batch merging against the registry."""

    async def test_counts_new_and_merged(self, reconciler):
        result = await reconciler.merge_peer_observations(
            [
                make_peer("8.8.8.8", source="grpc"),
                make_peer("8.8.8.8", source="reporting"),
                make_peer("8.8.4.4", source="inferred"),
            ]
        )
        assert (result.merged, result.new_peers) == (2, 2)

        again = await reconciler.merge_peer_observations([make_peer("8.8.8.8", source="grpc")])
        assert (again.merged, again.new_peers) == (1, 0)

    async def test_merge_is_idempotent(self, reconciler, db):
        observations = [
            make_peer("8.8.8.8", source="grpc", peer_id="aa", latency_ms=50.0, observed_by="n1"),
            make_peer("8.8.8.8", source="inferred", hostnames=["boot.example"]),
        ]
        await reconciler.merge_peer_observations(observations)
        once = (await db.get_peer("8.8.8.8", 8888)).model_dump()

        await reconciler.merge_peer_observations(observations)
        twice = (await db.get_peer("8.8.8.8", 8888)).model_dump()

        assert once == twice
        assert twice["seen_by_count"] == 1

    async def test_reporting_hostname_survives_later_inferred(self, reconciler, db):
        await reconciler.merge_peer_observations(
            [make_peer("8.8.8.8", source="reporting", hostnames=["node.example"])]
        )
        await reconciler.merge_peer_observations(
            [make_peer("8.8.8.8", source="inferred", hostnames=["guess.example"], as_of=cycle(3))]
        )

        peer = await db.get_peer("8.8.8.8", 8888)
        assert peer.hostname == "node.example"
        assert peer.sources == {"reporting", "inferred"}

    async def test_sightings_update_seen_by(self, reconciler, db):
        await reconciler.merge_peer_observations(
            [
                make_peer("8.8.8.8", observed_by="n1"),
                make_peer("8.8.8.8", observed_by="n2"),
                make_peer("8.8.4.4", observed_by="n1"),
            ]
        )

        assert (await db.get_peer("8.8.8.8", 8888)).seen_by_count == 2
        assert (await db.get_peer("8.8.4.4", 8888)).seen_by_count == 1

    async def test_record_peer_references(self, reconciler, db):
        await reconciler.merge_peer_observations([make_peer("8.8.8.8", source="reporting", peer_id="n3")])

        recorded = await reconciler.record_peer_references(
            [
                make_observation("n1", peers_list=["n3", "n3", "unknown"]),
                make_observation("n2", peers_list=["n3"]),
                make_observation("n3", peers_list=["n3"]),
            ]
        )

        assert recorded == 2
        assert (await db.get_peer("8.8.8.8", 8888)).seen_by_count == 2
        assert await db.get_observers("8.8.8.8", 8888) == ["n1", "n2"]


class TestGeoEnrichment:
    """Tests for the geo-enrichment pass."""

    async def test_without_geo_client(self, reconciler):
        stats = await reconciler.enrich_geo()
        assert stats.attempted == 0

    async def test_partial_enrichment(self, db):
        geo = AsyncMock()
        geo.lookup = AsyncMock(
            side_effect=[
                GeoLocation(country="US", city="Ashburn", lat=39.0, lon=-77.5),
                None,
                GeoLookupError("timeout"),
            ]
        )
        reconciler = PeerReconciler(db, geo=geo)
        await reconciler.merge_peer_observations(
            [make_peer("8.8.4.4"), make_peer("8.8.8.8"), make_peer("9.9.9.9")]
        )

        stats = await reconciler.enrich_geo(now=cycle(1))

        assert (stats.attempted, stats.succeeded, stats.not_found, stats.failed) == (3, 1, 1, 1)
        assert stats.degraded is False
        peer = await db.get_peer("8.8.4.4", 8888)
        assert peer.geo.city == "Ashburn"
        assert peer.geo_updated_at == cycle(1)

    async def test_total_failure_degrades(self, db):
        geo = AsyncMock()
        geo.lookup = AsyncMock(side_effect=GeoLookupError("service down"))
        reconciler = PeerReconciler(db, geo=geo, max_consecutive_geo_failures=2)
        await reconciler.merge_peer_observations(
            [make_peer("8.8.4.4"), make_peer("8.8.8.8"), make_peer("9.9.9.9")]
        )

        stats = await reconciler.enrich_geo()

        assert stats.degraded is True
        assert stats.attempted == 2
        assert geo.lookup.await_count == 2

    async def test_peers_with_geo_are_skipped(self, db):
        geo = AsyncMock()
        geo.lookup = AsyncMock(return_value=None)
        reconciler = PeerReconciler(db, geo=geo)
        await db.save_peer(
            Peer(
                ip="8.8.8.8",
                port=8888,
                geo=GeoLocation(lat=1.0, lon=2.0),
                first_observed=T0,
                last_observed=T0,
            )
        )

        stats = await reconciler.enrich_geo()
        assert stats.attempted == 0
        geo.lookup.assert_not_awaited()


class TestInference:
    """Tests for location and bootstrapper inference."""

    async def test_centroid_location(self, reconciler, db):
        for node_id, ip, lat, lon in [("r1", "1.1.1.1", 10.0, 20.0), ("r2", "1.0.0.1", 20.0, 40.0)]:
            await db.save_peer(
                Peer(
                    ip=ip,
                    port=8888,
                    linked_node_id=node_id,
                    geo=GeoLocation(lat=lat, lon=lon),
                    first_observed=T0,
                    last_observed=T0,
                )
            )
        await reconciler.merge_peer_observations(
            [make_peer("8.8.8.8", observed_by="r1"), make_peer("8.8.8.8", observed_by="r2")]
        )

        result = await reconciler.run_inference(now=cycle(1))

        assert result.locations_inferred == 1
        peer = await db.get_peer("8.8.8.8", 8888)
        assert (peer.geo.lat, peer.geo.lon) == (15.0, 30.0)
        assert peer.geo.confidence == "medium"

    async def test_no_located_observers_no_inference(self, reconciler, db):
        await reconciler.merge_peer_observations([make_peer("8.8.8.8", observed_by="r1")])
        result = await reconciler.run_inference(now=cycle(1))

        assert result.locations_inferred == 0
        assert (await db.get_peer("8.8.8.8", 8888)).geo is None

    async def test_well_connected_old_peer_is_bootstrapper(self, reconciler, db):
        old = T0 - timedelta(days=30)
        observations = [make_peer("8.8.8.8", observed_by=f"r{i}", as_of=old) for i in range(6)]
        observations += [make_peer(f"9.9.9.{i}", observed_by="r0", as_of=old) for i in range(1, 4)]
        await reconciler.merge_peer_observations(observations)

        result = await reconciler.run_inference(now=T0)

        assert result.bootstrappers_detected == 1
        assert [p.ip for p in await db.get_all_peers(bootstrappers_only=True)] == ["8.8.8.8"]

    async def test_young_peer_is_not_bootstrapper(self, reconciler, db):
        observations = [make_peer("8.8.8.8", observed_by=f"r{i}", as_of=T0) for i in range(6)]
        observations += [make_peer(f"9.9.9.{i}", observed_by="r0", as_of=T0) for i in range(1, 4)]
        await reconciler.merge_peer_observations(observations)

        result = await reconciler.run_inference(now=T0 + timedelta(days=1))
        assert result.bootstrappers_detected == 0

    async def test_reported_bootstrapper_always_counts(self, reconciler):
        await reconciler.merge_peer_observations([make_peer("8.8.8.8", is_bootstrapper=True)])
        result = await reconciler.run_inference(now=T0)
        assert result.bootstrappers_detected == 1


class TestValidatorLinking:
    """Tests for linking peers to validator ids."""

    async def test_links_active_validators_only(self, reconciler, db):
        await reconciler.merge_peer_observations(
            [
                make_peer("8.8.8.8", source="reporting", peer_id="n1"),
                make_peer("8.8.4.4", source="reporting", peer_id="n2"),
                make_peer("9.9.9.9", source="grpc"),
            ]
        )
        nodes = [
            make_observation("n1", consensus_baker_id=7, baking_committee_member="ActiveInCommittee"),
            make_observation("n2", consensus_baker_id=8, baking_committee_member="NotInCommittee"),
        ]

        result = await reconciler.link_validators(nodes, CommitteeRoster(nodes))

        assert (result.linked, result.already_linked, result.unresolved) == (1, 0, 1)
        assert (await db.get_peer("8.8.8.8", 8888)).linked_baker_id == 7
        assert (await db.get_peer("8.8.4.4", 8888)).linked_baker_id is None

        again = await reconciler.link_validators(nodes, CommitteeRoster(nodes))
        assert (again.linked, again.already_linked) == (0, 1)

    async def test_link_is_kept_when_evidence_disappears(self, reconciler, db):
        await reconciler.merge_peer_observations([make_peer("8.8.8.8", source="reporting", peer_id="n1")])
        nodes = [make_observation("n1", consensus_baker_id=7)]
        await reconciler.link_validators(nodes, StaticRoster({7}))

        result = await reconciler.link_validators([make_observation("n1")], StaticRoster(set()))

        assert result.already_linked == 1
        assert (await db.get_peer("8.8.8.8", 8888)).linked_baker_id == 7

    async def test_phantom_validators(self, reconciler):
        await reconciler.merge_peer_observations([make_peer("8.8.8.8", source="reporting", peer_id="n1")])
        nodes = [make_observation("n1", consensus_baker_id=7)]
        await reconciler.link_validators(nodes, StaticRoster({7, 9, 3}))

        assert await reconciler.phantom_validators({7, 9, 3}) == [3, 9]
