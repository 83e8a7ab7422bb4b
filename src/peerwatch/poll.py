"""One poll cycle: fetch every source, then track, reconcile and analyze."""

import asyncio
import logging
from collections.abc import Awaitable
from datetime import datetime
from typing import Any, TypeVar

from peerwatch.config import PeerwatchConfig
from peerwatch.database import AsyncDatabase
from peerwatch.errors import CycleFailedError, EmptyBatchError, MalformedRecordError, SourceError
from peerwatch.geo import GeoLookupClient
from peerwatch.models import CycleReport, NodeObservation, PeerObservation, utc_now
from peerwatch.node_tracker import NodeStateTracker
from peerwatch.normalizer import normalize_nodes, normalize_reporting_peer
from peerwatch.peer_reconciler import PeerReconciler
from peerwatch.roster import CommitteeRoster, ValidatorRoster
from peerwatch.sources import PeersInfoClient, StatusAPIClient, resolve_hosts
from peerwatch.topology import TopologyAnalyzer, nodes_from_observations

logger = logging.getLogger(__name__)

T = TypeVar("T")

DNS_SOURCE = "bootstrapper_dns"


class PollService:
    """Runs poll cycles against one history store.

    Cycles must not overlap; the caller serializes them.
    """

    def __init__(
        self,
        db: AsyncDatabase,
        status_client: StatusAPIClient,
        peer_clients: list[PeersInfoClient] | None = None,
        bootstrapper_hosts: list[str] | None = None,
        tracker: NodeStateTracker | None = None,
        reconciler: PeerReconciler | None = None,
        analyzer: TopologyAnalyzer | None = None,
        roster: ValidatorRoster | None = None,
        source_timeout: float = 15.0,
        bottleneck_top_k: int = 3,
    ):
        """Initialize the poll service.

        Args:
            db: History store shared by the tracker and reconciler
            status_client: Source of node status records
            peer_clients: Nodes whose peers info is polled
            bootstrapper_hosts: ``host:port`` entries resolved each cycle
            tracker: Node tracker; built on *db* when omitted
            reconciler: Peer reconciler; built on *db* without geo when omitted
            analyzer: Topology analyzer
            roster: Validator roster; defaults to committee membership
                reported in the status batch
            source_timeout: Seconds each source fetch may take
            bottleneck_top_k: Bottleneck nodes reported by the analyzer
        """
        self.db = db
        self.status_client = status_client
        self.peer_clients = peer_clients or []
        self.bootstrapper_hosts = bootstrapper_hosts or []
        self.tracker = tracker or NodeStateTracker(db)
        self.reconciler = reconciler or PeerReconciler(db)
        self.analyzer = analyzer or TopologyAnalyzer()
        self.roster = roster
        self.source_timeout = source_timeout
        self.bottleneck_top_k = bottleneck_top_k

    @classmethod
    def from_config(cls, config: PeerwatchConfig, db: AsyncDatabase) -> "PollService":
        """Wire up every collaborator from configuration."""
        geo = None
        if config.geo_enabled:
            geo = GeoLookupClient(
                base_url=config.geo_api_url,
                rate_limit=config.geo_rate_limit,
                rate_window=config.geo_rate_window,
                cache_ttl=config.geo_cache_ttl,
                timeout=config.source_timeout,
            )
        reconciler = PeerReconciler(
            db,
            geo=geo,
            bootstrapper_degree_factor=config.bootstrapper_degree_factor,
            bootstrapper_min_seen_by=config.bootstrapper_min_seen_by,
            bootstrapper_min_age_days=config.bootstrapper_min_age_days,
            max_consecutive_geo_failures=config.geo_max_consecutive_failures,
        )
        return cls(
            db,
            status_client=StatusAPIClient(config.status_url, timeout=config.source_timeout),
            peer_clients=[
                PeersInfoClient(endpoint.url, observer=endpoint.node_id, timeout=config.source_timeout)
                for endpoint in config.peer_endpoints
            ],
            bootstrapper_hosts=config.bootstrapper_hosts,
            reconciler=reconciler,
            analyzer=TopologyAnalyzer(
                degree_weight=config.bottleneck_degree_weight,
                cut_vertex_weight=config.bottleneck_cut_vertex_weight,
            ),
            source_timeout=config.source_timeout,
            bottleneck_top_k=config.bottleneck_top_k,
        )

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.source_timeout)
        except asyncio.TimeoutError as e:
            raise SourceError(f"timed out after {self.source_timeout:g}s") from e

    async def _fetch_all(self, as_of: datetime) -> list[Any]:
        """Fetch every source concurrently; failures come back as exceptions."""
        fetches = [self._bounded(self.status_client.fetch_nodes())]
        fetches += [self._bounded(client.fetch_peers(as_of)) for client in self.peer_clients]
        if self.bootstrapper_hosts:
            fetches.append(self._bounded(resolve_hosts(self.bootstrapper_hosts, as_of)))
        results = await asyncio.gather(*fetches, return_exceptions=True)

        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, SourceError):
                raise result
        return results

    @staticmethod
    def _reporting_peers(
        records: list[Any], as_of: datetime, warnings: list[str]
    ) -> list[PeerObservation]:
        peers = []
        for record in records:
            if not isinstance(record, dict):
                continue
            try:
                observation = normalize_reporting_peer(record, as_of)
            except MalformedRecordError as e:
                warnings.append(f"Skipping reported address: {e}")
                continue
            if observation is not None:
                peers.append(observation)
        return peers

    async def run_cycle(self, now: datetime | None = None) -> CycleReport:
        """Run one complete poll cycle.

        Returns:
            CycleReport; ``status`` is ``partial`` when any secondary source
            failed or geo enrichment degraded

        Raises:
            CycleFailedError: If the status source failed or yielded no nodes
        """
        started = now or utc_now()
        report = CycleReport(started_at=started)

        results = await self._fetch_all(started)
        status_result, *peer_results = results

        if isinstance(status_result, SourceError):
            raise CycleFailedError(f"Status source failed: {status_result}") from status_result

        observations, warnings = normalize_nodes(status_result, started)
        report.warnings.extend(warnings)
        if not observations:
            raise CycleFailedError("Status source returned no usable nodes")

        peer_observations = self._reporting_peers(status_result, started, report.warnings)
        self._collect_peer_results(peer_results, peer_observations, report)

        report.nodes_polled = len(observations)
        report.network_max_height = max(obs.finalized_block_height for obs in observations)

        try:
            report.process = await self.tracker.process_nodes(
                observations, report.network_max_height, now=started
            )
        except EmptyBatchError as e:
            raise CycleFailedError(str(e)) from e

        report.merge = await self.reconciler.merge_peer_observations(peer_observations)
        report.references_recorded = await self.reconciler.record_peer_references(observations)

        report.geo, report.topology = await asyncio.gather(
            self.reconciler.enrich_geo(started),
            asyncio.to_thread(
                self.analyzer.analyze,
                nodes_from_observations(observations),
                self.bottleneck_top_k,
            ),
        )

        await self._link(observations, report)
        report.inference = await self.reconciler.run_inference(started)

        if report.source_errors or report.geo.degraded:
            report.status = "partial"
        report.finished_at = utc_now()

        logger.info(
            "Cycle finished (%s): %d node(s), %d peer(s) merged, %d source error(s)",
            report.status,
            report.nodes_polled,
            report.merge.merged,
            len(report.source_errors),
        )
        return report

    def _collect_peer_results(
        self,
        peer_results: list[Any],
        peer_observations: list[PeerObservation],
        report: CycleReport,
    ) -> None:
        for client, result in zip(self.peer_clients, peer_results):
            if isinstance(result, SourceError):
                logger.warning("Peer source %s unavailable: %s", client.observer, result)
                report.source_errors[client.observer] = str(result)
                continue
            observations, warnings = result
            peer_observations.extend(observations)
            report.warnings.extend(warnings)

        if self.bootstrapper_hosts:
            dns_result = peer_results[len(self.peer_clients)]
            if isinstance(dns_result, SourceError):
                logger.warning("Bootstrapper resolution failed: %s", dns_result)
                report.source_errors[DNS_SOURCE] = str(dns_result)
            else:
                observations, errors = dns_result
                peer_observations.extend(observations)
                for entry, message in errors.items():
                    report.source_errors[f"{DNS_SOURCE}:{entry}"] = message

    async def _link(self, observations: list[NodeObservation], report: CycleReport) -> None:
        roster = self.roster or CommitteeRoster(observations)
        report.links = await self.reconciler.link_validators(observations, roster)
        report.phantom_validators = await self.reconciler.phantom_validators(
            await roster.active_participants()
        )
