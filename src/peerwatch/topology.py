"""Peer graph construction and resilience metrics.

The graph is an undirected ``networkx.Graph`` keyed by node id. Everything
here is pure and CPU-bound, so callers may run it in a worker thread.
"""

import logging
import math

import networkx as nx

from peerwatch.models import NodeObservation, TopologyNode, TopologySummary

logger = logging.getLogger(__name__)


def nodes_from_observations(observations: list[NodeObservation]) -> list[TopologyNode]:
    """Build analyzer input from a status batch."""
    return [TopologyNode(id=obs.node_id, peer_ids=list(obs.peers_list)) for obs in observations]


def build_graph(nodes: list[TopologyNode]) -> nx.Graph:
    """Build the undirected peer graph.

    An edge exists when either endpoint lists the other. Peers that are not
    themselves in *nodes* and self-references are ignored.
    """
    graph = nx.Graph()
    graph.add_nodes_from(node.id for node in nodes)
    for node in nodes:
        for peer_id in node.peer_ids:
            if peer_id != node.id and peer_id in graph:
                graph.add_edge(node.id, peer_id)
    return graph


def _sorted_pair(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


def degree_distribution(graph: nx.Graph) -> dict[int, int]:
    """Map degree to the number of nodes with that degree."""
    return {degree: count for degree, count in enumerate(nx.degree_histogram(graph)) if count}


def local_clustering(graph: nx.Graph, node_id: str) -> float:
    """Fraction of a node's neighbor pairs that are connected to each other."""
    return float(nx.clustering(graph, node_id))


def global_clustering(graph: nx.Graph) -> float:
    """Mean local clustering over nodes of degree two or more."""
    eligible = [node_id for node_id, degree in graph.degree() if degree >= 2]
    if not eligible:
        return 0.0
    coefficients = nx.clustering(graph, eligible)
    return sum(coefficients.values()) / len(eligible)


def graph_diameter(graph: nx.Graph) -> int | float:
    """Longest shortest path; ``math.inf`` if any pair is unreachable."""
    if graph.number_of_nodes() == 0:
        return 0
    if not nx.is_connected(graph):
        return math.inf
    return nx.diameter(graph)


def find_bridges(graph: nx.Graph) -> list[tuple[str, str]]:
    """Edges whose removal disconnects their component."""
    return sorted(_sorted_pair(a, b) for a, b in nx.bridges(graph))


def find_articulation_points(graph: nx.Graph) -> list[str]:
    """Nodes whose removal disconnects their component."""
    return sorted(set(nx.articulation_points(graph)))


def rank_bottlenecks(
    graph: nx.Graph,
    articulation_points: set[str] | list[str],
    top_k: int = 3,
    degree_weight: float = 1.0,
    cut_vertex_weight: float = 1.0,
) -> list[str]:
    """Rank nodes by a weighted blend of relative degree and cut-vertex status.

    ``score = degree_weight * degree / max_degree + cut_vertex_weight * is_cut``.
    Ties go to the higher degree, then the lower id. Isolated nodes are never
    bottlenecks.
    """
    if top_k <= 0:
        return []
    cut = set(articulation_points)
    max_degree = max((degree for _, degree in graph.degree()), default=0)
    if max_degree == 0:
        return []

    scored = []
    for node_id, degree in graph.degree():
        if degree == 0:
            continue
        score = degree_weight * degree / max_degree + cut_vertex_weight * (node_id in cut)
        scored.append((-score, -degree, node_id))
    scored.sort()
    return [node_id for _, _, node_id in scored[:top_k]]


class TopologyAnalyzer:
    """Computes resilience metrics for the reporting nodes' peer graph."""

    def __init__(self, degree_weight: float = 1.0, cut_vertex_weight: float = 1.0):
        self.degree_weight = degree_weight
        self.cut_vertex_weight = cut_vertex_weight

    def analyze(self, nodes: list[TopologyNode], top_k: int = 3) -> TopologySummary:
        """Analyze the graph formed by *nodes* and their peer lists.

        Args:
            nodes: De-duplicated node set for one cycle
            top_k: Number of bottleneck nodes to report

        Returns:
            TopologySummary; an empty summary for zero nodes
        """
        if not nodes:
            return TopologySummary()

        graph = build_graph(nodes)
        node_count = graph.number_of_nodes()
        edge_count = graph.number_of_edges()
        bridges = find_bridges(graph)
        cut_vertices = find_articulation_points(graph)
        diameter = graph_diameter(graph)

        summary = TopologySummary(
            node_count=node_count,
            edge_count=edge_count,
            avg_degree=2 * edge_count / node_count,
            diameter=diameter,
            global_clustering_coefficient=global_clustering(graph),
            is_connected=not math.isinf(diameter),
            bottlenecks=rank_bottlenecks(
                graph,
                cut_vertices,
                top_k=top_k,
                degree_weight=self.degree_weight,
                cut_vertex_weight=self.cut_vertex_weight,
            ),
            bridges=bridges,
            articulation_points=cut_vertices,
            degree_distribution=degree_distribution(graph),
        )
        logger.debug(
            "Topology: %d nodes, %d edges, %d bridge(s), connected=%s",
            node_count,
            edge_count,
            len(bridges),
            summary.is_connected,
        )
        return summary
