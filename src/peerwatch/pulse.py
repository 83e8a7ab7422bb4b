"""Default network pulse score.

The tracker treats the pulse function as an injected black box; this is the
one used when the caller does not supply their own.
"""

from collections.abc import Callable

PulseFunction = Callable[[int, float | None, int, int], float]

# Latency assumed when no node reports a ping
DEFAULT_LATENCY_MS = 50.0

# Lag (blocks) and latency (ms) at which the respective component reaches zero
MAX_HEALTHY_LAG = 10
MAX_HEALTHY_LATENCY_MS = 500.0


def network_pulse(
    finalization_lag: int,
    avg_latency: float | None,
    consensus_node_count: int,
    total_nodes: int,
) -> float:
    """Score overall network health on a 0-100 scale.

    Weighted blend of finalization (40%), latency (30%) and consensus
    participation (30%).
    """
    latency = DEFAULT_LATENCY_MS if avg_latency is None else avg_latency

    finalization = max(0.0, 1.0 - max(finalization_lag, 0) / MAX_HEALTHY_LAG)
    responsiveness = max(0.0, 1.0 - max(latency, 0.0) / MAX_HEALTHY_LATENCY_MS)
    participation = consensus_node_count / total_nodes if total_nodes else 0.0

    score = 100.0 * (0.4 * finalization + 0.3 * responsiveness + 0.3 * participation)
    return round(min(100.0, max(0.0, score)), 2)
