"""Shared test fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from peerwatch.database import AsyncDatabase
from peerwatch.models import NodeObservation, PeerObservation

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_observation(node_id: str, **overrides) -> NodeObservation:
    """Build a healthy observation with sensible defaults."""
    fields = {
        "node_id": node_id,
        "node_name": f"Node {node_id}",
        "client": "6.3.0",
        "peer_type": "Node",
        "peers_count": 3,
        "uptime_ms": 3_600_000,
        "finalized_block_height": 100,
        "best_block_height": 101,
        "consensus_running": True,
        "observed_at": T0,
    }
    fields.update(overrides)
    return NodeObservation(**fields)


def make_peer(ip: str, port: int = 8888, source: str = "grpc", **overrides) -> PeerObservation:
    """Build a peer observation."""
    fields = {"ip": ip, "port": port, "source": source, "as_of": T0}
    fields.update(overrides)
    return PeerObservation(**fields)


def cycle(n: int) -> datetime:
    """Timestamp of the n-th poll cycle, one minute apart."""
    return T0 + timedelta(minutes=n)


@pytest.fixture
async def db():
    """Create in-memory test database."""
    database = AsyncDatabase(":memory:")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def sample_observations():
    """Three nodes that all list each other as peers."""
    return [
        make_observation("n1", peers_list=["n2", "n3"], average_ping=40.0),
        make_observation("n2", peers_list=["n1", "n3"], finalized_block_height=95),
        make_observation("n3", peers_list=["n1", "n2"], consensus_running=False),
    ]


@pytest.fixture
def sample_status_records():
    """Raw status API records as returned by the nodes summary endpoint."""
    return [
        {
            "nodeId": "a1b2c3d4e5f60001",
            "nodeName": "alpha",
            "client": "6.3.0",
            "peerType": "Node",
            "peersCount": 2,
            "peersList": ["a1b2c3d4e5f60002", "a1b2c3d4e5f60003"],
            "averagePing": 35.5,
            "uptime": 86_400_000,
            "finalizedBlockHeight": 1000,
            "bestBlockHeight": 1001,
            "consensusRunning": True,
            "averageBytesPerSecondIn": 1200.0,
            "averageBytesPerSecondOut": 900.0,
            "consensusBakerId": 42,
            "bakingCommitteeMember": "ActiveInCommittee",
        },
        {
            "nodeId": "a1b2c3d4e5f60002",
            "nodeName": "beta",
            "client": "6.2.4",
            "peerType": "Node",
            "peersCount": 1,
            "peersList": ["a1b2c3d4e5f60001"],
            "averagePing": None,
            "uptime": 3_600_000,
            "finalizedBlockHeight": 997,
            "bestBlockHeight": 998,
            "consensusRunning": True,
        },
        {
            "nodeId": "a1b2c3d4e5f60003",
            "nodeName": "gamma",
            "client": "6.3.0",
            "peerType": "Bootstrapper",
            "peersCount": 1,
            "peersList": ["a1b2c3d4e5f60001"],
            "uptime": 7_200_000,
            "finalizedBlockHeight": 990,
            "consensusRunning": False,
        },
    ]
