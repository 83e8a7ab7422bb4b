"""Clients for the external data sources polled each cycle."""

import asyncio
import logging
import socket
from datetime import datetime
from typing import Any

import aiohttp

from peerwatch.errors import MalformedRecordError, SourceError
from peerwatch.models import PeerObservation, utc_now
from peerwatch.normalizer import inferred_peer, normalize_grpc_peer

logger = logging.getLogger(__name__)

DEFAULT_STATUS_URL = "https://dashboard.mainnet.concordium.software/nodesSummary"


def _unwrap_list(data: Any, key: str) -> list[Any]:
    """Accept either a bare list or ``{key: [...]}``."""
    if isinstance(data, dict):
        if key in data and isinstance(data[key], list):
            return data[key]
        raise SourceError(f"Expected {key!r} key in response, got keys: {list(data.keys())}")
    if isinstance(data, list):
        return data
    raise SourceError(f"Expected list or dict with {key!r}, got {type(data).__name__}")


async def _get_json(url: str, timeout: float) -> Any:
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url) as response:
                response.raise_for_status()
                return await response.json()
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        raise SourceError(f"Request to {url} failed: {e}") from e


class StatusAPIClient:
    """Client for the network dashboard's nodes summary."""

    def __init__(self, url: str = DEFAULT_STATUS_URL, timeout: float = 15.0):
        """Initialize the status client.

        Args:
            url: Nodes summary URL
            timeout: Request timeout in seconds
        """
        self.url = url
        self.timeout = timeout

    async def fetch_nodes(self) -> list[dict[str, Any]]:
        """Fetch raw node records.

        Returns:
            List of raw status records, unnormalized

        Raises:
            SourceError: If the request fails or the payload has an unexpected shape
        """
        data = await _get_json(self.url, self.timeout)
        records = _unwrap_list(data, "nodes")
        logger.debug("Status source returned %d record(s)", len(records))
        return records


class PeersInfoClient:
    """Reads a node's peers info from an HTTP gateway in front of its API."""

    def __init__(self, url: str, observer: str | None = None, timeout: float = 15.0):
        """Initialize the peers client.

        Args:
            url: Gateway URL returning the node's peers info as JSON
            observer: Node id of the queried node; defaults to the URL
            timeout: Request timeout in seconds
        """
        self.url = url
        self.observer = observer or url
        self.timeout = timeout

    async def fetch_peers(self, as_of: datetime | None = None) -> tuple[list[PeerObservation], list[str]]:
        """Fetch and normalize the node's current peers.

        Returns:
            Tuple of (observations, warnings for skipped entries)

        Raises:
            SourceError: If the request fails or the payload has an unexpected shape
        """
        as_of = as_of or utc_now()
        data = await _get_json(self.url, self.timeout)
        entries = _unwrap_list(data, "peers")

        observations = []
        warnings = []
        for entry in entries:
            try:
                observations.append(normalize_grpc_peer(entry, as_of=as_of, observed_by=self.observer))
            except MalformedRecordError as e:
                message = f"Skipping peer entry from {self.observer}: {e}"
                logger.warning(message)
                warnings.append(message)
        return observations, warnings


def parse_host_port(entry: str, default_port: int = 8888) -> tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` for IPv6 literals)."""
    entry = entry.strip()
    if entry.startswith("["):
        host, _, rest = entry[1:].partition("]")
        port = rest.lstrip(":") or default_port
    elif entry.count(":") == 1:
        host, port = entry.split(":")
    else:
        host, port = entry, default_port
    try:
        return host, int(port)
    except ValueError as e:
        raise SourceError(f"Invalid port in {entry!r}") from e


async def resolve_host(entry: str, as_of: datetime | None = None) -> list[PeerObservation]:
    """Resolve one ``host:port`` entry into ``inferred`` observations.

    Raises:
        SourceError: If the name does not resolve
    """
    host, port = parse_host_port(entry)
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except OSError as e:
        raise SourceError(f"Could not resolve {host}: {e}") from e

    addresses = sorted({info[4][0] for info in infos})
    return [inferred_peer(address, port, hostnames=[host], as_of=as_of) for address in addresses]


async def resolve_hosts(
    entries: list[str], as_of: datetime | None = None
) -> tuple[list[PeerObservation], dict[str, str]]:
    """Resolve every configured bootstrapper hostname concurrently.

    Returns:
        Tuple of (observations, errors keyed by entry)
    """
    as_of = as_of or utc_now()
    results = await asyncio.gather(
        *(resolve_host(entry, as_of) for entry in entries), return_exceptions=True
    )

    observations: list[PeerObservation] = []
    errors: dict[str, str] = {}
    for entry, result in zip(entries, results):
        if isinstance(result, SourceError):
            logger.warning("%s", result)
            errors[entry] = str(result)
        elif isinstance(result, BaseException):
            raise result
        else:
            observations.extend(result)
    return observations, errors
