"""Normalization of raw source payloads into observation models."""

import ipaddress
import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from peerwatch.errors import MalformedRecordError
from peerwatch.models import NodeObservation, PeerObservation, utc_now

logger = logging.getLogger(__name__)

# gRPC catch-up status enum values
CATCHUP_STATUSES = {0: "UPTODATE", 1: "PENDING", 2: "CATCHINGUP"}


def _first(data: dict[str, Any], *keys: str) -> Any:
    """Return the first non-None value among *keys*."""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _required_int(data: dict[str, Any], *keys: str, default: int | None = None) -> int:
    value = _first(data, *keys)
    if value is None:
        if default is not None:
            return default
        raise MalformedRecordError(f"Missing field {keys[0]!r}")
    try:
        return int(value)
    except (ValueError, TypeError) as e:
        raise MalformedRecordError(f"Invalid {keys[0]!r}: {value!r}") from e


def _optional_float(data: dict[str, Any], *keys: str) -> float | None:
    value = _first(data, *keys)
    if value is None:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _optional_int(data: dict[str, Any], *keys: str) -> int | None:
    value = _first(data, *keys)
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def _flag(value: Any, field: str) -> bool:
    """Parse a boolean field; JSON booleans and "true"/"false" strings only."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise MalformedRecordError(f"Invalid {field!r}: {value!r}")


def _mapping(data: dict[str, Any], key: str) -> dict[str, Any]:
    """A nested object field; absent means empty, anything else is malformed."""
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedRecordError(f"Invalid {key!r}: expected an object, got {type(value).__name__}")
    return value


def normalize_node(data: dict[str, Any], observed_at: datetime | None = None) -> NodeObservation:
    """Convert one status-API record into a ``NodeObservation``.

    Both the camelCase keys of the dashboard API and snake_case keys are
    accepted.

    Args:
        data: Raw record
        observed_at: Poll time; defaults to now

    Returns:
        NodeObservation

    Raises:
        MalformedRecordError: If the id is missing or a required number is invalid
    """
    if not isinstance(data, dict):
        raise MalformedRecordError(f"Expected a mapping, got {type(data).__name__}")

    node_id = _first(data, "nodeId", "node_id", "id")
    if not node_id or not str(node_id).strip():
        raise MalformedRecordError("Missing node ID")
    node_id = str(node_id).strip()

    peers_list = _first(data, "peersList", "peers_list") or []
    if not isinstance(peers_list, list):
        raise MalformedRecordError(f"Invalid peersList for {node_id}: {type(peers_list).__name__}")

    consensus_running = _flag(_first(data, "consensusRunning", "consensus_running"), "consensusRunning")

    try:
        return NodeObservation(
            node_id=node_id,
            node_name=str(_first(data, "nodeName", "node_name") or ""),
            client=str(_first(data, "client", "clientVersion", "client_version") or ""),
            peer_type=_first(data, "peerType", "peer_type"),
            peers_count=_required_int(data, "peersCount", "peers_count", default=len(peers_list)),
            peers_list=[str(p) for p in peers_list],
            average_ping=_optional_float(data, "averagePing", "average_ping"),
            uptime_ms=_required_int(data, "uptime", "uptimeMs", "uptime_ms"),
            finalized_block_height=_required_int(data, "finalizedBlockHeight", "finalized_block_height"),
            best_block_height=_required_int(
                data, "bestBlockHeight", "best_block_height", default=0
            ),
            consensus_running=consensus_running,
            bandwidth_in_bps=_optional_float(data, "averageBytesPerSecondIn", "bandwidth_in_bps"),
            bandwidth_out_bps=_optional_float(data, "averageBytesPerSecondOut", "bandwidth_out_bps"),
            consensus_baker_id=_optional_int(data, "consensusBakerId", "consensus_baker_id"),
            baking_committee_member=_first(data, "bakingCommitteeMember", "baking_committee_member"),
            observed_at=observed_at or utc_now(),
        )
    except ValidationError as e:
        raise MalformedRecordError(f"Invalid record for {node_id}: {e.error_count()} field error(s)") from e


def normalize_nodes(
    records: list[dict[str, Any]], observed_at: datetime | None = None
) -> tuple[list[NodeObservation], list[str]]:
    """Normalize a whole status payload.

    Malformed records are skipped with a warning. When the same node id
    appears more than once the last record wins.

    Returns:
        Tuple of (observations, warnings)
    """
    observed_at = observed_at or utc_now()
    by_id: dict[str, NodeObservation] = {}
    warnings: list[str] = []

    for index, record in enumerate(records):
        try:
            observation = normalize_node(record, observed_at)
        except MalformedRecordError as e:
            message = f"Skipping malformed node record #{index}: {e}"
            logger.warning(message)
            warnings.append(message)
            continue
        if observation.node_id in by_id:
            logger.debug("Duplicate node id %s in status payload; keeping the last one", observation.node_id)
            del by_id[observation.node_id]
        by_id[observation.node_id] = observation

    return list(by_id.values()), warnings


def validate_endpoint(ip: Any, port: Any) -> tuple[str, int]:
    """Validate an ip/port pair and return it in canonical form.

    Raises:
        MalformedRecordError: If the address or port is invalid
    """
    try:
        address = ipaddress.ip_address(str(ip).strip())
    except ValueError as e:
        raise MalformedRecordError(f"Invalid IP address: {ip!r}") from e
    try:
        port_number = int(port)
    except (ValueError, TypeError) as e:
        raise MalformedRecordError(f"Invalid port: {port!r}") from e
    if not 0 < port_number < 65536:
        raise MalformedRecordError(f"Port out of range: {port_number}")
    return str(address), port_number


def format_peer_id(value: Any) -> str:
    """Render a peer id; integers become 16-digit zero-padded hex."""
    if isinstance(value, int):
        return f"{value:016x}"
    if isinstance(value, dict):
        return format_peer_id(value.get("value"))
    return str(value)


def normalize_grpc_peer(
    data: dict[str, Any],
    as_of: datetime | None = None,
    observed_by: str | None = None,
) -> PeerObservation:
    """Convert one peers-info entry from a node into a ``grpc`` observation.

    Accepts the nested ``socketAddress`` shape of the node API as well as
    flat ``ipAddress``/``port`` keys.

    Raises:
        MalformedRecordError: If the entry has no usable address or a field
            has the wrong shape
    """
    if not isinstance(data, dict):
        raise MalformedRecordError(f"Expected a mapping, got {type(data).__name__}")

    socket_address = _mapping(data, "socketAddress")
    ip = _first(data, "ipAddress", "ip")
    port = data.get("port")
    if socket_address:
        ip = ip or _unwrap(socket_address.get("ip"))
        port = port or _unwrap(socket_address.get("port"))
    if ip is None or port is None:
        raise MalformedRecordError("Peer entry has no socket address")
    ip, port = validate_endpoint(ip, port)

    peer_id = _first(data, "peerId", "peer_id")
    consensus_info = _mapping(data, "consensusInfo")
    is_bootstrapper = consensus_info.get("tag") == "bootstrapper" or _flag(
        data.get("isBootstrapper"), "isBootstrapper"
    )

    catchup_status = data.get("catchupStatus")
    if catchup_status is None and consensus_info.get("tag") == "nodeCatchupStatus":
        value = consensus_info.get("value")
        catchup_status = CATCHUP_STATUSES.get(value, value) if isinstance(value, int) else value
    if is_bootstrapper:
        catchup_status = None

    network_stats = _mapping(data, "networkStats")
    latency = _first(network_stats, "latency") if network_stats else data.get("latencyMs")
    try:
        latency_ms = float(latency) if latency is not None else None
    except (ValueError, TypeError):
        latency_ms = None

    try:
        return PeerObservation(
            ip=ip,
            port=port,
            source="grpc",
            as_of=as_of or utc_now(),
            peer_id=format_peer_id(peer_id) if peer_id is not None else None,
            catchup_status=catchup_status,
            latency_ms=latency_ms,
            is_bootstrapper=is_bootstrapper,
            observed_by=observed_by,
        )
    except ValidationError as e:
        raise MalformedRecordError(f"Invalid peer entry for {ip}:{port}: {e.error_count()} field error(s)") from e


def _unwrap(value: Any) -> Any:
    """The node API wraps scalars as ``{"value": ...}``."""
    if isinstance(value, dict):
        return value.get("value")
    return value


def normalize_reporting_peer(
    data: dict[str, Any], as_of: datetime | None = None
) -> PeerObservation | None:
    """Turn a status record that carries its own address into a ``reporting`` observation.

    Returns:
        PeerObservation, or None if the record has no address

    Raises:
        MalformedRecordError: If the address is present but invalid, or a
            field has the wrong type
    """
    ip = _first(data, "ipAddress", "ip_address", "ip")
    port = _first(data, "port", "listenPort")
    if ip is None or port is None:
        return None
    ip, port = validate_endpoint(ip, port)

    hostname = _first(data, "hostname", "host")
    node_id = _first(data, "nodeId", "node_id", "id")
    try:
        return PeerObservation(
            ip=ip,
            port=port,
            source="reporting",
            hostnames=[hostname] if hostname else [],
            as_of=as_of or utc_now(),
            peer_id=str(node_id) if node_id else None,
            node_name=_first(data, "nodeName", "node_name"),
            client_version=_first(data, "client", "client_version"),
        )
    except ValidationError as e:
        raise MalformedRecordError(f"Invalid reported address {ip}:{port}: {e.error_count()} field error(s)") from e


def inferred_peer(
    ip: str,
    port: int,
    hostnames: list[str] | None = None,
    as_of: datetime | None = None,
) -> PeerObservation:
    """Build an ``inferred`` observation, e.g. from a resolved bootstrapper hostname."""
    ip, port = validate_endpoint(ip, port)
    return PeerObservation(
        ip=ip,
        port=port,
        source="inferred",
        hostnames=sorted(set(hostnames or [])),
        as_of=as_of or utc_now(),
    )
