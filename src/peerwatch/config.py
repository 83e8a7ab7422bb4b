"""YAML configuration file loading."""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from peerwatch.geo import DEFAULT_CACHE_TTL, DEFAULT_GEO_API_URL, DEFAULT_RATE_LIMIT, DEFAULT_RATE_WINDOW
from peerwatch.sources import DEFAULT_STATUS_URL

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".peerwatch"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DB_PATH = str(DEFAULT_CONFIG_DIR / "peerwatch.db")


class ConfigError(Exception):
    """Raised when a configuration file is malformed or unreadable."""


class PeerEndpoint(BaseModel):
    """A node whose peers info is polled."""

    url: str = Field(..., description="Gateway URL returning the node's peers info")
    node_id: str | None = Field(None, description="Id of the node behind the gateway")


class PeerwatchConfig(BaseModel):
    """Top-level configuration.

    Every field has a default, so a missing config file still gives a working
    observer that polls the public status API only.
    """

    db_path: str = DEFAULT_DB_PATH
    status_url: str = DEFAULT_STATUS_URL
    peer_endpoints: list[PeerEndpoint] = Field(default_factory=list)
    bootstrapper_hosts: list[str] = Field(default_factory=list)
    source_timeout: float = Field(15.0, gt=0)

    geo_enabled: bool = True
    geo_api_url: str = DEFAULT_GEO_API_URL
    geo_rate_limit: int = Field(DEFAULT_RATE_LIMIT, ge=1)
    geo_rate_window: float = Field(DEFAULT_RATE_WINDOW, gt=0)
    geo_cache_ttl: float = Field(DEFAULT_CACHE_TTL, gt=0)
    geo_max_consecutive_failures: int = Field(5, ge=1)

    bootstrapper_degree_factor: float = Field(3.0, gt=0)
    bootstrapper_min_seen_by: int = Field(10, ge=1)
    bootstrapper_min_age_days: float = Field(7.0, ge=0)

    bottleneck_top_k: int = Field(3, ge=0)
    bottleneck_degree_weight: float = Field(1.0, ge=0)
    bottleneck_cut_vertex_weight: float = Field(1.0, ge=0)

    @field_validator("peer_endpoints", mode="before")
    @classmethod
    def _endpoint_strings(cls, value):
        # Bare URLs are accepted as shorthand
        if isinstance(value, list):
            return [{"url": item} if isinstance(item, str) else item for item in value]
        return value


def load_config(path: Path | str | None = None) -> PeerwatchConfig:
    """Load configuration from a YAML file.

    Args:
        path: Explicit path to a YAML config file. If ``None``, the default
            location (``~/.peerwatch/config.yaml``) is tried, and defaults
            are used when it does not exist.

    Returns:
        A populated ``PeerwatchConfig``

    Raises:
        FileNotFoundError: If an explicit *path* was given but doesn't exist
        ConfigError: If the file is not valid YAML, is not a mapping, or
            holds invalid values
    """
    resolved = _resolve_path(path)

    if resolved is None:
        logger.debug("No config file found; using defaults")
        return PeerwatchConfig()

    logger.debug("Loading config from %s", resolved)
    text = resolved.read_text(encoding="utf-8")

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc

    if raw is None:
        return PeerwatchConfig()

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping at the top level in {resolved}, got {type(raw).__name__}"
        )

    return _build_config(raw, source=resolved)


def _resolve_path(path: Path | str | None) -> Path | None:
    """Return the file to read, or ``None`` when there is nothing to read."""
    if path is not None:
        p = Path(path).expanduser()
        if not p.is_file():
            raise FileNotFoundError(f"Config file not found: {p}")
        return p

    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.is_file():
        return default
    return None


def _build_config(raw: dict, source: Path) -> PeerwatchConfig:
    """Validate the raw mapping, ignoring unknown keys."""
    known = set(PeerwatchConfig.model_fields)
    unknown = set(raw) - known
    if unknown:
        logger.warning("Ignoring unknown config keys in %s: %s", source, ", ".join(sorted(unknown)))

    try:
        return PeerwatchConfig(**{key: value for key, value in raw.items() if key in known})
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {source}: {exc}") from exc
