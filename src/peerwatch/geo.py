"""IP geolocation client (ip-api.com JSON shape)."""

import asyncio
import ipaddress
import logging
import time
from collections import deque

import aiohttp

from peerwatch.errors import GeoLookupError
from peerwatch.models import GeoLocation

logger = logging.getLogger(__name__)

DEFAULT_GEO_API_URL = "http://ip-api.com/json"
GEO_FIELDS = "status,message,country,city,lat,lon,isp"

# Free tier: 45 requests per minute
DEFAULT_RATE_LIMIT = 45
DEFAULT_RATE_WINDOW = 60.0

# Locations rarely change; keep results for 30 days
DEFAULT_CACHE_TTL = 30 * 24 * 3600.0


def is_private_ip(ip: str) -> bool:
    """Return True for addresses a public lookup service cannot locate."""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


class GeoLookupClient:
    """Rate-limited, caching client for an ip-api style geolocation service."""

    def __init__(
        self,
        base_url: str = DEFAULT_GEO_API_URL,
        rate_limit: int = DEFAULT_RATE_LIMIT,
        rate_window: float = DEFAULT_RATE_WINDOW,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        timeout: float = 10.0,
    ):
        """Initialize the geolocation client.

        Args:
            base_url: Base URL of the lookup service
            rate_limit: Maximum requests per window
            rate_window: Window length in seconds
            cache_ttl: Seconds a successful result stays cached
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.rate_limit = rate_limit
        self.rate_window = rate_window
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._cache: dict[str, tuple[float, GeoLocation]] = {}
        self._requests: deque[float] = deque()

    def _cached(self, ip: str) -> GeoLocation | None:
        entry = self._cache.get(ip)
        if entry is None:
            return None
        stored_at, location = entry
        if time.monotonic() - stored_at > self.cache_ttl:
            del self._cache[ip]
            return None
        return location

    def _acquire(self) -> bool:
        """Take a request slot from the sliding window, if one is free."""
        now = time.monotonic()
        while self._requests and now - self._requests[0] >= self.rate_window:
            self._requests.popleft()
        if len(self._requests) >= self.rate_limit:
            return False
        self._requests.append(now)
        return True

    async def lookup(self, ip: str) -> GeoLocation | None:
        """Look up the location of an IP address.

        Args:
            ip: IPv4 or IPv6 address

        Returns:
            GeoLocation, or None if the address is private, unknown to the
            service, or the rate limit is exhausted for now

        Raises:
            GeoLookupError: If the service cannot be reached or returns a body
                that is not JSON
        """
        cached = self._cached(ip)
        if cached is not None:
            return cached

        if is_private_ip(ip):
            return None

        if not self._acquire():
            logger.debug("Geo rate limit reached; deferring lookup of %s", ip)
            return None

        url = f"{self.base_url}/{ip}"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.get(url, params={"fields": GEO_FIELDS}) as response:
                    response.raise_for_status()
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise GeoLookupError(f"Geo lookup for {ip} failed: {e}") from e

        if not isinstance(data, dict) or data.get("status") != "success":
            message = data.get("message") if isinstance(data, dict) else None
            logger.debug("No geo data for %s: %s", ip, message or "unexpected response")
            return None

        try:
            location = GeoLocation(
                country=data.get("country"),
                city=data.get("city"),
                lat=float(data["lat"]),
                lon=float(data["lon"]),
                isp=data.get("isp"),
            )
        except (KeyError, ValueError, TypeError):
            logger.debug("Incomplete geo data for %s: %s", ip, data)
            return None

        self._cache[ip] = (time.monotonic(), location)
        return location
