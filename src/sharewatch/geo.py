"""Geo helpers — great-circle distance, private-address checks, location lookup.

The math functions are pure and safe to call from any poller. Location lookup
uses a static CIDR table (from config) with a per-resolver cache; private
addresses resolve to the ``Local Network`` sentinel with no coordinates so they
never take part in distance-based detection.
"""

from __future__ import annotations

import ipaddress
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

LOCAL_NETWORK = "Local Network"

_MS_PER_HOUR = 3_600_000

_PRIVATE_V4 = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
    ipaddress.IPv4Network("127.0.0.0/8"),
    ipaddress.IPv4Network("169.254.0.0/16"),
)

_PRIVATE_V6 = (
    ipaddress.IPv6Network("::1/128"),
    ipaddress.IPv6Network("fe80::/10"),
    ipaddress.IPv6Network("fc00::/7"),
)


class HasCoordinates(Protocol):
    lat: float | None
    lon: float | None


@dataclass(frozen=True)
class GeoLocation:
    """Resolved location of a network address. Any field may be unknown."""

    city: str | None = None
    region: str | None = None
    country: str | None = None
    lat: float | None = None
    lon: float | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None


UNKNOWN_LOCATION = GeoLocation()
LOCAL_LOCATION = GeoLocation(country=LOCAL_NETWORK)


def distance_km(a: HasCoordinates, b: HasCoordinates) -> float | None:
    """Haversine distance in kilometres, or None if either point lacks coordinates."""
    if a.lat is None or a.lon is None or b.lat is None or b.lon is None:
        return None
    if a.lat == b.lat and a.lon == b.lon:
        return 0.0

    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.lon - a.lon)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def is_private_address(ip: str) -> bool:
    """True for loopback, link-local and RFC1918/ULA addresses.

    IPv4-mapped IPv6 addresses are checked against the IPv4 ranges.
    Malformed input is not private.
    """
    try:
        addr = ipaddress.ip_address(ip.strip())
    except (ValueError, AttributeError):
        return False

    if isinstance(addr, ipaddress.IPv6Address):
        if addr.ipv4_mapped is not None:
            addr = addr.ipv4_mapped
        else:
            return any(addr in net for net in _PRIVATE_V6)

    return any(addr in net for net in _PRIVATE_V4)


def is_impossible_travel(
    a: HasCoordinates,
    b: HasCoordinates,
    elapsed_ms: float,
    max_speed_kmh: float,
) -> bool:
    """Whether covering the distance from ``a`` to ``b`` in ``elapsed_ms`` is too fast."""
    distance = distance_km(a, b)
    if distance is None:
        return False
    if elapsed_ms <= 0:
        return distance > 0
    return distance / (elapsed_ms / _MS_PER_HOUR) > max_speed_kmh


def travel_speed_kmh(distance: float, elapsed_ms: float) -> float:
    """Speed needed to cover ``distance`` km in ``elapsed_ms``; infinite for no time."""
    if elapsed_ms <= 0:
        return math.inf if distance > 0 else 0.0
    return distance / (elapsed_ms / _MS_PER_HOUR)


class GeoResolver(Protocol):
    """Anything that maps an IP address to a location."""

    def lookup(self, ip: str) -> GeoLocation: ...


@dataclass
class StaticGeoResolver:
    """Resolves addresses against a CIDR -> location table.

    Resolution order:
      1. Private/local addresses -> ``Local Network`` sentinel (no coordinates)
      2. First matching CIDR entry in the table
      3. Unknown location

    Results are cached for the lifetime of the resolver instance.
    """

    table: list[tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, GeoLocation]] = (
        field(default_factory=list)
    )
    _cache: dict[str, GeoLocation] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @classmethod
    def from_entries(cls, entries: list[dict]) -> StaticGeoResolver:
        """Build from config entries: ``{network, city, region, country, lat, lon}``."""
        table = []
        for entry in entries:
            if not isinstance(entry, dict) or "network" not in entry:
                raise ValueError(f"Geo entry needs a 'network' key: {entry!r}")
            network = ipaddress.ip_network(str(entry["network"]), strict=False)
            lat = entry.get("lat")
            lon = entry.get("lon")
            table.append(
                (
                    network,
                    GeoLocation(
                        city=entry.get("city"),
                        region=entry.get("region"),
                        country=entry.get("country"),
                        lat=float(lat) if lat is not None else None,
                        lon=float(lon) if lon is not None else None,
                    ),
                )
            )
        return cls(table=table)

    def lookup(self, ip: str) -> GeoLocation:
        with self._lock:
            cached = self._cache.get(ip)
        if cached is not None:
            return cached

        location = self._do_lookup(ip)
        with self._lock:
            self._cache[ip] = location
        return location

    def _do_lookup(self, ip: str) -> GeoLocation:
        if not ip:
            return UNKNOWN_LOCATION
        if is_private_address(ip):
            return LOCAL_LOCATION
        try:
            addr = ipaddress.ip_address(ip.strip())
        except ValueError:
            logger.debug("Unparseable address %r, location unknown", ip)
            return UNKNOWN_LOCATION
        for network, location in self.table:
            if addr.version == network.version and addr in network:
                return location
        return UNKNOWN_LOCATION
