"""Rule engine — evaluates sharing detectors against one session.

The engine holds no state: callers pass the session, the rule set and the
pool of recent/active sessions on every call, so one instance can be shared
by all pollers. Every applicable rule is evaluated independently; a rule
whose parameters are invalid, or whose detector fails, is skipped for that
call and the remaining rules still run.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable

from sharewatch.geo import (
    LOCAL_NETWORK,
    distance_km,
    is_impossible_travel,
    is_private_address,
    travel_speed_kmh,
)
from sharewatch.rules.models import (
    ConcurrentStreamsParams,
    DeviceVelocityParams,
    GeoMode,
    GeoRestrictionParams,
    ImpossibleTravelParams,
    Rule,
    RuleParamsError,
    RuleType,
    SimultaneousLocationsParams,
    ViolationResult,
)
from sharewatch.session.models import Session, SessionState

logger = logging.getLogger(__name__)

_MS_PER_HOUR = 3_600_000

Evidence = dict


def _location(session: Session) -> dict:
    return {"lat": session.lat, "lon": session.lon}


def _has_coordinates(session: Session) -> bool:
    return session.lat is not None and session.lon is not None


def _peers(
    session: Session, pool: Iterable[Session], exclude_private: bool
) -> list[Session]:
    """Other sessions of the same account, optionally without private addresses."""
    peers = []
    for other in pool:
        if other.id == session.id or other.account_id != session.account_id:
            continue
        if exclude_private and is_private_address(other.ip_address):
            continue
        peers.append(other)
    return peers


def check_impossible_travel(
    session: Session, pool: list[Session], params: ImpossibleTravelParams
) -> Evidence | None:
    if not _has_coordinates(session):
        return None
    if params.exclude_private_ips and is_private_address(session.ip_address):
        return None

    for previous in _peers(session, pool, params.exclude_private_ips):
        elapsed_ms = (session.started_at - previous.started_at) * 1000
        if not is_impossible_travel(previous, session, elapsed_ms, params.max_speed_kmh):
            continue
        distance = distance_km(previous, session)
        speed = travel_speed_kmh(distance, elapsed_ms)
        return {
            "previousLocation": _location(previous),
            "currentLocation": _location(session),
            "previousSessionId": previous.id,
            "distance": distance,
            "timeDiffHours": elapsed_ms / _MS_PER_HOUR,
            "calculatedSpeed": None if math.isinf(speed) else speed,
            "maxAllowedSpeed": params.max_speed_kmh,
        }
    return None


def check_simultaneous_locations(
    session: Session, pool: list[Session], params: SimultaneousLocationsParams
) -> Evidence | None:
    if not _has_coordinates(session):
        return None
    if params.exclude_private_ips and is_private_address(session.ip_address):
        return None

    offending: list[tuple[float, Session]] = []
    for other in _peers(session, pool, params.exclude_private_ips):
        if other.state != SessionState.PLAYING:
            continue
        distance = distance_km(other, session)
        if distance is not None and distance > params.min_distance_km:
            offending.append((distance, other))

    if not offending:
        return None
    distance, farthest = max(offending, key=lambda pair: pair[0])
    return {
        "locations": [_location(farthest), _location(session)],
        "distance": distance,
        "minRequiredDistance": params.min_distance_km,
        "relatedSessionIds": [other.id for _, other in offending],
    }


def check_device_velocity(
    session: Session, pool: list[Session], params: DeviceVelocityParams
) -> Evidence | None:
    window_start = session.started_at - params.window_hours * 3600
    in_window = [
        s
        for s in _peers(session, pool, params.exclude_private_ips)
        if window_start <= s.started_at <= session.started_at
    ]
    if not (params.exclude_private_ips and is_private_address(session.ip_address)):
        in_window.append(session)

    ips: list[str] = []
    sources: set[str] = set()
    for s in in_window:
        if s.ip_address and s.ip_address not in ips:
            ips.append(s.ip_address)
        if params.group_by_device and s.device_id:
            sources.add(f"device:{s.device_id}")
        elif s.ip_address:
            sources.add(f"ip:{s.ip_address}")

    if len(sources) <= params.max_ips:
        return None
    return {
        "uniqueIpCount": len(sources),
        "maxAllowedIps": params.max_ips,
        "windowHours": params.window_hours,
        "ips": ips,
        "groupedByDevice": params.group_by_device,
    }


def check_concurrent_streams(
    session: Session, pool: list[Session], params: ConcurrentStreamsParams
) -> Evidence | None:
    if params.exclude_private_ips and is_private_address(session.ip_address):
        return None
    playing = [
        s
        for s in _peers(session, pool, params.exclude_private_ips)
        if s.state == SessionState.PLAYING
    ]
    # The evaluated session always counts, whatever its own state.
    total = len(playing) + 1
    if total <= params.max_streams:
        return None
    return {
        "activeStreamCount": total,
        "maxAllowedStreams": params.max_streams,
        "relatedSessionIds": [s.id for s in playing],
    }


def check_geo_restriction(
    session: Session, pool: list[Session], params: GeoRestrictionParams
) -> Evidence | None:
    country = session.country
    if country is None or country == LOCAL_NETWORK or not params.countries:
        return None
    listed = country in params.countries
    if params.mode == GeoMode.BLOCKLIST and not listed:
        return None
    if params.mode == GeoMode.ALLOWLIST and listed:
        return None
    evidence: Evidence = {
        "country": country,
        "mode": params.mode.value,
        "countries": list(params.countries),
    }
    if params.mode == GeoMode.BLOCKLIST:
        evidence["blockedCountries"] = list(params.countries)
    return evidence


_DETECTORS: dict[RuleType, Callable[[Session, list[Session], object], Evidence | None]] = {
    RuleType.IMPOSSIBLE_TRAVEL: check_impossible_travel,
    RuleType.SIMULTANEOUS_LOCATIONS: check_simultaneous_locations,
    RuleType.DEVICE_VELOCITY: check_device_velocity,
    RuleType.CONCURRENT_STREAMS: check_concurrent_streams,
    RuleType.GEO_RESTRICTION: check_geo_restriction,
}


class RuleEngine:
    """Stateless evaluator for the sharing detectors."""

    def evaluate(
        self,
        session: Session,
        rules: Iterable[Rule],
        recent_sessions: Iterable[Session],
    ) -> list[ViolationResult]:
        """Return one result per applicable rule that fires for ``session``."""
        pool = list(recent_sessions)
        results: list[ViolationResult] = []

        for rule in rules:
            if not rule.applies_to(session.account_id):
                continue
            try:
                params = rule.typed_params()
                evidence = _DETECTORS[rule.type](session, pool, params)
            except RuleParamsError as exc:
                logger.warning("Skipping rule '%s': invalid params: %s", rule.name, exc)
                continue
            except Exception:
                logger.exception(
                    "Rule '%s' failed on session %s; skipping", rule.name, session.id
                )
                continue

            if evidence is not None:
                results.append(
                    ViolationResult(
                        rule=rule,
                        session=session,
                        severity=rule.severity,
                        evidence=evidence,
                    )
                )
        return results
