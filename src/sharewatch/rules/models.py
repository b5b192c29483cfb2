"""Rule data models — detector kinds, typed parameters and violation results."""

from __future__ import annotations

import enum
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from sharewatch.session.models import Session


class RuleType(enum.Enum):
    """The five detector kinds."""

    IMPOSSIBLE_TRAVEL = "impossible_travel"
    SIMULTANEOUS_LOCATIONS = "simultaneous_locations"
    DEVICE_VELOCITY = "device_velocity"
    CONCURRENT_STREAMS = "concurrent_streams"
    GEO_RESTRICTION = "geo_restriction"


class Severity(enum.Enum):
    LOW = "low"
    WARNING = "warning"
    HIGH = "high"


DEFAULT_SEVERITY = {
    RuleType.IMPOSSIBLE_TRAVEL: Severity.HIGH,
    RuleType.SIMULTANEOUS_LOCATIONS: Severity.WARNING,
    RuleType.DEVICE_VELOCITY: Severity.WARNING,
    RuleType.CONCURRENT_STREAMS: Severity.LOW,
    RuleType.GEO_RESTRICTION: Severity.HIGH,
}

# Kinds whose evidence involves other sessions of the account.
MULTI_SESSION_TYPES = frozenset(
    {RuleType.CONCURRENT_STREAMS, RuleType.SIMULTANEOUS_LOCATIONS}
)


class RuleParamsError(ValueError):
    """A rule's parameter bag is missing a value or has one of the wrong type."""


class GeoMode(enum.Enum):
    BLOCKLIST = "blocklist"
    ALLOWLIST = "allowlist"


def _number(params: Mapping[str, Any], key: str, minimum: float, strict: bool) -> float:
    if key not in params:
        raise RuleParamsError(f"missing '{key}'")
    value = params[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RuleParamsError(f"'{key}' must be a number, got {value!r}")
    if value < minimum or (strict and value == minimum):
        op = ">" if strict else ">="
        raise RuleParamsError(f"'{key}' must be {op} {minimum}, got {value!r}")
    return value


def _flag(params: Mapping[str, Any], key: str) -> bool:
    value = params.get(key, False)
    if not isinstance(value, bool):
        raise RuleParamsError(f"'{key}' must be true or false, got {value!r}")
    return value


@dataclass(frozen=True)
class ImpossibleTravelParams:
    max_speed_kmh: float
    exclude_private_ips: bool = False

    @classmethod
    def parse(cls, params: Mapping[str, Any]) -> ImpossibleTravelParams:
        return cls(
            max_speed_kmh=_number(params, "maxSpeedKmh", 0, strict=True),
            exclude_private_ips=_flag(params, "excludePrivateIps"),
        )


@dataclass(frozen=True)
class SimultaneousLocationsParams:
    min_distance_km: float
    exclude_private_ips: bool = False

    @classmethod
    def parse(cls, params: Mapping[str, Any]) -> SimultaneousLocationsParams:
        return cls(
            min_distance_km=_number(params, "minDistanceKm", 0, strict=False),
            exclude_private_ips=_flag(params, "excludePrivateIps"),
        )


@dataclass(frozen=True)
class DeviceVelocityParams:
    max_ips: int
    window_hours: float
    group_by_device: bool = False
    exclude_private_ips: bool = False

    @classmethod
    def parse(cls, params: Mapping[str, Any]) -> DeviceVelocityParams:
        return cls(
            max_ips=int(_number(params, "maxIps", 0, strict=False)),
            window_hours=_number(params, "windowHours", 0, strict=True),
            group_by_device=_flag(params, "groupByDevice"),
            exclude_private_ips=_flag(params, "excludePrivateIps"),
        )


@dataclass(frozen=True)
class ConcurrentStreamsParams:
    max_streams: int
    exclude_private_ips: bool = False

    @classmethod
    def parse(cls, params: Mapping[str, Any]) -> ConcurrentStreamsParams:
        return cls(
            max_streams=int(_number(params, "maxStreams", 1, strict=False)),
            exclude_private_ips=_flag(params, "excludePrivateIps"),
        )


@dataclass(frozen=True)
class GeoRestrictionParams:
    countries: tuple[str, ...] = ()
    mode: GeoMode = GeoMode.BLOCKLIST

    @classmethod
    def parse(cls, params: Mapping[str, Any]) -> GeoRestrictionParams:
        if "countries" in params:
            raw = params["countries"]
        else:
            raw = params.get("blockedCountries", [])
        if raw is None:
            raw = []
        if not isinstance(raw, (list, tuple)) or not all(isinstance(c, str) for c in raw):
            raise RuleParamsError(f"'countries' must be a list of country codes, got {raw!r}")
        try:
            mode = GeoMode(params.get("mode", "blocklist"))
        except ValueError as exc:
            raise RuleParamsError(f"unknown geo mode {params.get('mode')!r}") from exc
        return cls(countries=tuple(raw), mode=mode)


PARAM_TYPES = {
    RuleType.IMPOSSIBLE_TRAVEL: ImpossibleTravelParams,
    RuleType.SIMULTANEOUS_LOCATIONS: SimultaneousLocationsParams,
    RuleType.DEVICE_VELOCITY: DeviceVelocityParams,
    RuleType.CONCURRENT_STREAMS: ConcurrentStreamsParams,
    RuleType.GEO_RESTRICTION: GeoRestrictionParams,
}


@dataclass(frozen=True)
class Rule:
    """A configured detector: kind, parameter bag and optional account scope."""

    id: str
    name: str
    type: RuleType
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    account: str | None = None
    active: bool = True

    @property
    def severity(self) -> Severity:
        return DEFAULT_SEVERITY[self.type]

    def applies_to(self, account_id: str) -> bool:
        return self.active and (self.account is None or self.account == account_id)

    def typed_params(self) -> Any:
        """Parse the parameter bag for this kind. Raises RuleParamsError."""
        return PARAM_TYPES[self.type].parse(self.params)


@dataclass
class ViolationResult:
    """A rule that fired against a session, with detector-specific evidence."""

    rule: Rule
    session: Session
    severity: Severity
    evidence: dict[str, Any] = field(default_factory=dict)

    @property
    def related_session_ids(self) -> list[str]:
        return list(self.evidence.get("relatedSessionIds", []))


@dataclass
class Violation:
    """A recorded violation, as stored and published."""

    rule_id: str
    rule_name: str
    rule_type: RuleType
    account_id: str
    session_id: str
    severity: Severity
    evidence: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    acknowledged_at: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @classmethod
    def from_result(cls, result: ViolationResult, now: float) -> Violation:
        return cls(
            rule_id=result.rule.id,
            rule_name=result.rule.name,
            rule_type=result.rule.type,
            account_id=result.session.account_id,
            session_id=result.session.id,
            severity=result.severity,
            evidence=dict(result.evidence),
            created_at=now,
        )

    @property
    def related_session_ids(self) -> list[str]:
        return list(self.evidence.get("relatedSessionIds", []))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "rule_type": self.rule_type.value,
            "account_id": self.account_id,
            "session_id": self.session_id,
            "severity": self.severity.value,
            "evidence": self.evidence,
            "created_at": self.created_at,
            "acknowledged_at": self.acknowledged_at,
        }
