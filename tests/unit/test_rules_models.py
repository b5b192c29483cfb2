"""Tests for rule models and typed parameter parsing."""

from __future__ import annotations

import pytest

from sharewatch.rules.models import (
    ConcurrentStreamsParams,
    DeviceVelocityParams,
    GeoMode,
    GeoRestrictionParams,
    ImpossibleTravelParams,
    Rule,
    RuleParamsError,
    RuleType,
    Severity,
    SimultaneousLocationsParams,
    Violation,
    ViolationResult,
)


class TestParams:
    def test_impossible_travel(self):
        p = ImpossibleTravelParams.parse({"maxSpeedKmh": 800, "excludePrivateIps": True})
        assert p.max_speed_kmh == 800
        assert p.exclude_private_ips

    @pytest.mark.parametrize(
        "params",
        [{}, {"maxSpeedKmh": 0}, {"maxSpeedKmh": -5}, {"maxSpeedKmh": "fast"}, {"maxSpeedKmh": True}],
    )
    def test_impossible_travel_invalid(self, params):
        with pytest.raises(RuleParamsError):
            ImpossibleTravelParams.parse(params)

    def test_simultaneous_allows_zero_distance(self):
        assert SimultaneousLocationsParams.parse({"minDistanceKm": 0}).min_distance_km == 0

    def test_device_velocity(self):
        p = DeviceVelocityParams.parse({"maxIps": 3, "windowHours": 12, "groupByDevice": True})
        assert (p.max_ips, p.window_hours, p.group_by_device) == (3, 12, True)
        assert not p.exclude_private_ips

    def test_device_velocity_needs_window(self):
        with pytest.raises(RuleParamsError, match="windowHours"):
            DeviceVelocityParams.parse({"maxIps": 3, "windowHours": 0})

    def test_concurrent_streams_minimum(self):
        assert ConcurrentStreamsParams.parse({"maxStreams": 1}).max_streams == 1
        with pytest.raises(RuleParamsError):
            ConcurrentStreamsParams.parse({"maxStreams": 0})

    def test_flag_must_be_bool(self):
        with pytest.raises(RuleParamsError, match="excludePrivateIps"):
            ConcurrentStreamsParams.parse({"maxStreams": 2, "excludePrivateIps": "yes"})

    def test_geo_legacy_blocked_countries(self):
        p = GeoRestrictionParams.parse({"blockedCountries": ["CN"]})
        assert p.countries == ("CN",)
        assert p.mode == GeoMode.BLOCKLIST

    def test_geo_allowlist(self):
        p = GeoRestrictionParams.parse({"countries": ["US"], "mode": "allowlist"})
        assert p.mode == GeoMode.ALLOWLIST

    def test_geo_empty(self):
        assert GeoRestrictionParams.parse({}).countries == ()

    @pytest.mark.parametrize(
        "params", [{"countries": "CN"}, {"countries": [1]}, {"countries": [], "mode": "deny"}]
    )
    def test_geo_invalid(self, params):
        with pytest.raises(RuleParamsError):
            GeoRestrictionParams.parse(params)


class TestRule:
    def test_default_severity(self):
        expected = {
            RuleType.IMPOSSIBLE_TRAVEL: Severity.HIGH,
            RuleType.SIMULTANEOUS_LOCATIONS: Severity.WARNING,
            RuleType.DEVICE_VELOCITY: Severity.WARNING,
            RuleType.CONCURRENT_STREAMS: Severity.LOW,
            RuleType.GEO_RESTRICTION: Severity.HIGH,
        }
        for rule_type, severity in expected.items():
            assert Rule(id="r", name="r", type=rule_type).severity == severity

    def test_scope(self):
        global_rule = Rule(id="g", name="g", type=RuleType.CONCURRENT_STREAMS)
        scoped = Rule(id="s", name="s", type=RuleType.CONCURRENT_STREAMS, account="s1:bob")
        inactive = Rule(id="i", name="i", type=RuleType.CONCURRENT_STREAMS, active=False)
        assert global_rule.applies_to("s1:alice")
        assert scoped.applies_to("s1:bob")
        assert not scoped.applies_to("s1:alice")
        assert not inactive.applies_to("s1:alice")

    def test_typed_params(self):
        rule = Rule(id="r", name="r", type=RuleType.CONCURRENT_STREAMS, params={"maxStreams": 2})
        assert rule.typed_params() == ConcurrentStreamsParams(max_streams=2)


def test_violation_from_result(make_session):
    rule = Rule(id="streams", name="Streams", type=RuleType.CONCURRENT_STREAMS)
    session = make_session()
    result = ViolationResult(
        rule=rule,
        session=session,
        severity=Severity.LOW,
        evidence={"activeStreamCount": 3, "relatedSessionIds": ["a", "b"]},
    )
    v = Violation.from_result(result, 123.0)
    assert v.account_id == "s1:alice"
    assert v.session_id == session.id
    assert v.created_at == 123.0
    assert v.related_session_ids == ["a", "b"]
    assert result.related_session_ids == ["a", "b"]

    data = v.to_dict()
    assert data["rule_type"] == "concurrent_streams"
    assert data["severity"] == "low"
    assert data["acknowledged_at"] is None
