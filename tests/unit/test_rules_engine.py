"""Tests for the sharing detectors and the rule engine."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from sharewatch.geo import LOCAL_NETWORK, travel_speed_kmh
from sharewatch.rules.engine import RuleEngine
from sharewatch.rules.models import Rule, RuleType, Severity
from sharewatch.session.models import SessionState

NOW = 1_700_000_000.0
HOUR = 3600.0
NYC = {"lat": 40.7128, "lon": -74.006}
LONDON = {"lat": 51.5074, "lon": -0.1278}


def _rule(rule_type: RuleType, rule_id: str = "r1", **params) -> Rule:
    return Rule(id=rule_id, name=rule_id, type=rule_type, params=params)


@pytest.fixture
def engine() -> RuleEngine:
    return RuleEngine()


class TestImpossibleTravel:
    def test_two_hours_violates(self, engine, make_session):
        previous = make_session("p", started_at=NOW - 2 * HOUR, **NYC)
        current = make_session("c", ip_address="198.51.100.7", **LONDON)
        rule = _rule(RuleType.IMPOSSIBLE_TRAVEL, maxSpeedKmh=500)

        results = engine.evaluate(current, [rule], [previous])
        assert len(results) == 1
        evidence = results[0].evidence
        assert results[0].severity == Severity.HIGH
        assert evidence["calculatedSpeed"] > 500
        assert evidence["previousSessionId"] == previous.id
        assert evidence["timeDiffHours"] == pytest.approx(2.0)
        assert evidence["distance"] == pytest.approx(5570, rel=0.01)

    def test_long_gap_does_not_violate(self, engine, make_session):
        previous = make_session("p", started_at=NOW - 12 * HOUR, **NYC)
        current = make_session("c", **LONDON)
        rule = _rule(RuleType.IMPOSSIBLE_TRAVEL, maxSpeedKmh=500)
        assert engine.evaluate(current, [rule], [previous]) == []

    def test_same_start_reports_no_speed(self, engine, make_session):
        previous = make_session("p", **NYC)
        current = make_session("c", **LONDON)
        rule = _rule(RuleType.IMPOSSIBLE_TRAVEL, maxSpeedKmh=500)
        evidence = engine.evaluate(current, [rule], [previous])[0].evidence
        assert evidence["calculatedSpeed"] is None

    def test_threshold_comes_from_geo_helpers(self, engine, make_session):
        previous = make_session("p", started_at=NOW - 2 * HOUR, **NYC)
        current = make_session("c", **LONDON)
        rule = _rule(RuleType.IMPOSSIBLE_TRAVEL, maxSpeedKmh=500)

        evidence = engine.evaluate(current, [rule], [previous])[0].evidence
        assert evidence["calculatedSpeed"] == pytest.approx(
            travel_speed_kmh(evidence["distance"], 2 * HOUR * 1000)
        )
        with patch("sharewatch.rules.engine.is_impossible_travel", return_value=False) as check:
            assert engine.evaluate(current, [rule], [previous]) == []
        check.assert_called_once()

    def test_missing_coordinates(self, engine, make_session):
        previous = make_session("p", started_at=NOW - HOUR, lat=None, lon=None)
        current = make_session("c", **LONDON)
        rule = _rule(RuleType.IMPOSSIBLE_TRAVEL, maxSpeedKmh=500)
        assert engine.evaluate(current, [rule], [previous]) == []
        assert engine.evaluate(make_session("x"), [rule], [current]) == []

    def test_other_accounts_are_ignored(self, engine, make_session):
        previous = make_session("p", user="bob", started_at=NOW - HOUR, **NYC)
        current = make_session("c", **LONDON)
        rule = _rule(RuleType.IMPOSSIBLE_TRAVEL, maxSpeedKmh=500)
        assert engine.evaluate(current, [rule], [previous]) == []

    def test_exclude_private(self, engine, make_session):
        previous = make_session("p", started_at=NOW - HOUR, ip_address="10.0.0.2", **NYC)
        current = make_session("c", **LONDON)
        rule = _rule(RuleType.IMPOSSIBLE_TRAVEL, maxSpeedKmh=500, excludePrivateIps=True)
        assert engine.evaluate(current, [rule], [previous]) == []


class TestSimultaneousLocations:
    def test_far_apart_playing_sessions(self, engine, make_session):
        other = make_session("o", **NYC)
        current = make_session("c", **LONDON)
        rule = _rule(RuleType.SIMULTANEOUS_LOCATIONS, minDistanceKm=100)

        results = engine.evaluate(current, [rule], [other, current])
        assert len(results) == 1
        assert results[0].severity == Severity.WARNING
        assert results[0].related_session_ids == [other.id]
        assert results[0].evidence["minRequiredDistance"] == 100

    def test_reports_farthest(self, engine, make_session):
        near = make_session("n", lat=51.0, lon=0.0)
        far = make_session("f", **NYC)
        current = make_session("c", **LONDON)
        rule = _rule(RuleType.SIMULTANEOUS_LOCATIONS, minDistanceKm=10)

        evidence = engine.evaluate(current, [rule], [near, far])[0].evidence
        assert evidence["distance"] == pytest.approx(5570, rel=0.01)
        assert set(evidence["relatedSessionIds"]) == {near.id, far.id}

    def test_paused_and_close_sessions_ignored(self, engine, make_session):
        paused = make_session("p", state=SessionState.PAUSED, **NYC)
        close = make_session("n", lat=51.51, lon=-0.13)
        current = make_session("c", **LONDON)
        rule = _rule(RuleType.SIMULTANEOUS_LOCATIONS, minDistanceKm=100)
        assert engine.evaluate(current, [rule], [paused, close]) == []


class TestDeviceVelocity:
    def _prior(self, make_session, count: int, offset: int = 0):
        return [
            make_session(
                f"p{i}",
                state=SessionState.STOPPED,
                started_at=NOW - (i + 1) * HOUR,
                ip_address=f"198.51.100.{i + offset + 1}",
            )
            for i in range(count)
        ]

    def test_at_limit_does_not_violate(self, engine, make_session):
        current = make_session("c", ip_address="203.0.113.99")
        rule = _rule(RuleType.DEVICE_VELOCITY, maxIps=5, windowHours=24)
        assert engine.evaluate(current, [rule], self._prior(make_session, 4)) == []

    def test_sixth_ip_violates(self, engine, make_session):
        current = make_session("c", ip_address="203.0.113.99")
        rule = _rule(RuleType.DEVICE_VELOCITY, maxIps=5, windowHours=24)
        results = engine.evaluate(current, [rule], self._prior(make_session, 5))
        assert len(results) == 1
        assert results[0].evidence["uniqueIpCount"] == 6
        assert "203.0.113.99" in results[0].evidence["ips"]

    def test_outside_window_is_ignored(self, engine, make_session):
        old = make_session("old", started_at=NOW - 25 * HOUR, ip_address="192.0.2.1")
        current = make_session("c")
        rule = _rule(RuleType.DEVICE_VELOCITY, maxIps=1, windowHours=24)
        assert engine.evaluate(current, [rule], [old]) == []

    def test_group_by_device(self, engine, make_session):
        prior = [
            make_session(f"p{i}", started_at=NOW - HOUR, device_id="tv", ip_address=f"192.0.2.{i}")
            for i in range(1, 4)
        ]
        current = make_session("c", device_id="tv")
        rule = _rule(RuleType.DEVICE_VELOCITY, maxIps=1, windowHours=24, groupByDevice=True)
        assert engine.evaluate(current, [rule], prior) == []

    def test_exclude_private(self, engine, make_session):
        prior = [make_session("p", started_at=NOW - HOUR, ip_address="192.168.0.5")]
        current = make_session("c")
        rule = _rule(RuleType.DEVICE_VELOCITY, maxIps=1, windowHours=24, excludePrivateIps=True)
        assert engine.evaluate(current, [rule], prior) == []


class TestConcurrentStreams:
    def _pool(self, make_session):
        return [make_session("a"), make_session("b")]

    def test_at_limit(self, engine, make_session):
        rule = _rule(RuleType.CONCURRENT_STREAMS, maxStreams=3)
        assert engine.evaluate(make_session("c"), [rule], self._pool(make_session)) == []

    def test_over_limit(self, engine, make_session):
        pool = self._pool(make_session)
        rule = _rule(RuleType.CONCURRENT_STREAMS, maxStreams=2)
        results = engine.evaluate(make_session("c"), [rule], pool)
        assert len(results) == 1
        assert results[0].severity == Severity.LOW
        assert results[0].evidence["activeStreamCount"] == 3
        assert results[0].related_session_ids == [s.id for s in pool]

    def test_current_counts_even_when_paused(self, engine, make_session):
        current = make_session("c", state=SessionState.PAUSED)
        rule = _rule(RuleType.CONCURRENT_STREAMS, maxStreams=1)
        assert len(engine.evaluate(current, [rule], [make_session("a")])) == 1

    def test_paused_peers_do_not_count(self, engine, make_session):
        pool = [make_session("a", state=SessionState.PAUSED)]
        rule = _rule(RuleType.CONCURRENT_STREAMS, maxStreams=1)
        assert engine.evaluate(make_session("c"), [rule], pool) == []

    def test_private_current_excluded(self, engine, make_session):
        current = make_session("c", ip_address="192.168.1.2")
        rule = _rule(RuleType.CONCURRENT_STREAMS, maxStreams=1, excludePrivateIps=True)
        assert engine.evaluate(current, [rule], self._pool(make_session)) == []


class TestGeoRestriction:
    def test_blocked_country(self, engine, make_session):
        rule = _rule(RuleType.GEO_RESTRICTION, countries=["CN", "RU"])
        results = engine.evaluate(make_session(country="CN"), [rule], [])
        assert len(results) == 1
        assert results[0].evidence["blockedCountries"] == ["CN", "RU"]
        assert results[0].evidence["mode"] == "blocklist"

    def test_match_is_case_sensitive(self, engine, make_session):
        rule = _rule(RuleType.GEO_RESTRICTION, countries=["CN", "RU"])
        assert engine.evaluate(make_session(country="cn"), [rule], []) == []

    def test_empty_list_never_violates(self, engine, make_session):
        for mode in ("blocklist", "allowlist"):
            rule = _rule(RuleType.GEO_RESTRICTION, countries=[], mode=mode)
            assert engine.evaluate(make_session(country="CN"), [rule], []) == []

    @pytest.mark.parametrize("country", [None, LOCAL_NETWORK])
    def test_unknown_or_local(self, engine, make_session, country):
        rule = _rule(RuleType.GEO_RESTRICTION, countries=["US"], mode="allowlist")
        assert engine.evaluate(make_session(country=country), [rule], []) == []

    def test_allowlist(self, engine, make_session):
        rule = _rule(RuleType.GEO_RESTRICTION, countries=["US"], mode="allowlist")
        assert engine.evaluate(make_session(country="US"), [rule], []) == []
        results = engine.evaluate(make_session(country="GB"), [rule], [])
        assert results[0].evidence["country"] == "GB"
        assert "blockedCountries" not in results[0].evidence


class TestEngine:
    def test_invalid_params_skip_only_that_rule(self, engine, make_session, caplog):
        bad = _rule(RuleType.CONCURRENT_STREAMS, "bad", maxStreams="many")
        good = _rule(RuleType.GEO_RESTRICTION, "good", countries=["CN"])
        results = engine.evaluate(make_session(country="CN"), [bad, good], [make_session("a")])
        assert [r.rule.id for r in results] == ["good"]
        assert "invalid params" in caplog.text

    def test_detector_failure_is_isolated(self, engine, make_session):
        failing = _rule(RuleType.CONCURRENT_STREAMS, "streams", maxStreams=1)
        geo = _rule(RuleType.GEO_RESTRICTION, "geo", countries=["CN"])
        with patch.dict(
            "sharewatch.rules.engine._DETECTORS",
            {RuleType.CONCURRENT_STREAMS: lambda *args: 1 / 0},
        ):
            results = engine.evaluate(make_session(country="CN"), [failing, geo], [])
        assert [r.rule.id for r in results] == ["geo"]

    def test_scope_and_inactive(self, engine, make_session):
        scoped = Rule(
            id="scoped", name="scoped", type=RuleType.GEO_RESTRICTION,
            params={"countries": ["CN"]}, account="s1:bob",
        )
        inactive = Rule(
            id="off", name="off", type=RuleType.GEO_RESTRICTION,
            params={"countries": ["CN"]}, active=False,
        )
        session = make_session(country="CN")
        assert engine.evaluate(session, [scoped, inactive], []) == []
        bob = make_session(user="bob", country="CN")
        assert [r.rule.id for r in engine.evaluate(bob, [scoped], [])] == ["scoped"]

    def test_session_itself_in_pool_is_not_a_peer(self, engine, make_session):
        current = make_session("c")
        rule = _rule(RuleType.CONCURRENT_STREAMS, maxStreams=1)
        assert engine.evaluate(current, [rule], [current]) == []
