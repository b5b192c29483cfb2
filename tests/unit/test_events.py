"""Tests for the event bus and the alert subscriber."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

from sharewatch.events import (
    SERVER_DOWN,
    SERVER_UP,
    SESSION_STARTED,
    VIOLATION_CREATED,
    AlertSubscriber,
    EventBus,
)


def test_publish_to_all_subscribers():
    bus = EventBus()
    first, second = MagicMock(), MagicMock()
    bus.subscribe(first)
    bus.subscribe(second)
    bus.publish(SESSION_STARTED, {"id": "s"})
    first.assert_called_once_with(SESSION_STARTED, {"id": "s"})
    second.assert_called_once_with(SESSION_STARTED, {"id": "s"})


def test_type_filter():
    bus = EventBus()
    handler = MagicMock()
    bus.subscribe(handler, [VIOLATION_CREATED])
    bus.publish(SESSION_STARTED, {})
    handler.assert_not_called()
    bus.publish(VIOLATION_CREATED, {})
    handler.assert_called_once()


def test_unsubscribe():
    bus = EventBus()
    handler = MagicMock()
    unsubscribe = bus.subscribe(handler)
    unsubscribe()
    unsubscribe()
    bus.publish(SESSION_STARTED, {})
    handler.assert_not_called()


def test_failing_subscriber_is_isolated(caplog):
    bus = EventBus()
    after = MagicMock()
    bus.subscribe(MagicMock(side_effect=RuntimeError("boom")))
    bus.subscribe(after)
    bus.publish(SESSION_STARTED, {})
    after.assert_called_once()
    assert "Event subscriber failed" in caplog.text


class TestAlertSubscriber:
    def test_logs_violation(self, caplog):
        alerts = AlertSubscriber()
        with caplog.at_level(logging.WARNING, logger="sharewatch.events"):
            alerts(
                VIOLATION_CREATED,
                {"severity": "high", "rule_name": "Travel", "account_id": "s1:alice",
                 "session_id": "abc", "rule_type": "impossible_travel"},
            )
        assert "VIOLATION [high] Travel" in caplog.text
        assert "s1:alice" in caplog.text

    def test_logs_server_health(self, caplog):
        alerts = AlertSubscriber()
        with caplog.at_level(logging.INFO, logger="sharewatch.events"):
            alerts(SERVER_DOWN, {"server_id": "plex1", "failures": 3})
            alerts(SERVER_UP, {"server_id": "plex1"})
        assert "plex1 is down after 3 failed polls" in caplog.text
        assert "plex1 is back up" in caplog.text

    def test_attach_forwards_to_callback(self):
        bus = EventBus()
        callback = MagicMock()
        AlertSubscriber(callback).attach(bus)
        bus.publish(SESSION_STARTED, {})
        bus.publish(SERVER_DOWN, {"server_id": "plex1"})
        callback.assert_called_once_with(SERVER_DOWN, {"server_id": "plex1"})
