"""Event bus — session and violation events for whoever is listening.

Publishing is synchronous: every matching subscriber is called in
registration order. A subscriber that raises is logged and skipped; it
never breaks the publisher or the other subscribers.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

SESSION_STARTED = "session.started"
SESSION_UPDATED = "session.updated"
SESSION_STOPPED = "session.stopped"
VIOLATION_CREATED = "violation.created"
SERVER_DOWN = "server.down"
SERVER_UP = "server.up"

EVENT_TYPES = frozenset(
    {
        SESSION_STARTED,
        SESSION_UPDATED,
        SESSION_STOPPED,
        VIOLATION_CREATED,
        SERVER_DOWN,
        SERVER_UP,
    }
)

Handler = Callable[[str, dict[str, Any]], None]


@dataclass(eq=False)
class _Subscription:
    handler: Handler
    types: frozenset[str] | None = None

    def wants(self, event_type: str) -> bool:
        return self.types is None or event_type in self.types


@dataclass
class EventBus:
    """In-process publish/subscribe fan-out."""

    _subscriptions: list[_Subscription] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def subscribe(
        self, handler: Handler, types: Iterable[str] | None = None
    ) -> Callable[[], None]:
        """Register ``handler`` for ``types`` (all events if None). Returns an unsubscribe callable."""
        sub = _Subscription(handler, frozenset(types) if types is not None else None)
        with self._lock:
            self._subscriptions.append(sub)

        def unsubscribe() -> None:
            with self._lock:
                if sub in self._subscriptions:
                    self._subscriptions.remove(sub)

        return unsubscribe

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        with self._lock:
            subs = [s for s in self._subscriptions if s.wants(event_type)]
        for sub in subs:
            try:
                sub.handler(event_type, payload)
            except Exception:
                logger.exception("Event subscriber failed on %s", event_type)


class AlertSubscriber:
    """Logs violations and server health changes, optionally forwarding to a callback."""

    TYPES = (VIOLATION_CREATED, SERVER_DOWN, SERVER_UP)

    def __init__(self, callback: Handler | None = None) -> None:
        self._callback = callback

    def __call__(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type == VIOLATION_CREATED:
            logger.warning(
                "VIOLATION [%s] %s: account %s, session %s (%s)",
                payload.get("severity"),
                payload.get("rule_name"),
                payload.get("account_id"),
                payload.get("session_id"),
                payload.get("rule_type"),
            )
        elif event_type == SERVER_DOWN:
            logger.warning(
                "Server %s is down after %s failed polls",
                payload.get("server_id"),
                payload.get("failures"),
            )
        elif event_type == SERVER_UP:
            logger.info("Server %s is back up", payload.get("server_id"))
        if self._callback:
            self._callback(event_type, payload)

    def attach(self, bus: EventBus) -> Callable[[], None]:
        return bus.subscribe(self, self.TYPES)
