"""Tick processor — one server's poll result through normalize, reconcile, persist and rules."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sharewatch.events import (
    SESSION_STARTED,
    SESSION_STOPPED,
    SESSION_UPDATED,
    EventBus,
)
from sharewatch.geo import GeoResolver
from sharewatch.rules.engine import RuleEngine
from sharewatch.rules.models import Rule, RuleParamsError, RuleType, Violation
from sharewatch.session.engine import ReconcileResult, SessionEngine
from sharewatch.session.models import Session
from sharewatch.session.normalizer import normalize_all
from sharewatch.storage.repos import SessionRepo
from sharewatch.vendors.base import ServerConfig
from sharewatch.violations import ViolationRecorder

logger = logging.getLogger(__name__)

_MIN_HISTORY_SECONDS = 24 * 3600


class TickProcessor:
    """Shared by every server poller; holds no per-server state."""

    def __init__(
        self,
        engine: SessionEngine,
        sessions: SessionRepo,
        recorder: ViolationRecorder,
        rules: Sequence[Rule] = (),
        rule_engine: RuleEngine | None = None,
        geo: GeoResolver | None = None,
        bus: EventBus | None = None,
        resume_window: float = 86400.0,
    ) -> None:
        self._engine = engine
        self._sessions = sessions
        self._recorder = recorder
        self._rule_engine = rule_engine or RuleEngine()
        self._geo = geo
        self._bus = bus
        self._resume_window = resume_window
        self.rules = list(rules)

    @property
    def engine(self) -> SessionEngine:
        return self._engine

    def history_window(self) -> float:
        """How far back to load stored sessions for resume links and rule pools."""
        window = max(self._resume_window, _MIN_HISTORY_SECONDS)
        for rule in self.rules:
            if rule.type != RuleType.DEVICE_VELOCITY or not rule.active:
                continue
            try:
                window = max(window, rule.typed_params().window_hours * 3600)
            except RuleParamsError:
                continue
        return window

    async def process(
        self, server: ServerConfig, snapshots: list[dict[str, Any]], now: float
    ) -> tuple[ReconcileResult, list[Violation]]:
        sessions = normalize_all(snapshots, server, now, self._geo)

        accounts = {s.account_id for s in sessions}
        accounts.update(s.account_id for s in self._engine.cache.get_by_server(server.id))
        history = await self._sessions.recent_for_accounts(
            accounts, now - self.history_window()
        )

        result = self._engine.reconcile(server.id, sessions, now, history)
        for key, error in result.errors:
            logger.warning("Session %s on %s not reconciled: %s", key, server.id, error)

        await self._persist(server, result)
        self._publish(result)

        violations = await self._evaluate(result, history, now)
        return result, violations

    async def finish_stopped(self, stopped: list[Session]) -> None:
        """Persist and announce sessions closed outside a poll (stale sweep, force stop)."""
        if not stopped:
            return
        await self._sessions.upsert_many(stopped)
        for session in stopped:
            self._emit(SESSION_STOPPED, session)

    async def _persist(self, server: ServerConfig, result: ReconcileResult) -> None:
        # Active sessions are written every tick so last_seen_at survives a restart.
        rows = {s.id: s for s in result.stopped}
        for session in self._engine.cache.get_by_server(server.id):
            rows[session.id] = session
        if rows:
            await self._sessions.upsert_many(rows.values())

    def _publish(self, result: ReconcileResult) -> None:
        for session in result.stopped:
            self._emit(SESSION_STOPPED, session)
        for session in result.created:
            self._emit(SESSION_STARTED, session)
        for session in result.updated:
            self._emit(SESSION_UPDATED, session)

    def _emit(self, event_type: str, session: Session) -> None:
        if self._bus is not None:
            self._bus.publish(event_type, session.to_dict())

    async def _evaluate(
        self, result: ReconcileResult, history: list[Session], now: float
    ) -> list[Violation]:
        if not self.rules:
            return []
        recorded: list[Violation] = []
        # Only new sessions: a running session was checked when it started.
        for session in result.created:
            if not session.is_active:
                continue
            pool = self._pool(session.account_id, history, result.stopped)
            results = self._rule_engine.evaluate(session, self.rules, pool)
            if results:
                recorded.extend(await self._recorder.record_all(results, now))
        return recorded

    def _pool(
        self, account_id: str, history: list[Session], stopped: list[Session]
    ) -> list[Session]:
        """Recent stored sessions overlaid with this tick's closes and the live cache."""
        pool = {s.id: s for s in history if s.account_id == account_id}
        for session in stopped:
            if session.account_id == account_id:
                pool[session.id] = session
        for session in self._engine.cache.get_by_account(account_id):
            pool[session.id] = session
        return list(pool.values())
