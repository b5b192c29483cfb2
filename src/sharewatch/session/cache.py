"""Active session cache — the in-process record of which sessions are live.

Entries are stored serialized so every read hands out an independent copy
and a corrupt entry can be detected and skipped instead of crashing a
poller. All access goes through one lock; pollers for different servers
share the same cache.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable

from sharewatch.session.models import Session

logger = logging.getLogger(__name__)


def _key(server_id: str, session_key: str) -> tuple[str, str]:
    return (server_id, session_key)


class ActiveSessionCache:
    """Thread-safe map of ``(server, sessionKey)`` to active sessions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], str] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _decode(self, key: tuple[str, str], raw: str) -> Session | None:
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring corrupt cache entry %s: %s", key, exc)
            return None

    def get_all(self) -> list[Session]:
        with self._lock:
            items = list(self._entries.items())
        sessions = []
        for key, raw in items:
            session = self._decode(key, raw)
            if session is not None:
                sessions.append(session)
        return sessions

    def get_by_account(self, account_id: str) -> list[Session]:
        return [s for s in self.get_all() if s.account_id == account_id]

    def get_by_server(self, server_id: str) -> list[Session]:
        return [s for s in self.get_all() if s.server_id == server_id]

    def get_in_window(self, account_id: str, since: float) -> list[Session]:
        """Active sessions for an account started at or after ``since``."""
        return [s for s in self.get_by_account(account_id) if s.started_at >= since]

    def get(self, server_id: str, session_key: str) -> Session | None:
        key = _key(server_id, session_key)
        with self._lock:
            raw = self._entries.get(key)
        if raw is None:
            return None
        return self._decode(key, raw)

    def upsert(self, session: Session) -> None:
        """Store an active session; a stopped one is removed instead."""
        key = _key(session.server_id, session.session_key)
        if not session.is_active:
            self.remove(session.server_id, session.session_key)
            return
        raw = json.dumps(session.to_dict())
        with self._lock:
            self._entries[key] = raw

    def remove(self, server_id: str, session_key: str) -> None:
        with self._lock:
            self._entries.pop(_key(server_id, session_key), None)

    def resync(self, sessions: Iterable[Session]) -> int:
        """Replace the whole cache with ``sessions`` (startup from storage)."""
        fresh = {
            _key(s.server_id, s.session_key): json.dumps(s.to_dict())
            for s in sessions
            if s.is_active
        }
        with self._lock:
            self._entries = fresh
        logger.info("Session cache resynced with %d active sessions", len(fresh))
        return len(fresh)
