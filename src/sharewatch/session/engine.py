"""Session engine — reconciles one poll's snapshots against the active session cache.

For every reported session key the engine decides whether to create,
update or close a session, and links new sessions to an earlier play when
they look like a resume or a quality switch. Reconciliation is synchronous
and does no I/O; the poller hands in recent history it fetched beforehand
and persists what comes back in the ReconcileResult.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from sharewatch.session import tracker
from sharewatch.session.cache import ActiveSessionCache
from sharewatch.session.models import Session, SessionState

logger = logging.getLogger(__name__)

# Fields that change on every tick and do not make a session "updated".
_VOLATILE = frozenset({"last_seen_at"})


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""

    created: list[Session] = field(default_factory=list)
    updated: list[Session] = field(default_factory=list)
    stopped: list[Session] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def changed(self) -> list[Session]:
        return self.created + self.updated + self.stopped


def _material(session: Session) -> dict:
    return {k: v for k, v in session.to_dict().items() if k not in _VOLATILE}


class SessionEngine:
    """Create/update/close decisions for active sessions."""

    def __init__(
        self,
        cache: ActiveSessionCache,
        poll_interval: float = 15.0,
        missed_poll_threshold: int = 2,
        stale_timeout: float = 300.0,
        resume_window: float = tracker.RESUME_WINDOW_SECONDS,
        min_play_time_ms: int = tracker.MIN_PLAY_TIME_MS,
        completion_threshold: float = tracker.WATCH_COMPLETION_THRESHOLD,
    ) -> None:
        self._cache = cache
        self._absent_after = poll_interval * missed_poll_threshold
        self._stale_timeout = stale_timeout
        self._resume_window = resume_window
        self._min_play_time_ms = min_play_time_ms
        self._threshold = completion_threshold

    @property
    def cache(self) -> ActiveSessionCache:
        return self._cache

    def reconcile(
        self,
        server_id: str,
        snapshots: list[Session],
        now: float,
        history: Iterable[Session] = (),
    ) -> ReconcileResult:
        """Apply one poll of ``server_id`` to the cache.

        ``history`` holds recently stopped sessions from storage, used for
        resume detection. Snapshots are processed in order; a failure on one
        is logged and recorded without affecting the rest.
        """
        result = ReconcileResult()
        stopped_pool = [s for s in history if s.stopped_at is not None]
        reported = {s.session_key for s in snapshots}

        for snapshot in snapshots:
            try:
                self._reconcile_one(snapshot, now, reported, stopped_pool, result)
            except Exception as exc:
                logger.exception(
                    "Failed to reconcile session %s on %s", snapshot.session_key, server_id
                )
                result.errors.append((snapshot.session_key, str(exc)))

        for session in self._cache.get_by_server(server_id):
            if session.session_key in reported:
                continue
            if tracker.is_stale(session.last_seen_at, now, self._absent_after):
                result.stopped.append(self._close(session, session.last_seen_at))

        return result

    def sweep_stale(self, now: float) -> list[Session]:
        """Force-stop every cached session not seen within the stale timeout."""
        stopped = []
        for session in self._cache.get_all():
            if tracker.is_stale(session.last_seen_at, now, self._stale_timeout):
                logger.info(
                    "Force-stopping stale session %s (%s)", session.id, session.session_key
                )
                stopped.append(self._close(session, session.last_seen_at, forced=True))
        return stopped

    def force_stop(self, server_id: str, session_key: str, now: float) -> Session | None:
        session = self._cache.get(server_id, session_key)
        if session is None:
            return None
        return self._close(session, now, forced=True)

    def _reconcile_one(
        self,
        snapshot: Session,
        now: float,
        reported: set[str],
        stopped_pool: list[Session],
        result: ReconcileResult,
    ) -> None:
        existing = self._cache.get(snapshot.server_id, snapshot.session_key)

        if existing is not None and tracker.media_changed(
            existing.media_id, snapshot.media_id
        ):
            logger.debug(
                "Session key %s moved from media %s to %s",
                snapshot.session_key,
                existing.media_id,
                snapshot.media_id,
            )
            closed = self._close(existing, now)
            result.stopped.append(closed)
            stopped_pool.append(closed)
            existing = None

        if existing is not None:
            if snapshot.state == SessionState.STOPPED:
                self._merge(existing, snapshot, now)
                result.stopped.append(self._close(existing, now))
                return
            before = _material(existing)
            self._merge(existing, snapshot, now)
            self._cache.upsert(existing)
            if _material(existing) != before:
                result.updated.append(existing)
            return

        if snapshot.state == SessionState.STOPPED:
            # Stop reported for a session never seen active.
            return

        session = dataclasses.replace(snapshot)
        reference_id = self._quality_switch(session, now, reported, result, stopped_pool)
        if reference_id is None:
            reference_id = self._resume_link(session, now, stopped_pool)
        session.reference_id = reference_id or session.id

        if session.state == SessionState.PAUSED and session.last_paused_at is None:
            session.last_paused_at = now
        elif session.state != SessionState.PAUSED:
            session.last_paused_at = None
        session.watched = tracker.is_watched(
            session.progress_ms, session.total_duration_ms, self._threshold
        )
        session.started_at = now
        session.last_seen_at = now

        self._cache.upsert(session)
        result.created.append(session)

    def _quality_switch(
        self,
        session: Session,
        now: float,
        reported: set[str],
        result: ReconcileResult,
        stopped_pool: list[Session],
    ) -> str | None:
        """Close an active session for the same media whose key vanished this poll."""
        if session.media_id is None:
            return None
        for other in self._cache.get_by_account(session.account_id):
            if (
                other.server_id == session.server_id
                and other.media_id == session.media_id
                and other.session_key not in reported
            ):
                logger.info(
                    "Quality change on %s: %s replaces %s",
                    session.account_id,
                    session.session_key,
                    other.session_key,
                )
                closed = self._close(other, now)
                result.stopped.append(closed)
                stopped_pool.append(closed)
                return closed.play_id
        return None

    def _resume_link(
        self, session: Session, now: float, stopped_pool: list[Session]
    ) -> str | None:
        if session.media_id is None:
            return None
        candidates = [
            s
            for s in stopped_pool
            if s.account_id == session.account_id
            and s.media_id == session.media_id
            and not s.watched
        ]
        if not candidates:
            return None
        previous = max(candidates, key=lambda s: s.stopped_at or 0.0)
        reference = tracker.resume_reference(
            previous, session.progress_ms, now, self._resume_window
        )
        if reference is not None:
            logger.debug("Session %s resumes play %s", session.id, reference)
        return reference

    def _merge(self, existing: Session, snapshot: Session, now: float) -> None:
        last_paused_at, paused_ms = tracker.accumulate_pause(
            existing.state,
            snapshot.state,
            existing.last_paused_at,
            existing.paused_duration_ms,
            now,
        )
        existing.state = snapshot.state
        existing.last_paused_at = last_paused_at
        existing.paused_duration_ms = paused_ms
        existing.last_seen_at = now

        existing.username = snapshot.username or existing.username
        existing.title = snapshot.title or existing.title
        if snapshot.progress_ms is not None:
            existing.progress_ms = snapshot.progress_ms
        if snapshot.total_duration_ms is not None:
            existing.total_duration_ms = snapshot.total_duration_ms

        if snapshot.ip_address and snapshot.ip_address != existing.ip_address:
            existing.ip_address = snapshot.ip_address
            existing.city = snapshot.city
            existing.region = snapshot.region
            existing.country = snapshot.country
            existing.lat = snapshot.lat
            existing.lon = snapshot.lon

        existing.player_name = snapshot.player_name or existing.player_name
        existing.device_id = snapshot.device_id or existing.device_id
        existing.product = snapshot.product or existing.product
        existing.device = snapshot.device or existing.device
        existing.platform = snapshot.platform or existing.platform

        existing.video_decision = snapshot.video_decision
        existing.audio_decision = snapshot.audio_decision
        existing.is_transcode = snapshot.is_transcode
        existing.bitrate = snapshot.bitrate

        existing.watched = existing.watched or tracker.is_watched(
            existing.progress_ms, existing.total_duration_ms, self._threshold
        )

    def _close(self, session: Session, stopped_at: float, forced: bool = False) -> Session:
        stopped_at = max(stopped_at, session.started_at)
        last_paused_at = session.last_paused_at
        if session.state != SessionState.PAUSED:
            last_paused_at = None
        duration_ms, paused_ms = tracker.stop_duration(
            session.started_at,
            stopped_at,
            last_paused_at,
            session.paused_duration_ms,
            session.progress_ms,
        )
        session.state = SessionState.STOPPED
        session.stopped_at = stopped_at
        session.last_paused_at = None
        session.duration_ms = duration_ms
        session.paused_duration_ms = paused_ms
        session.short_session = tracker.is_short_session(duration_ms, self._min_play_time_ms)
        session.force_stopped = session.force_stopped or forced
        session.watched = session.watched or tracker.is_watched(
            session.progress_ms, session.total_duration_ms, self._threshold
        )
        self._cache.remove(session.server_id, session.session_key)
        return session
