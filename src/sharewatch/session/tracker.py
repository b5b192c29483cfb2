"""Pure session state helpers — pause accounting, stop duration, completion, grouping."""

from __future__ import annotations

import logging

from sharewatch.session.models import Session, SessionState

logger = logging.getLogger(__name__)

WATCH_COMPLETION_THRESHOLD = 0.85
MIN_PLAY_TIME_MS = 120_000
RESUME_WINDOW_SECONDS = 24 * 60 * 60

# Pause tracking can miss transitions; never report more play time than
# the position reached plus this much slack.
_PROGRESS_SLACK_MS = 60_000


def _ms(seconds: float) -> int:
    return int(round(seconds * 1000))


def accumulate_pause(
    previous: SessionState,
    current: SessionState,
    last_paused_at: float | None,
    paused_duration_ms: int,
    now: float,
) -> tuple[float | None, int]:
    """Return the new ``(last_paused_at, paused_duration_ms)`` after a state change."""
    if previous == SessionState.PLAYING and current == SessionState.PAUSED:
        return now, paused_duration_ms

    if previous == SessionState.PAUSED and current != SessionState.PAUSED:
        if last_paused_at is None:
            logger.warning("Paused session without pause timestamp; treating as playing")
            return None, paused_duration_ms
        return None, paused_duration_ms + max(0, _ms(now - last_paused_at))

    if current == SessionState.PAUSED:
        # Still paused; if the start of the pause was lost, count from now.
        return (last_paused_at if last_paused_at is not None else now), paused_duration_ms

    return None, paused_duration_ms


def stop_duration(
    started_at: float,
    stopped_at: float,
    last_paused_at: float | None,
    paused_duration_ms: int,
    progress_ms: int | None,
) -> tuple[int, int]:
    """Return ``(duration_ms, final_paused_duration_ms)`` for a session being closed.

    An open pause is folded into the paused total. When progress is known the
    duration is capped at ``progress + 60s`` and the excess counted as paused.
    """
    total_ms = _ms(stopped_at - started_at)
    paused_ms = paused_duration_ms
    if last_paused_at is not None:
        paused_ms += max(0, _ms(stopped_at - last_paused_at))

    duration_ms = max(0, total_ms - paused_ms)

    if progress_ms:
        cap = progress_ms + _PROGRESS_SLACK_MS
        if duration_ms > cap:
            logger.debug(
                "Duration capped: %ds -> %ds (progress %ds)",
                duration_ms // 1000,
                cap // 1000,
                progress_ms // 1000,
            )
            paused_ms += duration_ms - cap
            duration_ms = cap

    return duration_ms, paused_ms


def is_watched(
    progress_ms: int | None,
    total_duration_ms: int | None,
    threshold: float = WATCH_COMPLETION_THRESHOLD,
) -> bool:
    if not progress_ms or not total_duration_ms:
        return False
    return progress_ms / total_duration_ms >= threshold


def is_stale(last_seen_at: float, now: float, timeout_seconds: float) -> bool:
    """Strictly past the timeout; exactly at the threshold is not stale yet."""
    return now - last_seen_at > timeout_seconds


def is_short_session(duration_ms: int, min_play_time_ms: int = MIN_PLAY_TIME_MS) -> bool:
    if min_play_time_ms <= 0:
        return False
    return duration_ms < min_play_time_ms


def media_changed(previous_media_id: str | None, current_media_id: str | None) -> bool:
    """A reused session key now playing different media."""
    if previous_media_id is None or current_media_id is None:
        return False
    return previous_media_id != current_media_id


def resume_reference(
    previous: Session,
    progress_ms: int | None,
    now: float,
    window_seconds: float = RESUME_WINDOW_SECONDS,
) -> str | None:
    """Reference id to link a new session to ``previous``, or None.

    Links when the previous session stopped within the window, was not
    finished, and the new session resumes at or after its position.
    """
    if previous.stopped_at is None:
        return None
    if now - previous.stopped_at > window_seconds:
        return None
    if previous.watched:
        return None
    if (progress_ms or 0) < (previous.progress_ms or 0):
        return None
    return previous.reference_id or previous.id
