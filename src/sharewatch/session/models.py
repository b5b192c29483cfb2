"""Session data models — the canonical playback session shared by every component."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from sharewatch.geo import GeoLocation


class SessionState(enum.Enum):
    """Playback state of a session."""

    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"


class MediaType(enum.Enum):
    """Closed set of media kinds a vendor item maps onto."""

    MOVIE = "movie"
    EPISODE = "episode"
    TRACK = "track"
    LIVE = "live"
    PHOTO = "photo"
    UNKNOWN = "unknown"


class StreamDecision(enum.Enum):
    """How a stream reaches the player."""

    DIRECTPLAY = "directplay"
    COPY = "copy"
    TRANSCODE = "transcode"


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Session:
    """One playback attempt as currently known.

    Timestamps are epoch seconds; progress and durations are milliseconds.
    ``account_id`` is server-scoped (``<server_id>:<user_id>``).
    """

    server_id: str
    account_id: str
    session_key: str
    state: SessionState = SessionState.PLAYING
    user_id: str = ""
    username: str = ""

    # Media
    media_type: MediaType = MediaType.UNKNOWN
    media_id: str | None = None
    title: str = ""
    show_title: str | None = None
    season_number: int | None = None
    episode_number: int | None = None
    year: int | None = None

    # Timeline
    started_at: float = field(default_factory=time.time)
    stopped_at: float | None = None
    last_seen_at: float = field(default_factory=time.time)
    progress_ms: int | None = None
    total_duration_ms: int | None = None
    duration_ms: int | None = None
    last_paused_at: float | None = None
    paused_duration_ms: int = 0

    # Network / geo
    ip_address: str = ""
    city: str | None = None
    region: str | None = None
    country: str | None = None
    lat: float | None = None
    lon: float | None = None

    # Device
    device_id: str | None = None
    player_name: str = ""
    product: str | None = None
    device: str | None = None
    platform: str | None = None

    # Quality
    video_decision: StreamDecision = StreamDecision.DIRECTPLAY
    audio_decision: StreamDecision = StreamDecision.DIRECTPLAY
    is_transcode: bool = False
    bitrate: int = 0

    # Play grouping and flags
    reference_id: str | None = None
    watched: bool = False
    short_session: bool = False
    force_stopped: bool = False

    id: str = field(default_factory=_new_id)

    @property
    def key(self) -> tuple[str, str]:
        return (self.server_id, self.session_key)

    @property
    def is_active(self) -> bool:
        return self.state != SessionState.STOPPED

    @property
    def play_id(self) -> str:
        """Identifier of the play (resume chain) this session belongs to."""
        return self.reference_id or self.id

    def apply_location(self, location: GeoLocation) -> None:
        self.city = location.city
        self.region = location.region
        self.country = location.country
        self.lat = location.lat
        self.lon = location.lon

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["media_type"] = self.media_type.value
        data["video_decision"] = self.video_decision.value
        data["audio_decision"] = self.audio_decision.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """Rebuild a session from ``to_dict`` output or a storage row.

        Raises KeyError/ValueError/TypeError on malformed input.
        """
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["state"] = SessionState(values["state"])
        values["media_type"] = MediaType(values.get("media_type", "unknown"))
        values["video_decision"] = StreamDecision(
            values.get("video_decision", "directplay")
        )
        values["audio_decision"] = StreamDecision(
            values.get("audio_decision", "directplay")
        )
        for flag in ("is_transcode", "watched", "short_session", "force_stopped"):
            if flag in values:
                values[flag] = bool(values[flag])
        return cls(**values)


@dataclass
class Play:
    """Sessions sharing a reference id, ordered by start time."""

    reference_id: str
    sessions: list[Session] = field(default_factory=list)

    @property
    def duration_ms(self) -> int:
        return sum(s.duration_ms or 0 for s in self.sessions)

    @property
    def watched(self) -> bool:
        return any(s.watched for s in self.sessions)


def group_plays(sessions: list[Session]) -> list[Play]:
    """Group sessions into plays by reference id, each ordered by start time."""
    plays: dict[str, Play] = {}
    for session in sorted(sessions, key=lambda s: s.started_at):
        ref = session.play_id
        plays.setdefault(ref, Play(reference_id=ref)).sessions.append(session)
    return list(plays.values())
