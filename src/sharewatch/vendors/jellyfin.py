"""Jellyfin and Emby clients and their shared session parser.

Both servers expose the same ``/Sessions`` shape. Times are in ticks
(10,000 per millisecond). Emby differs only in how it reports
``DirectStream`` and in not providing ``LastPausedDate``.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

import httpx

from sharewatch import __version__
from sharewatch.session.models import MediaType, Session, SessionState, StreamDecision
from sharewatch.vendors.base import ServerConfig, SnapshotError, VendorError
from sharewatch.vendors.parsing import as_int, as_str, first, mapping, opt_int, opt_str

logger = logging.getLogger(__name__)

TICKS_PER_MS = 10_000

_MEDIA_TYPES = {
    "movie": MediaType.MOVIE,
    "episode": MediaType.EPISODE,
    "audio": MediaType.TRACK,
    "livetvchannel": MediaType.LIVE,
    "tvchannel": MediaType.LIVE,
    "photo": MediaType.PHOTO,
}

_FILTERED_TYPES = frozenset({"trailer"})
_FILTERED_EXTRA_TYPES = frozenset({"themesong", "themevideo"})
_PREROLL_PROVIDER = "prerolls.video"

_FRACTION = re.compile(r"\.(\d{6})\d+")


def ticks_to_ms(ticks: Any) -> int | None:
    value = opt_int(ticks)
    if value is None:
        return None
    return value // TICKS_PER_MS


def parse_media_type(value: Any) -> MediaType:
    return _MEDIA_TYPES.get(as_str(value).lower(), MediaType.UNKNOWN)


def parse_timestamp(value: Any) -> float | None:
    """Parse a Jellyfin ISO-8601 date (7 fractional digits, ``Z`` suffix) to epoch seconds."""
    text = opt_str(value)
    if not text:
        return None
    text = _FRACTION.sub(r".\1", text.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def is_extra(now_playing: dict[str, Any]) -> bool:
    """Trailers, theme songs/videos and prerolls are not real playback."""
    if as_str(now_playing.get("Type")).lower() in _FILTERED_TYPES:
        return True
    if as_str(now_playing.get("ExtraType")).lower() in _FILTERED_EXTRA_TYPES:
        return True
    return _PREROLL_PROVIDER in mapping(now_playing, "ProviderIds")


def _direct_flag(info: dict[str, Any], key: str) -> bool | None:
    value = info.get(key)
    return value if isinstance(value, bool) else None


def normalize_play_method(
    method: str,
    video_direct: bool | None,
    audio_direct: bool | None,
) -> tuple[StreamDecision, StreamDecision]:
    """Map a ``PlayState.PlayMethod`` to ``(video, audio)`` decisions."""
    method = method.lower()
    if method == "directplay":
        return StreamDecision.DIRECTPLAY, StreamDecision.DIRECTPLAY
    if method == "directstream":
        video = StreamDecision.TRANSCODE if video_direct is False else StreamDecision.COPY
        audio = StreamDecision.TRANSCODE if audio_direct is False else StreamDecision.COPY
        return video, audio
    if method == "transcode":
        video = StreamDecision.COPY if video_direct is True else StreamDecision.TRANSCODE
        audio = StreamDecision.COPY if audio_direct is True else StreamDecision.TRANSCODE
        return video, audio
    return StreamDecision.DIRECTPLAY, StreamDecision.DIRECTPLAY


def stream_decisions(
    raw: dict[str, Any], emby: bool = False
) -> tuple[StreamDecision, StreamDecision]:
    method = as_str(mapping(raw, "PlayState").get("PlayMethod"))
    info = mapping(raw, "TranscodingInfo")
    video_direct = _direct_flag(info, "IsVideoDirect")
    audio_direct = _direct_flag(info, "IsAudioDirect")

    if method:
        # Emby apps claim DirectStream even when nothing is remuxed.
        if emby and method.lower() == "directstream":
            if not info or (video_direct is True and audio_direct is True):
                return StreamDecision.DIRECTPLAY, StreamDecision.DIRECTPLAY
        return normalize_play_method(method, video_direct, audio_direct)

    if info and video_direct is not True:
        return StreamDecision.TRANSCODE, StreamDecision.TRANSCODE
    return StreamDecision.DIRECTPLAY, StreamDecision.DIRECTPLAY


def bitrate_kbps(raw: dict[str, Any]) -> int:
    transcode_bitrate = as_int(mapping(raw, "TranscodingInfo").get("Bitrate"))
    if transcode_bitrate > 0:
        return round(transcode_bitrate / 1000)
    source = first(mapping(raw, "NowPlayingItem").get("MediaSources"))
    return round(as_int(source.get("Bitrate")) / 1000)


def parse_session(
    raw: dict[str, Any],
    server: ServerConfig,
    now: float,
    emby: bool = False,
) -> Session | None:
    """Map one ``/Sessions`` entry to a Session.

    Returns None for idle sessions (no ``NowPlayingItem``) and extras.
    Raises SnapshotError when the session or user id is missing.
    """
    now_playing = mapping(raw, "NowPlayingItem")
    if not now_playing or is_extra(now_playing):
        return None

    session_key = opt_str(raw.get("Id"))
    user_id = opt_str(raw.get("UserId"))
    if not session_key or not user_id:
        raise SnapshotError("Jellyfin session without Id or UserId")

    play_state = mapping(raw, "PlayState")
    paused = play_state.get("IsPaused") is True
    state = SessionState.PAUSED if paused else SessionState.PLAYING

    last_paused_at = None
    if paused:
        if not emby:
            last_paused_at = parse_timestamp(raw.get("LastPausedDate"))
        if last_paused_at is None or last_paused_at > now:
            last_paused_at = now

    media_type = parse_media_type(now_playing.get("Type"))
    episode = media_type == MediaType.EPISODE
    video, audio = stream_decisions(raw, emby=emby)

    return Session(
        server_id=server.id,
        account_id=f"{server.id}:{user_id}",
        session_key=session_key,
        state=state,
        user_id=user_id,
        username=as_str(raw.get("UserName")),
        media_type=media_type,
        media_id=opt_str(now_playing.get("Id")),
        title=as_str(now_playing.get("Name")),
        show_title=opt_str(now_playing.get("SeriesName")) if episode else None,
        season_number=opt_int(now_playing.get("ParentIndexNumber")) if episode else None,
        episode_number=opt_int(now_playing.get("IndexNumber")) if episode else None,
        year=opt_int(now_playing.get("ProductionYear")),
        started_at=now,
        last_seen_at=now,
        progress_ms=ticks_to_ms(play_state.get("PositionTicks")),
        total_duration_ms=ticks_to_ms(now_playing.get("RunTimeTicks")),
        last_paused_at=last_paused_at,
        ip_address=as_str(raw.get("RemoteEndPoint")),
        device_id=opt_str(raw.get("DeviceId")),
        player_name=as_str(raw.get("DeviceName")),
        product=opt_str(raw.get("Client")),
        device=opt_str(raw.get("DeviceType")),
        video_decision=video,
        audio_decision=audio,
        is_transcode=StreamDecision.TRANSCODE in (video, audio),
        bitrate=bitrate_kbps(raw),
    )


class JellyfinClient:
    """Fetches active sessions from a Jellyfin server."""

    vendor = "Jellyfin"

    def __init__(
        self,
        server: ServerConfig,
        http: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.server = server
        self._http = http or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        auth = (
            f'MediaBrowser Client="sharewatch", Device="sharewatch", '
            f'DeviceId="sharewatch-{self.server.id}", Version="{__version__}", '
            f'Token="{self.server.token}"'
        )
        return {"Accept": "application/json", "X-Emby-Authorization": auth}

    async def fetch_sessions(self) -> list[dict[str, Any]]:
        url = f"{self.server.base_url}/Sessions"
        try:
            response = await self._http.get(url, headers=self._headers())
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise VendorError(
                self.server.id, f"{self.vendor} request failed: {exc}"
            ) from exc
        except ValueError as exc:
            raise VendorError(self.server.id, f"Bad {self.vendor} response: {exc}") from exc

        if not isinstance(data, list):
            raise VendorError(self.server.id, f"{self.vendor} /Sessions is not a list")
        return [item for item in data if isinstance(item, dict)]

    async def aclose(self) -> None:
        await self._http.aclose()


class EmbyClient(JellyfinClient):
    """Emby speaks the Jellyfin sessions API."""

    vendor = "Emby"
