"""Plex client and session parser.

Plex reports times in milliseconds already; positions come from
``viewOffset`` and lengths from ``duration``. Trailers and prerolls show up
as ``clip`` items and are not sessions.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from sharewatch import __version__
from sharewatch.session.models import MediaType, Session, SessionState, StreamDecision
from sharewatch.vendors.base import ServerConfig, SnapshotError, VendorError
from sharewatch.vendors.parsing import as_int, as_str, first, mapping, opt_int, opt_str

logger = logging.getLogger(__name__)

CLIENT_IDENTIFIER = "sharewatch"

_MEDIA_TYPES = {
    "movie": MediaType.MOVIE,
    "episode": MediaType.EPISODE,
    "track": MediaType.TRACK,
    "photo": MediaType.PHOTO,
}

_STATES = {
    "paused": SessionState.PAUSED,
    "stopped": SessionState.STOPPED,
}

_NON_SESSION_SUBTYPES = frozenset({"trailer", "preroll"})


def is_extra(item: dict[str, Any]) -> bool:
    """Trailers, prerolls and other clips shown around the real item."""
    if as_str(item.get("type")).lower() == "clip":
        return True
    subtype = as_str(item.get("subtype")).lower()
    return subtype in _NON_SESSION_SUBTYPES or item.get("extraType") is not None


def parse_media_type(item: dict[str, Any]) -> MediaType:
    if as_str(item.get("live")) == "1":
        return MediaType.LIVE
    return _MEDIA_TYPES.get(as_str(item.get("type")).lower(), MediaType.UNKNOWN)


def parse_decision(value: Any) -> StreamDecision:
    text = as_str(value, "directplay").lower()
    if text == "transcode":
        return StreamDecision.TRANSCODE
    if text == "copy":
        return StreamDecision.COPY
    return StreamDecision.DIRECTPLAY


def parse_session(item: dict[str, Any], server: ServerConfig, now: float) -> Session | None:
    """Map one ``MediaContainer.Metadata`` entry to a Session.

    Returns None for extras. Raises SnapshotError when the session key or
    user id is missing.
    """
    if is_extra(item):
        return None

    session_key = opt_str(item.get("sessionKey"))
    user = mapping(item, "User")
    user_id = opt_str(user.get("id"))
    if not session_key or not user_id:
        raise SnapshotError("Plex session without sessionKey or User.id")

    player = mapping(item, "Player")
    transcode = mapping(item, "TranscodeSession")
    media_type = parse_media_type(item)

    video = parse_decision(transcode.get("videoDecision"))
    audio = parse_decision(transcode.get("audioDecision"))

    state = _STATES.get(as_str(player.get("state")).lower(), SessionState.PLAYING)
    episode = media_type == MediaType.EPISODE

    return Session(
        server_id=server.id,
        account_id=f"{server.id}:{user_id}",
        session_key=session_key,
        state=state,
        user_id=user_id,
        username=as_str(user.get("title")),
        media_type=media_type,
        media_id=opt_str(item.get("ratingKey")),
        title=as_str(item.get("title")),
        show_title=opt_str(item.get("grandparentTitle")) if episode else None,
        season_number=opt_int(item.get("parentIndex")) if episode else None,
        episode_number=opt_int(item.get("index")) if episode else None,
        year=opt_int(item.get("year")),
        started_at=now,
        stopped_at=now if state == SessionState.STOPPED else None,
        last_seen_at=now,
        progress_ms=opt_int(item.get("viewOffset")),
        total_duration_ms=opt_int(item.get("duration")),
        last_paused_at=now if state == SessionState.PAUSED else None,
        ip_address=as_str(player.get("remotePublicAddress")) or as_str(player.get("address")),
        device_id=opt_str(player.get("machineIdentifier")),
        player_name=as_str(player.get("title")),
        product=opt_str(player.get("product")),
        device=opt_str(player.get("device")),
        platform=opt_str(player.get("platform")),
        video_decision=video,
        audio_decision=audio,
        is_transcode=StreamDecision.TRANSCODE in (video, audio),
        bitrate=as_int(first(item.get("Media")).get("bitrate")),
    )


def sessions_from_response(data: Any) -> list[dict[str, Any]]:
    """Extract the raw session list from a ``/status/sessions`` body."""
    metadata = mapping(data, "MediaContainer").get("Metadata")
    if metadata is None:
        return []
    if not isinstance(metadata, list):
        raise ValueError("MediaContainer.Metadata is not a list")
    return [item for item in metadata if isinstance(item, dict)]


class PlexClient:
    """Fetches active sessions from a Plex Media Server."""

    def __init__(
        self,
        server: ServerConfig,
        http: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.server = server
        self._http = http or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Plex-Token": self.server.token,
            "X-Plex-Client-Identifier": CLIENT_IDENTIFIER,
            "X-Plex-Product": "sharewatch",
            "X-Plex-Version": __version__,
        }

    async def fetch_sessions(self) -> list[dict[str, Any]]:
        url = f"{self.server.base_url}/status/sessions"
        try:
            response = await self._http.get(url, headers=self._headers())
            response.raise_for_status()
            return sessions_from_response(response.json())
        except httpx.HTTPError as exc:
            raise VendorError(self.server.id, f"Plex request failed: {exc}") from exc
        except ValueError as exc:
            raise VendorError(self.server.id, f"Bad Plex response: {exc}") from exc

    async def aclose(self) -> None:
        await self._http.aclose()
