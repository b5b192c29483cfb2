"""Session normalizer — raw vendor snapshots into canonical Sessions.

A malformed snapshot is logged and dropped; it never aborts the poll tick it
arrived in.
"""

from __future__ import annotations

import logging
from typing import Any

from sharewatch.geo import GeoResolver
from sharewatch.session.models import Session
from sharewatch.vendors import jellyfin, plex
from sharewatch.vendors.base import ServerConfig, ServerType, SnapshotError

logger = logging.getLogger(__name__)


def normalize(
    raw: dict[str, Any],
    server: ServerConfig,
    now: float,
    geo: GeoResolver | None = None,
) -> Session | None:
    """Return the Session for ``raw``, or None if it is not playback or is unusable."""
    try:
        if server.type == ServerType.PLEX:
            session = plex.parse_session(raw, server, now)
        else:
            session = jellyfin.parse_session(
                raw, server, now, emby=server.type == ServerType.EMBY
            )
    except (SnapshotError, TypeError, ValueError, AttributeError) as exc:
        logger.warning("Dropping malformed %s snapshot: %s", server.id, exc)
        return None

    if session is not None and geo is not None and session.ip_address:
        session.apply_location(geo.lookup(session.ip_address))
    return session


def normalize_all(
    snapshots: list[dict[str, Any]],
    server: ServerConfig,
    now: float,
    geo: GeoResolver | None = None,
) -> list[Session]:
    """Normalize a poll's snapshots, keeping vendor order and skipping non-sessions."""
    sessions = []
    for raw in snapshots:
        session = normalize(raw, server, now, geo)
        if session is not None:
            sessions.append(session)
    return sessions
