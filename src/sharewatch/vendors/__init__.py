"""Media server vendors behind one client factory."""

from __future__ import annotations

import httpx

from sharewatch.vendors.base import (
    MediaServerClient,
    ServerConfig,
    ServerType,
    SnapshotError,
    VendorError,
)
from sharewatch.vendors.jellyfin import EmbyClient, JellyfinClient
from sharewatch.vendors.plex import PlexClient

__all__ = [
    "MediaServerClient",
    "ServerConfig",
    "ServerType",
    "SnapshotError",
    "VendorError",
    "create_client",
]

_CLIENTS = {
    ServerType.PLEX: PlexClient,
    ServerType.JELLYFIN: JellyfinClient,
    ServerType.EMBY: EmbyClient,
}


def create_client(
    server: ServerConfig,
    http: httpx.AsyncClient | None = None,
    timeout: float = 10.0,
) -> MediaServerClient:
    """Build the client for ``server.type``."""
    return _CLIENTS[server.type](server, http=http, timeout=timeout)
