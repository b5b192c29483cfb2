"""MediaServerClient protocol and the server identity every client is built from."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


class ServerType(enum.Enum):
    """Supported media server vendors."""

    PLEX = "plex"
    JELLYFIN = "jellyfin"
    EMBY = "emby"


@dataclass(frozen=True)
class ServerConfig:
    """One configured media server."""

    id: str
    name: str
    type: ServerType
    url: str
    token: str = ""

    @property
    def base_url(self) -> str:
        return self.url.rstrip("/")


class VendorError(Exception):
    """A media server could not be reached or returned an unusable response.

    Treated as transient: the poll tick fails and is retried on the next one.
    """

    def __init__(self, server_id: str, message: str) -> None:
        super().__init__(f"{server_id}: {message}")
        self.server_id = server_id


class SnapshotError(ValueError):
    """A raw session snapshot lacks a field needed to build a Session."""


@runtime_checkable
class MediaServerClient(Protocol):
    """Protocol for vendor API clients."""

    server: ServerConfig

    async def fetch_sessions(self) -> list[dict[str, Any]]:
        """Return the raw session snapshots currently reported by the server."""
        ...

    async def aclose(self) -> None:
        """Release the underlying HTTP client."""
        ...
