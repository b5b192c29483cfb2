"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from sharewatch.session.models import Session, SessionState
from sharewatch.vendors.base import ServerConfig, ServerType

NOW = 1_700_000_000.0

NYC = (40.7128, -74.006)
LONDON = (51.5074, -0.1278)


@pytest.fixture
def fixtures_dir() -> Path:
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def rules_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "rules.yaml"


@pytest.fixture
def config_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "config.yaml"


@pytest.fixture
def plex_server() -> ServerConfig:
    return ServerConfig(
        id="plex1", name="Living Room", type=ServerType.PLEX,
        url="http://plex.local:32400/", token="plex-token",
    )


@pytest.fixture
def jellyfin_server() -> ServerConfig:
    return ServerConfig(
        id="jf1", name="Jellyfin", type=ServerType.JELLYFIN,
        url="http://jellyfin.local:8096", token="jf-token",
    )


@pytest.fixture
def emby_server() -> ServerConfig:
    return ServerConfig(
        id="emby1", name="Emby", type=ServerType.EMBY,
        url="http://emby.local:8096", token="emby-token",
    )


@pytest.fixture
def make_session():
    """Factory for sessions on server ``s1`` with sensible defaults."""

    def _make(key: str = "k1", user: str = "alice", **overrides) -> Session:
        values = dict(
            server_id="s1",
            account_id=f"s1:{user}",
            session_key=key,
            user_id=user,
            username=user,
            state=SessionState.PLAYING,
            media_id="m1",
            title="Some Movie",
            started_at=NOW,
            last_seen_at=NOW,
            progress_ms=0,
            total_duration_ms=7_200_000,
            ip_address="203.0.113.10",
        )
        values.update(overrides)
        return Session(**values)

    return _make
