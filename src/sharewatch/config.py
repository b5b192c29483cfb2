"""Global configuration — XDG paths, config.yaml, env vars, defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from sharewatch.rules.loader import parse_rules
from sharewatch.rules.models import Rule
from sharewatch.vendors.base import ServerConfig, ServerType


def _default_data_dir() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "sharewatch"
    return Path.home() / ".local" / "share" / "sharewatch"


def _default_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "sharewatch"
    return Path.home() / ".config" / "sharewatch"


@dataclass
class Tuning:
    """Timing and threshold knobs. Seconds unless the name says otherwise."""

    poll_interval: float = 15.0
    poll_timeout: float = 10.0
    missed_poll_threshold: int = 2
    stale_session_timeout: float = 300.0
    stale_sweep_interval: float = 60.0
    resume_window: float = 86400.0
    min_play_time_ms: int = 120_000
    watch_completion_threshold: float = 0.85
    down_after_failures: int = 3
    identity_penalty_weight: float = 0.5
    violation_dedup_window: float = 300.0

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> Tuning:
        tuning = cls()
        known = {f.name: f for f in fields(cls)}
        for key, value in data.items():
            if key not in known:
                raise ValueError(f"Unknown tuning option: {key}")
            default = getattr(tuning, key)
            try:
                setattr(tuning, key, type(default)(value))
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Invalid value for tuning.{key}: {value!r}") from exc
        return tuning


@dataclass
class SharewatchConfig:
    """Application-wide configuration."""

    data_dir: Path = field(default_factory=_default_data_dir)
    config_dir: Path = field(default_factory=_default_config_dir)
    db_path: Path | None = None
    servers: list[ServerConfig] = field(default_factory=list)
    rules: list[Rule] = field(default_factory=list)
    # identity name -> account ids ("<server>:<user>")
    identities: dict[str, list[str]] = field(default_factory=dict)
    geo: list[dict] = field(default_factory=list)
    tuning: Tuning = field(default_factory=Tuning)
    verbose: bool = False

    @property
    def database(self) -> Path:
        return self.db_path or self.data_dir / "sharewatch.db"

    def identity_of(self) -> dict[str, str]:
        """Account id -> identity name."""
        mapping: dict[str, str] = {}
        for identity, accounts in self.identities.items():
            for account in accounts:
                mapping[account] = identity
        return mapping

    @classmethod
    def load(cls, path: str | Path | None = None) -> SharewatchConfig:
        """Load config from ``path`` (or config_dir/config.yaml) plus env overrides."""
        config = cls()

        config_path = Path(path) if path else config.config_dir / "config.yaml"
        if path or config_path.is_file():
            config._apply_file(config_path)

        env_interval = os.environ.get("SHAREWATCH_POLL_INTERVAL")
        if env_interval:
            config.tuning.poll_interval = float(env_interval)

        env_timeout = os.environ.get("SHAREWATCH_POLL_TIMEOUT")
        if env_timeout:
            config.tuning.poll_timeout = float(env_timeout)

        env_db = os.environ.get("SHAREWATCH_DB_PATH")
        if env_db:
            config.db_path = Path(env_db)

        return config

    def _apply_file(self, path: Path) -> None:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        if data is None:
            return
        if not isinstance(data, dict):
            raise ValueError("Config YAML must be a mapping")

        self.servers = [_parse_server(s) for s in data.get("servers") or []]
        ids = [s.id for s in self.servers]
        if len(ids) != len(set(ids)):
            raise ValueError("Server ids must be unique")

        self.rules = parse_rules(data.get("rules") or [])

        identities = data.get("identities") or {}
        if not isinstance(identities, dict):
            raise ValueError("'identities' must be a mapping of name -> account ids")
        self.identities = {
            str(name): [str(a) for a in (accounts or [])]
            for name, accounts in identities.items()
        }

        geo = data.get("geo") or []
        if not isinstance(geo, list):
            raise ValueError("'geo' must be a list")
        self.geo = geo

        tuning = data.get("tuning") or {}
        if not isinstance(tuning, dict):
            raise ValueError("'tuning' must be a mapping")
        self.tuning = Tuning.from_mapping(tuning)


def _parse_server(data: Any) -> ServerConfig:
    if not isinstance(data, dict):
        raise ValueError("Each server must be a mapping")
    missing = [k for k in ("id", "type", "url") if not data.get(k)]
    if missing:
        raise ValueError(f"Server is missing {', '.join(missing)}: {data!r}")
    try:
        server_type = ServerType(str(data["type"]).lower())
    except ValueError as exc:
        raise ValueError(f"Unknown server type: {data['type']!r}") from exc
    return ServerConfig(
        id=str(data["id"]),
        name=str(data.get("name") or data["id"]),
        type=server_type,
        url=str(data["url"]),
        token=str(data.get("token") or ""),
    )
