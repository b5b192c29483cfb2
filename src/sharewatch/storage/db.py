"""SQLite database connection management and schema migrations."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

DEFAULT_TRUST_SCORE = 100

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    server_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    session_key TEXT NOT NULL,
    state TEXT NOT NULL,
    user_id TEXT NOT NULL DEFAULT '',
    username TEXT NOT NULL DEFAULT '',
    media_type TEXT NOT NULL DEFAULT 'unknown',
    media_id TEXT,
    title TEXT NOT NULL DEFAULT '',
    show_title TEXT,
    season_number INTEGER,
    episode_number INTEGER,
    year INTEGER,
    started_at REAL NOT NULL,
    stopped_at REAL,
    last_seen_at REAL NOT NULL,
    progress_ms INTEGER,
    total_duration_ms INTEGER,
    duration_ms INTEGER,
    last_paused_at REAL,
    paused_duration_ms INTEGER NOT NULL DEFAULT 0,
    ip_address TEXT NOT NULL DEFAULT '',
    city TEXT,
    region TEXT,
    country TEXT,
    lat REAL,
    lon REAL,
    device_id TEXT,
    player_name TEXT NOT NULL DEFAULT '',
    product TEXT,
    device TEXT,
    platform TEXT,
    video_decision TEXT NOT NULL DEFAULT 'directplay',
    audio_decision TEXT NOT NULL DEFAULT 'directplay',
    is_transcode INTEGER NOT NULL DEFAULT 0,
    bitrate INTEGER NOT NULL DEFAULT 0,
    reference_id TEXT,
    watched INTEGER NOT NULL DEFAULT 0,
    short_session INTEGER NOT NULL DEFAULT 0,
    force_stopped INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS violations (
    id TEXT PRIMARY KEY,
    rule_id TEXT NOT NULL,
    rule_name TEXT NOT NULL DEFAULT '',
    rule_type TEXT NOT NULL,
    account_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    severity TEXT NOT NULL,
    evidence TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    acknowledged_at REAL
);

CREATE TABLE IF NOT EXISTS trust_scores (
    account_id TEXT PRIMARY KEY,
    score INTEGER NOT NULL DEFAULT 100,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS identity_scores (
    identity TEXT PRIMARY KEY,
    score INTEGER NOT NULL DEFAULT 100,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_account_started
    ON sessions(account_id, started_at);
CREATE INDEX IF NOT EXISTS idx_sessions_active
    ON sessions(server_id, session_key) WHERE stopped_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_violations_account_type
    ON violations(account_id, rule_type, created_at);

-- At most one unacknowledged violation per (account, session, rule type).
CREATE UNIQUE INDEX IF NOT EXISTS uq_violations_open
    ON violations(account_id, session_id, rule_type)
    WHERE acknowledged_at IS NULL;
"""


async def get_db(db_path: str | Path) -> aiosqlite.Connection:
    """Open (or create) the database and run migrations."""
    if str(db_path) != ":memory:":
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")

    try:
        await _migrate(db)
    except Exception:
        await db.close()
        raise
    return db


async def _migrate(db: aiosqlite.Connection) -> None:
    """Run schema migrations if needed."""
    cursor = await db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    )
    row = await cursor.fetchone()

    if row is None:
        await db.executescript(SCHEMA_SQL)
        await db.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        await db.commit()
        logger.info("Database initialized at schema version %d", SCHEMA_VERSION)
        return

    cursor = await db.execute("SELECT version FROM schema_version")
    row = await cursor.fetchone()
    current = row[0] if row else 0

    if current > SCHEMA_VERSION:
        raise RuntimeError(
            f"Database schema version {current} is newer than supported "
            f"({SCHEMA_VERSION}); upgrade sharewatch"
        )
