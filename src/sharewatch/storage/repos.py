"""Repository classes for async CRUD operations on SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterable
from dataclasses import fields

import aiosqlite

from sharewatch.rules.models import RuleType, Severity, Violation
from sharewatch.session.models import Session
from sharewatch.storage.db import DEFAULT_TRUST_SCORE

logger = logging.getLogger(__name__)

_SESSION_COLUMNS = tuple(f.name for f in fields(Session))


def _session_row(session: Session) -> tuple:
    data = session.to_dict()
    return tuple(data[c] for c in _SESSION_COLUMNS)


def _violation(row: aiosqlite.Row) -> Violation:
    data = dict(row)
    return Violation(
        id=data["id"],
        rule_id=data["rule_id"],
        rule_name=data["rule_name"],
        rule_type=RuleType(data["rule_type"]),
        account_id=data["account_id"],
        session_id=data["session_id"],
        severity=Severity(data["severity"]),
        evidence=json.loads(data["evidence"] or "{}"),
        created_at=data["created_at"],
        acknowledged_at=data["acknowledged_at"],
    )


class SessionRepo:
    """Durable record of every session, active or stopped."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def upsert(self, session: Session) -> None:
        await self.upsert_many([session])

    async def upsert_many(self, sessions: Iterable[Session]) -> None:
        placeholders = ", ".join("?" for _ in _SESSION_COLUMNS)
        sql = (
            f"INSERT OR REPLACE INTO sessions ({', '.join(_SESSION_COLUMNS)}) "
            f"VALUES ({placeholders})"
        )
        await self._db.executemany(sql, [_session_row(s) for s in sessions])
        await self._db.commit()

    async def get(self, session_id: str) -> Session | None:
        cursor = await self._db.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        )
        row = await cursor.fetchone()
        return Session.from_dict(dict(row)) if row else None

    async def list_active(self) -> list[Session]:
        cursor = await self._db.execute(
            "SELECT * FROM sessions WHERE stopped_at IS NULL ORDER BY started_at"
        )
        return [Session.from_dict(dict(row)) async for row in cursor]

    async def recent_for_accounts(
        self, account_ids: Iterable[str], since: float
    ) -> list[Session]:
        """Sessions of these accounts started, or stopped, at or after ``since``."""
        ids = sorted(set(account_ids))
        if not ids:
            return []
        marks = ", ".join("?" for _ in ids)
        cursor = await self._db.execute(
            f"SELECT * FROM sessions WHERE account_id IN ({marks}) "
            "AND (started_at >= ? OR stopped_at >= ? OR stopped_at IS NULL) "
            "ORDER BY started_at",
            (*ids, since, since),
        )
        return [Session.from_dict(dict(row)) async for row in cursor]

    async def list_recent(self, limit: int = 50, offset: int = 0) -> list[Session]:
        cursor = await self._db.execute(
            "SELECT * FROM sessions ORDER BY started_at DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [Session.from_dict(dict(row)) async for row in cursor]


class ViolationRepo:
    """CRUD for violations.

    ``create`` relies on the partial unique index over open violations: an
    insert that would duplicate one is ignored and reported as not created.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def create(self, violation: Violation) -> bool:
        try:
            cursor = await self._db.execute(
                "INSERT OR IGNORE INTO violations "
                "(id, rule_id, rule_name, rule_type, account_id, session_id, "
                "severity, evidence, created_at, acknowledged_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    violation.id,
                    violation.rule_id,
                    violation.rule_name,
                    violation.rule_type.value,
                    violation.account_id,
                    violation.session_id,
                    violation.severity.value,
                    json.dumps(violation.evidence),
                    violation.created_at,
                    violation.acknowledged_at,
                ),
            )
        except sqlite3.IntegrityError:
            logger.debug("Violation insert rejected for %s", violation.session_id)
            return False
        await self._db.commit()
        return cursor.rowcount == 1

    async def get(self, violation_id: str) -> Violation | None:
        cursor = await self._db.execute(
            "SELECT * FROM violations WHERE id = ?", (violation_id,)
        )
        row = await cursor.fetchone()
        return _violation(row) if row else None

    async def find_open(
        self, account_id: str, session_id: str, rule_type: RuleType
    ) -> Violation | None:
        cursor = await self._db.execute(
            "SELECT * FROM violations WHERE account_id = ? AND session_id = ? "
            "AND rule_type = ? AND acknowledged_at IS NULL",
            (account_id, session_id, rule_type.value),
        )
        row = await cursor.fetchone()
        return _violation(row) if row else None

    async def open_since(
        self, account_id: str, rule_type: RuleType, since: float
    ) -> list[Violation]:
        """Unacknowledged violations of one kind for an account created since ``since``."""
        cursor = await self._db.execute(
            "SELECT * FROM violations WHERE account_id = ? AND rule_type = ? "
            "AND acknowledged_at IS NULL AND created_at >= ? ORDER BY created_at",
            (account_id, rule_type.value, since),
        )
        return [_violation(row) async for row in cursor]

    async def acknowledge(self, violation_id: str, now: float | None = None) -> bool:
        cursor = await self._db.execute(
            "UPDATE violations SET acknowledged_at = ? "
            "WHERE id = ? AND acknowledged_at IS NULL",
            (now if now is not None else time.time(), violation_id),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def list_all(
        self, include_acknowledged: bool = False, limit: int = 100
    ) -> list[Violation]:
        where = "" if include_acknowledged else "WHERE acknowledged_at IS NULL "
        cursor = await self._db.execute(
            f"SELECT * FROM violations {where}ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
        return [_violation(row) async for row in cursor]


class TrustScoreRepo:
    """Per-account and per-identity trust scores, starting at 100 and floored at 0."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def get(self, account_id: str) -> int:
        return await self._get("trust_scores", "account_id", account_id)

    async def get_identity(self, identity: str) -> int:
        return await self._get("identity_scores", "identity", identity)

    async def decrement(self, account_id: str, amount: int, now: float) -> int:
        return await self._decrement("trust_scores", "account_id", account_id, amount, now)

    async def decrement_identity(self, identity: str, amount: int, now: float) -> int:
        return await self._decrement("identity_scores", "identity", identity, amount, now)

    async def list_accounts(self) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM trust_scores ORDER BY score, account_id"
        )
        return [dict(row) async for row in cursor]

    async def list_identities(self) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM identity_scores ORDER BY score, identity"
        )
        return [dict(row) async for row in cursor]

    async def _get(self, table: str, key: str, value: str) -> int:
        cursor = await self._db.execute(
            f"SELECT score FROM {table} WHERE {key} = ?", (value,)
        )
        row = await cursor.fetchone()
        return row[0] if row else DEFAULT_TRUST_SCORE

    async def _decrement(
        self, table: str, key: str, value: str, amount: int, now: float
    ) -> int:
        await self._db.execute(
            f"INSERT INTO {table} ({key}, score, updated_at) VALUES (?, MAX(0, ? - ?), ?) "
            f"ON CONFLICT({key}) DO UPDATE SET "
            "score = MAX(0, score - ?), updated_at = excluded.updated_at",
            (value, DEFAULT_TRUST_SCORE, amount, now, amount),
        )
        await self._db.commit()
        return await self._get(table, key, value)
