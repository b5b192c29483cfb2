"""Violation recorder — dedups rule results, stores them and updates trust scores.

A result is suppressed when an open (unacknowledged) violation already
covers it: the same account, session and rule type, or for multi-session
kinds an open violation of the same kind whose sessions overlap with this
one's within the dedup window. Checks run under a per-account lock and
the storage layer's unique index catches whatever still races through.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping

from sharewatch.events import VIOLATION_CREATED, EventBus
from sharewatch.rules.models import (
    MULTI_SESSION_TYPES,
    Severity,
    Violation,
    ViolationResult,
)
from sharewatch.storage.repos import TrustScoreRepo, ViolationRepo

logger = logging.getLogger(__name__)

SEVERITY_PENALTY = {
    Severity.HIGH: 20,
    Severity.WARNING: 10,
    Severity.LOW: 5,
}

DEDUP_WINDOW_SECONDS = 300


def is_overlapping(existing: Violation, session_id: str, related: Iterable[str]) -> bool:
    """Whether an open multi-session violation already describes this anomaly."""
    ours = set(related)
    theirs = set(existing.related_session_ids)
    if session_id in theirs or existing.session_id in ours:
        return True
    return bool(ours & theirs)


class ViolationRecorder:
    """Persists rule results exactly once per ongoing anomaly."""

    def __init__(
        self,
        violations: ViolationRepo,
        scores: TrustScoreRepo,
        bus: EventBus | None = None,
        identities: Mapping[str, str] | None = None,
        identity_weight: float = 0.5,
        dedup_window: float = DEDUP_WINDOW_SECONDS,
    ) -> None:
        self._violations = violations
        self._scores = scores
        self._bus = bus
        # account id -> identity name
        self._identities = dict(identities or {})
        self._identity_weight = identity_weight
        self._dedup_window = dedup_window
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    async def record(self, result: ViolationResult, now: float) -> Violation | None:
        """Store ``result`` unless it duplicates an open violation.

        Returns the stored violation, or None when suppressed.
        """
        account_id = result.session.account_id
        async with self._lock_for(account_id):
            if await self._is_duplicate(result, now):
                logger.debug(
                    "Suppressed duplicate %s for session %s",
                    result.rule.type.value,
                    result.session.id,
                )
                return None

            violation = Violation.from_result(result, now)
            if not await self._violations.create(violation):
                logger.debug(
                    "Violation for session %s already open (storage)", result.session.id
                )
                return None

            penalty = SEVERITY_PENALTY[violation.severity]
            score = await self._scores.decrement(account_id, penalty, now)
            identity = self._identities.get(account_id)
            if identity is not None:
                weighted = round(penalty * self._identity_weight)
                await self._scores.decrement_identity(identity, weighted, now)
            logger.info(
                "Recorded %s violation %s for %s (trust score now %d)",
                violation.severity.value,
                violation.id,
                account_id,
                score,
            )

        if self._bus is not None:
            self._bus.publish(VIOLATION_CREATED, violation.to_dict())
        return violation

    async def record_all(
        self, results: Iterable[ViolationResult], now: float
    ) -> list[Violation]:
        stored = []
        for result in results:
            violation = await self.record(result, now)
            if violation is not None:
                stored.append(violation)
        return stored

    async def _is_duplicate(self, result: ViolationResult, now: float) -> bool:
        session = result.session
        rule_type = result.rule.type
        if await self._violations.find_open(session.account_id, session.id, rule_type):
            return True
        if rule_type not in MULTI_SESSION_TYPES:
            return False
        recent = await self._violations.open_since(
            session.account_id, rule_type, now - self._dedup_window
        )
        return any(
            is_overlapping(v, session.id, result.related_session_ids) for v in recent
        )
