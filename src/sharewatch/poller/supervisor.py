"""Poller supervisor — wires the components together and runs every poll loop."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

import aiosqlite

from sharewatch.config import SharewatchConfig
from sharewatch.events import EventBus
from sharewatch.geo import StaticGeoResolver
from sharewatch.poller.processor import TickProcessor
from sharewatch.poller.worker import ServerPoller
from sharewatch.rules.models import Rule
from sharewatch.session.cache import ActiveSessionCache
from sharewatch.session.engine import SessionEngine
from sharewatch.storage.repos import SessionRepo, TrustScoreRepo, ViolationRepo
from sharewatch.vendors import MediaServerClient, create_client
from sharewatch.violations import ViolationRecorder

logger = logging.getLogger(__name__)


class PollerSupervisor:
    """Owns the cache, engines and one ServerPoller per configured server."""

    def __init__(
        self,
        config: SharewatchConfig,
        db: aiosqlite.Connection,
        rules: Sequence[Rule] | None = None,
        bus: EventBus | None = None,
        clients: Sequence[MediaServerClient] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        tuning = config.tuning
        self.config = config
        self.bus = bus or EventBus()
        self.cache = ActiveSessionCache()
        self.sessions = SessionRepo(db)
        self.violations = ViolationRepo(db)
        self.scores = TrustScoreRepo(db)
        self._clock = clock
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

        self.engine = SessionEngine(
            self.cache,
            poll_interval=tuning.poll_interval,
            missed_poll_threshold=tuning.missed_poll_threshold,
            stale_timeout=tuning.stale_session_timeout,
            resume_window=tuning.resume_window,
            min_play_time_ms=tuning.min_play_time_ms,
            completion_threshold=tuning.watch_completion_threshold,
        )
        recorder = ViolationRecorder(
            self.violations,
            self.scores,
            bus=self.bus,
            identities=config.identity_of(),
            identity_weight=tuning.identity_penalty_weight,
            dedup_window=tuning.violation_dedup_window,
        )
        self.processor = TickProcessor(
            self.engine,
            self.sessions,
            recorder,
            rules=config.rules if rules is None else rules,
            geo=StaticGeoResolver.from_entries(config.geo),
            bus=self.bus,
            resume_window=tuning.resume_window,
        )

        if clients is None:
            clients = [
                create_client(server, timeout=tuning.poll_timeout)
                for server in config.servers
            ]
        self.pollers = [
            ServerPoller(
                client,
                self.processor,
                bus=self.bus,
                interval=tuning.poll_interval,
                timeout=tuning.poll_timeout,
                down_after=tuning.down_after_failures,
                clock=clock,
            )
            for client in clients
        ]

    async def resync(self) -> int:
        """Load the store's active sessions into the cache."""
        return self.cache.resync(await self.sessions.list_active())

    async def sweep(self) -> int:
        stopped = self.engine.sweep_stale(self._clock())
        await self.processor.finish_stopped(stopped)
        return len(stopped)

    async def start(self) -> None:
        await self.resync()
        self._stop.clear()
        for poller in self.pollers:
            self._tasks.append(
                asyncio.create_task(poller.run(self._stop), name=f"poll:{poller.server_id}")
            )
        self._tasks.append(asyncio.create_task(self._sweep_loop(), name="stale-sweep"))
        logger.info("Started %d server pollers", len(self.pollers))

    def request_stop(self) -> None:
        """Ask every loop to finish; safe to call from a signal handler."""
        self._stop.set()

    async def stop(self) -> None:
        self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self._stop.wait()
        finally:
            await self.stop()

    async def _sweep_loop(self) -> None:
        interval = self.config.tuning.stale_sweep_interval
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            else:
                break
            try:
                count = await self.sweep()
            except Exception:
                logger.exception("Stale session sweep failed")
                continue
            if count:
                logger.info("Stale sweep closed %d sessions", count)
