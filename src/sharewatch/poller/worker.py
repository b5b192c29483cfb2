"""Server poller — the poll loop and health tracking for one media server."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

import httpx

from sharewatch.events import SERVER_DOWN, SERVER_UP, EventBus
from sharewatch.poller.processor import TickProcessor
from sharewatch.vendors.base import MediaServerClient, VendorError

logger = logging.getLogger(__name__)


class ServerPoller:
    """Polls one server every ``interval`` seconds until stopped.

    A tick that fails (vendor error, network error, timeout) is skipped and
    retried on the next interval. After ``down_after`` consecutive failures
    the server is reported down once; the next good tick reports it up.
    """

    def __init__(
        self,
        client: MediaServerClient,
        processor: TickProcessor,
        bus: EventBus | None = None,
        interval: float = 15.0,
        timeout: float = 10.0,
        down_after: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._processor = processor
        self._bus = bus
        self._interval = interval
        self._timeout = timeout
        self._down_after = down_after
        self._clock = clock
        self.consecutive_failures = 0
        self.is_down = False

    @property
    def server_id(self) -> str:
        return self._client.server.id

    async def tick(self) -> bool:
        """Run one poll. Returns True if it succeeded."""
        try:
            await asyncio.wait_for(self._poll_once(), timeout=self._timeout)
        except (VendorError, httpx.HTTPError) as exc:
            logger.warning("Poll of %s failed: %s", self.server_id, exc)
            self._record_failure()
            return False
        except asyncio.TimeoutError:
            logger.warning(
                "Poll of %s timed out after %.1fs; tick abandoned",
                self.server_id,
                self._timeout,
            )
            self._record_failure()
            return False
        self._record_success()
        return True

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("Polling %s every %.1fs", self.server_id, self._interval)
        while not stop.is_set():
            try:
                await self.tick()
            except Exception:
                # A processing bug must not kill the loop; the server itself is fine.
                logger.exception("Unexpected error polling %s", self.server_id)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        await self._client.aclose()
        logger.info("Stopped polling %s", self.server_id)

    async def _poll_once(self) -> None:
        snapshots = await self._client.fetch_sessions()
        await self._processor.process(self._client.server, snapshots, self._clock())

    def _record_failure(self) -> None:
        self.consecutive_failures += 1
        if not self.is_down and self.consecutive_failures >= self._down_after:
            self.is_down = True
            logger.warning(
                "Server %s marked down after %d failed polls",
                self.server_id,
                self.consecutive_failures,
            )
            self._emit(SERVER_DOWN)

    def _record_success(self) -> None:
        self.consecutive_failures = 0
        if self.is_down:
            logger.info("Server %s is reachable again", self.server_id)
            self.is_down = False
            self._emit(SERVER_UP)

    def _emit(self, event_type: str) -> None:
        if self._bus is not None:
            self._bus.publish(
                event_type,
                {
                    "server_id": self.server_id,
                    "server_name": self._client.server.name,
                    "failures": self.consecutive_failures,
                },
            )
