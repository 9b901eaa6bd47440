"""Coordinator infrastructure - base class for periodic tasks.

Timing comes from CoordinatorConfig (AGENTLAB_COORDINATOR_ env prefix).
The daemon is single-node, so every coordinator ticks unconditionally;
correctness across concurrent tasks comes from CAS updates in the store,
not from the loop.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod

from agentlab.app.metrics.collector import (
    COORDINATOR_RECONCILE_DURATION,
    COORDINATOR_RECONCILE_TOTAL,
)
from agentlab.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


class CoordinatorBase(ABC):
    """Base class for periodic coordinators.

    Subclasses implement ``tick()``; it must open its own store sessions
    and keep per-item failures inside the tick so one bad row does not
    starve the rest of the batch.

        async def tick(self) -> None:
            async with self._store.session() as db:
                expired = await sandbox_service.list_expired(db, now)
            for sandbox in expired:
                ...
    """

    INTERVAL: float = 30.0
    MIN_INTERVAL: float = 1.0
    SLOW_THRESHOLD_MS: float = 1000.0

    def __init__(
        self,
        interval: float | None = None,
        min_interval: float | None = None,
        slow_threshold_ms: float | None = None,
    ) -> None:
        if interval is not None:
            self.INTERVAL = interval
        if min_interval is not None:
            self.MIN_INTERVAL = min_interval
        if slow_threshold_ms is not None:
            self.SLOW_THRESHOLD_MS = slow_threshold_ms
        self._running = False
        self._wake = asyncio.Event()
        self._last_tick = 0.0

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @property
    def is_running(self) -> bool:
        return self._running

    def wake(self) -> None:
        """Run the next tick without waiting for the interval."""
        self._wake.set()

    def stop(self) -> None:
        self._running = False
        self._wake.set()

    @abstractmethod
    async def tick(self) -> None:
        """Execute one reconciliation cycle."""
        pass

    async def run(self) -> None:
        """Main coordinator loop."""
        self._running = True
        logger.info("[%s] Starting coordinator", self.name, extra={"event": LogEvent.APP_STARTED})

        try:
            while self._running:
                await self._throttle()
                if not await self._execute_tick():
                    break
                await self._wait(self.INTERVAL)
        finally:
            self._running = False
            logger.info("[%s] Stopped", self.name, extra={"event": LogEvent.APP_STOPPED})

    async def _throttle(self) -> None:
        """Ensure minimum interval between ticks."""
        elapsed = time.time() - self._last_tick
        if elapsed < self.MIN_INTERVAL:
            await asyncio.sleep(self.MIN_INTERVAL - elapsed)

    async def _execute_tick(self) -> bool:
        """Execute tick. Returns False if cancelled."""
        started = time.perf_counter()
        try:
            await self.tick()
            return True
        except asyncio.CancelledError:
            return False
        except Exception as e:
            logger.exception("[%s] Error in tick: %s", self.name, e)
            return True
        finally:
            self._last_tick = time.time()
            duration = time.perf_counter() - started
            COORDINATOR_RECONCILE_TOTAL.labels(coordinator=self.name).inc()
            COORDINATOR_RECONCILE_DURATION.labels(coordinator=self.name).observe(duration)
            if duration * 1000 > self.SLOW_THRESHOLD_MS:
                logger.warning(
                    "[%s] Slow tick",
                    self.name,
                    extra={"event": LogEvent.RECONCILE_SLOW, "duration_ms": round(duration * 1000, 1)},
                )

    async def _wait(self, interval: float) -> None:
        """Wait for interval or until woken/stopped."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=interval)
        except TimeoutError:
            pass
        self._wake.clear()
