"""
Timeout scheduler.

Single background loop. Each tick samples time.monotonic() once, asks the
registry which swaps are past their deadlines and hands each one to the
coordinator together with the state observed at scan time. The coordinator
re-checks that state under the swap's lock, so a swap that moved on in the
meantime is left alone.
"""

import asyncio
import logging
import time
from typing import Optional, List

log = logging.getLogger(__name__)


class TimeoutScheduler:
    """Periodic deadline sweep over a SwapRegistry."""

    def __init__(self, registry, coordinator, tick_interval: float = 1.0):
        self.registry = registry
        self.coordinator = coordinator
        self.tick_interval = tick_interval
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    def start(self):
        """Start the background loop on the running event loop."""
        if self.running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._loop())
        log.info(f"TimeoutScheduler started (tick {self.tick_interval}s)")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.info("TimeoutScheduler stopped")

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(f"Scheduler tick error: {e}")
            await asyncio.sleep(self.tick_interval)

    async def tick(self, now: Optional[float] = None) -> List[str]:
        """Run one sweep. Returns the swap ids acted on."""
        now = time.monotonic() if now is None else now
        self.ticks += 1
        acted = []
        for swap_id, observed in self.registry.due_for_timeout(now):
            try:
                if await self.coordinator.handle_deadline(swap_id, observed, now):
                    acted.append(swap_id)
            except Exception as e:
                log.error(f"Deadline handling failed for {swap_id}: {e}")
        return acted
