from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from storage.base import LocationWriter
from tracker.cache.ttl_cache import TTLCache

log = structlog.get_logger("sweeper")


@dataclass(slots=True)
class SweepStats:
    ticks: int = 0
    evicted: int = 0
    marked_inactive: int = 0
    store_failures: int = 0


@dataclass(slots=True)
class SweepResult:
    evicted: int
    marked_inactive: int
    store_ok: bool


class Sweeper:
    """
    Periodic reconciliation. Each tick, in order:
      1) evict expired cache entries,
      2) ask the store to flip is_tracking off for users idle past the threshold.

    A store failure is logged and the tick ends normally; the next tick simply
    tries again. Marking inactive is idempotent, so back-to-back ticks are safe.
    """
    def __init__(
        self,
        cache: TTLCache,
        store: Optional[LocationWriter] = None,
        *,
        interval_s: float = 60.0,
        inactive_threshold_s: float = 300.0,
        timeout_s: float = 5.0,
    ):
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.cache = cache
        self.store = store
        self.interval_s = interval_s
        self.inactive_threshold_s = inactive_threshold_s
        self.timeout_s = timeout_s
        self.stats = SweepStats()

        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> SweepResult:
        self.stats.ticks += 1
        evicted = self.cache.cleanup()
        self.stats.evicted += evicted

        if self.store is None:
            return SweepResult(evicted=evicted, marked_inactive=0, store_ok=True)

        try:
            marked = await asyncio.wait_for(
                self.store.mark_inactive(self.inactive_threshold_s), timeout=self.timeout_s
            )
        except Exception as e:
            self.stats.store_failures += 1
            log.warning("sweep_store_failed", err=str(e))
            return SweepResult(evicted=evicted, marked_inactive=0, store_ok=False)

        marked = int(marked or 0)
        self.stats.marked_inactive += marked
        if marked > 0:
            log.info("inactive_users_marked", count=marked)
        return SweepResult(evicted=evicted, marked_inactive=marked, store_ok=True)

    # ---------- lifecycle ----------

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="sweeper")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        try:
            while not self._stop.is_set():
                await asyncio.sleep(self.interval_s)
                await self.tick()
        except asyncio.CancelledError:
            return
