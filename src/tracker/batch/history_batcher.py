from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from storage.base import LocationWriter
from tracker.utils.types import HistoryItem

log = structlog.get_logger("history_batcher")


@dataclass(slots=True)
class BatcherStats:
    enqueued: int = 0
    flushes: int = 0
    flushed_items: int = 0
    failed_flushes: int = 0
    dropped_items: int = 0


class HistoryBatcher:
    """
    Accumulates HistoryItems and appends them to the store in groups.

    - enqueue(item) never waits on the store; reaching batch_size schedules a flush.
    - flush() swaps the pending list for a fresh one before its first await, so
      every item belongs to exactly one flush, even when the timer flush and a
      size-triggered flush overlap.
    - A failed append is logged and the batch dropped (no retry, no requeue).
    - stop() cancels the timer, waits for in-flight flushes, then flushes once more.

    Must be used from the event loop thread.
    """
    def __init__(
        self,
        writer: LocationWriter,
        batch_size: int = 10,
        flush_interval_s: float = 5.0,
        timeout_s: float = 5.0,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be >= 1")
        if flush_interval_s <= 0:
            raise ValueError("flush_interval_s must be > 0")
        self.writer = writer
        self.batch_size = batch_size
        self.flush_interval_s = flush_interval_s
        self.timeout_s = timeout_s
        self.stats = BatcherStats()

        self._queue: list[HistoryItem] = []
        self._inflight: set[asyncio.Task] = set()
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    def pending(self) -> int:
        return len(self._queue)

    def enqueue(self, item: HistoryItem) -> None:
        self._queue.append(item)
        self.stats.enqueued += 1
        if len(self._queue) >= self.batch_size:
            t = asyncio.get_running_loop().create_task(self.flush(), name="history-flush-size")
            self._inflight.add(t)
            t.add_done_callback(self._inflight.discard)

    async def flush(self) -> int:
        """Drain everything queued right now into one append. Returns the number of items written."""
        items, self._queue = self._queue, []
        if not items:
            return 0
        try:
            await asyncio.wait_for(self.writer.append_history_batch(items), timeout=self.timeout_s)
        except Exception as e:
            self.stats.failed_flushes += 1
            self.stats.dropped_items += len(items)
            log.warning("history_flush_failed", err=str(e), dropped=len(items))
            return 0
        self.stats.flushes += 1
        self.stats.flushed_items += len(items)
        log.debug("history_flushed", items=len(items))
        return len(items)

    # ---------- lifecycle ----------

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._timer_loop(), name="history-flush-timer")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            # not cancelled: a timer flush in progress must finish with the items it took
            await self._task
            self._task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        n = await self.flush()
        log.info("history_final_flush", items=n, stats=self.stats)

    async def _timer_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.flush_interval_s)
            except asyncio.TimeoutError:
                await self.flush()
