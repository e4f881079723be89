from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable

import structlog

log = structlog.get_logger("background")


@dataclass(slots=True)
class BackgroundStats:
    started: int = 0
    ok: int = 0
    failed: int = 0


class FireAndForget:
    """
    Runs store calls as detached tasks. The caller never awaits them; failures
    and timeouts are logged and counted, nothing is raised back.
    Tasks are tracked until done so drain() can wait for them on shutdown.
    """
    def __init__(self, timeout_s: float = 5.0):
        self.timeout_s = timeout_s
        self.stats = BackgroundStats()
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, aw: Awaitable, op: str, **ctx) -> asyncio.Task:
        self.stats.started += 1
        t = asyncio.get_running_loop().create_task(self._run(aw, op, ctx), name=f"store-{op}")
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)
        return t

    async def _run(self, aw: Awaitable, op: str, ctx: dict) -> None:
        try:
            await asyncio.wait_for(aw, timeout=self.timeout_s)
        except Exception as e:
            self.stats.failed += 1
            log.warning("store_call_failed", op=op, err=str(e), **ctx)
            return
        self.stats.ok += 1

    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task spawned so far (each is already bounded by timeout_s)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
