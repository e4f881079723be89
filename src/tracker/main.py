# src/tracker/main.py
import asyncio
import signal
from dataclasses import dataclass
from typing import Optional

import structlog
from dotenv import load_dotenv

from storage.redis_locations import RedisLocationStore
from tracker.batch.history_batcher import HistoryBatcher
from tracker.cache.ttl_cache import TTLCache
from tracker.config import TrackerConfig, config_from_env
from tracker.service.coordinator import LocationCoordinator
from tracker.sweep.sweeper import Sweeper
from tracker.utils.types import LocationRecord

log = structlog.get_logger()


@dataclass(slots=True)
class Tracker:
    coordinator: LocationCoordinator
    sweeper: Sweeper
    batcher: Optional[HistoryBatcher]
    store: Optional[RedisLocationStore]


def build(cfg: TrackerConfig, store: Optional[RedisLocationStore] = None) -> Tracker:
    """Wire cache, batcher, coordinator and sweeper. The store is created from cfg unless given."""
    if store is None and cfg.store_enabled:
        store = RedisLocationStore.from_url(cfg.redis_url)

    cache: TTLCache[str, LocationRecord] = TTLCache(cfg.cache_ttl_ms)
    batcher = None
    if store is not None:
        batcher = HistoryBatcher(
            store,
            batch_size=cfg.history_batch_size,
            flush_interval_s=cfg.history_flush_interval_ms / 1000.0,
            timeout_s=cfg.store_timeout_s,
        )

    coordinator = LocationCoordinator(
        cache,
        store,
        batcher,
        inactive_threshold_s=cfg.inactive_threshold_s,
        store_timeout_s=cfg.store_timeout_s,
        history_limit=cfg.history_limit,
        history_default_limit=cfg.history_default_limit,
        health_cache_ms=cfg.health_cache_ms,
    )
    sweeper = Sweeper(
        cache,
        store,
        interval_s=cfg.cleanup_interval_ms / 1000.0,
        inactive_threshold_s=cfg.inactive_threshold_s,
        timeout_s=cfg.store_timeout_s,
    )
    return Tracker(coordinator=coordinator, sweeper=sweeper, batcher=batcher, store=store)


async def start(t: Tracker) -> None:
    if t.store is not None:
        try:
            await t.store.ping()
            log.info("store_connected")
        except Exception as e:
            # keep serving from the cache; store calls will log their own failures
            log.warning("store_unreachable_at_startup", err=str(e))
    if t.batcher is not None:
        await t.batcher.start()
    await t.sweeper.start()
    log.info("tracker_started", store=t.store is not None, cache_ttl_ms=t.coordinator.cache.ttl_ms)


async def shutdown(t: Tracker) -> None:
    """Stop timers, drain history exactly once, finish detached store calls, then close the store."""
    log.info("tracker_shutting_down")
    await t.sweeper.stop()
    if t.batcher is not None:
        await t.batcher.stop()
    await t.coordinator.background.drain()
    if t.store is not None:
        await t.store.close()
        log.info("store_closed")


async def main():
    cfg = config_from_env()
    tracker = build(cfg)
    await start(tracker)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await stop.wait()
    finally:
        await shutdown(tracker)


def run() -> None:
    load_dotenv()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
