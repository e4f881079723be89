import asyncio

import pytest

from tracker.batch.history_batcher import HistoryBatcher
from tracker.cache.ttl_cache import TTLCache
from tracker.service.coordinator import LocationCoordinator
from tracker.utils.types import Coordinates, HistoryItem, LocationRecord
from tests.helpers.fake_store import FakeStore, ManualClock, StoreDown, stored_user

T0 = 1_700_000_000_000
HERE = Coordinates(lat=52.52, lng=13.405)


def make(store=None, with_batcher=True, ttl_ms=3000):
    clock = ManualClock(T0)
    cache = TTLCache(ttl_ms, clock=clock)
    batcher = HistoryBatcher(store, batch_size=100, flush_interval_s=60.0) if (store and with_batcher) else None
    coord = LocationCoordinator(cache, store, batcher, inactive_threshold_s=300.0, clock=clock)
    return coord, cache, clock, batcher


# ---------------------------- list_active ---------------------------- #

@pytest.mark.asyncio
async def test_cache_hit_never_queries_store():
    store = FakeStore()
    coord, cache, _, _ = make(store)
    cache.set("u1", LocationRecord(HERE, "Berlin", True, T0))

    res = await coord.list_active()

    assert res.source == "cache"
    assert res.count == 1
    assert res.users[0]["userId"] == "u1"
    assert res.users[0]["location"] == {"lat": 52.52, "lng": 13.405}
    assert res.users[0]["lastSeen"] == "2023-11-14T22:13:20.000Z"
    assert store.count("query_active") == 0


@pytest.mark.asyncio
async def test_cold_cache_falls_back_to_store_once():
    store = FakeStore()
    store.active_rows = [stored_user("a"), stored_user("b")]
    coord, _, _, _ = make(store)

    res = await coord.list_active()

    assert res.source == "store"
    assert [u["userId"] for u in res.users] == ["a", "b"]
    assert store.count("query_active") == 1
    assert store.args_of("query_active") == [(300.0,)]
    assert res.to_dict()["count"] == 2


@pytest.mark.asyncio
async def test_cache_with_only_stopped_users_falls_back_to_store():
    store = FakeStore()
    store.active_rows = [stored_user("other")]
    coord, cache, _, _ = make(store)
    cache.set("u1", LocationRecord(HERE, "Berlin", False, T0))

    res = await coord.list_active()
    assert res.source == "store"
    assert [u["userId"] for u in res.users] == ["other"]


@pytest.mark.asyncio
async def test_no_store_returns_empty_none():
    coord, _, _, _ = make(None)
    res = await coord.list_active()
    assert res.source == "none"
    assert res.users == []
    assert res.to_dict() == {"users": [], "count": 0, "source": "none"}


@pytest.mark.asyncio
async def test_store_read_error_propagates():
    store = FakeStore()
    store.fail.add("query_active")
    coord, _, _, _ = make(store)
    with pytest.raises(StoreDown):
        await coord.list_active()


# ---------------------------- fast path ---------------------------- #

@pytest.mark.asyncio
async def test_update_writes_cache_fires_upsert_and_queues_history():
    store = FakeStore()
    coord, cache, _, batcher = make(store)

    rec = coord.update_location("u1", HERE, "Alexanderplatz")

    assert cache.get("u1") == rec
    assert rec.last_seen_ms == T0 and rec.is_tracking
    assert batcher.pending() == 1
    assert batcher._queue[0] == HistoryItem("u1", HERE, "Alexanderplatz")

    await coord.background.drain()
    assert store.args_of("upsert_user") == [("u1", HERE, "Alexanderplatz", True)]


@pytest.mark.asyncio
async def test_update_returns_before_store_completes():
    store = FakeStore()
    gate = asyncio.Event()
    store.gates["upsert_user"] = gate
    coord, cache, _, _ = make(store)

    coord.update_location("u1", HERE, None)
    await asyncio.sleep(0.01)
    assert coord.background.pending() == 1
    assert cache.get("u1").address == "Unknown"

    gate.set()
    await coord.background.drain()
    assert coord.background.pending() == 0
    assert coord.background.stats.ok == 1


@pytest.mark.asyncio
async def test_failed_upsert_is_logged_not_raised():
    store = FakeStore()
    store.fail.add("upsert_user")
    coord, cache, _, _ = make(store)

    coord.update_location("u1", HERE, "x")
    await coord.background.drain()

    assert coord.background.stats.failed == 1
    assert cache.get("u1") is not None


@pytest.mark.asyncio
async def test_slow_upsert_times_out_as_failure():
    store = FakeStore()
    store.delays["upsert_user"] = 1.0
    clock = ManualClock(T0)
    cache = TTLCache(3000, clock=clock)
    coord = LocationCoordinator(cache, store, None, store_timeout_s=0.02, clock=clock)

    coord.update_location("u1", HERE, "x")
    await asyncio.wait_for(coord.background.drain(), timeout=0.5)

    assert coord.background.stats.failed == 1
    assert coord.background.stats.ok == 0
    assert store.users == {}
    assert cache.get("u1").address == "x"


@pytest.mark.asyncio
async def test_address_truncated_to_512():
    coord, cache, _, _ = make(None)
    coord.update_location("u1", HERE, "a" * 600)
    assert len(cache.get("u1").address) == 512


@pytest.mark.asyncio
async def test_update_without_store_only_touches_cache():
    coord, cache, _, _ = make(None)
    coord.update_location("u1", HERE, "x")
    assert cache.get("u1") is not None
    assert coord.background.pending() == 0


@pytest.mark.asyncio
async def test_heartbeat_refreshes_last_seen_only():
    store = FakeStore()
    coord, cache, clock, _ = make(store)
    coord.update_location("u1", HERE, "x")

    clock.advance(2000)
    assert coord.heartbeat("u1") is True
    rec = cache.get("u1")
    assert rec.last_seen_ms == T0 + 2000
    assert rec.address == "x" and rec.is_tracking

    # the heartbeat re-set also resets the cache age
    clock.advance(2500)
    assert cache.get("u1") is not None

    await coord.background.drain()
    assert store.args_of("touch_last_seen") == [("u1",)]


@pytest.mark.asyncio
async def test_heartbeat_on_cache_miss_still_updates_store():
    store = FakeStore()
    coord, cache, _, _ = make(store)
    assert coord.heartbeat("ghost") is False
    assert cache.get("ghost") is None
    await coord.background.drain()
    assert store.count("touch_last_seen") == 1


@pytest.mark.asyncio
async def test_stop_tracking_flips_cached_flag_and_store():
    store = FakeStore()
    coord, cache, _, _ = make(store)
    coord.update_location("u1", HERE, "x")

    assert coord.stop_tracking("u1") is True
    assert cache.get("u1").is_tracking is False

    res = await coord.list_active()
    assert res.source == "store"

    await coord.background.drain()
    assert store.args_of("set_tracking") == [("u1", False)]


# ---------------------------- history / register / batch ---------------------------- #

@pytest.mark.asyncio
async def test_history_limit_defaults_and_caps():
    store = FakeStore()
    coord, _, _, _ = make(store)

    await coord.history("u1")
    await coord.history("u1", limit=500, offset=20)
    await coord.history("u1", limit=10, offset=-5)

    assert store.args_of("history") == [("u1", 50, 0), ("u1", 100, 20), ("u1", 10, 0)]


@pytest.mark.asyncio
async def test_history_without_store_is_empty():
    coord, _, _, _ = make(None)
    assert await coord.history("u1") == []


@pytest.mark.asyncio
async def test_register_user():
    store = FakeStore()
    coord, _, _, _ = make(store)
    await coord.register_user("u9")
    assert store.args_of("register_user") == [("u9",)]

    bare, _, _, _ = make(None)
    await bare.register_user("u9")  # no-op


@pytest.mark.asyncio
async def test_run_batch_reports_each_operation():
    store = FakeStore()
    coord, _, _, _ = make(store)
    ops = [
        {"type": "heartbeat", "userId": "u1"},
        {"type": "update", "userId": "u2", "location": {"lat": 1, "lng": 2}, "address": "x"},
        {"type": "bogus", "userId": "u3"},
        {"type": "update", "userId": "u4"},  # no location
    ]
    assert await coord.run_batch(ops) == [True, True, False, False]
    assert store.args_of("upsert_user") == [("u2", Coordinates(1.0, 2.0), "x", True)]


@pytest.mark.asyncio
async def test_run_batch_failure_does_not_raise():
    store = FakeStore()
    store.fail.add("touch_last_seen")
    coord, _, _, _ = make(store)
    assert await coord.run_batch([{"type": "heartbeat", "userId": "u1"}]) == [False]


@pytest.mark.asyncio
async def test_run_batch_rejects_bad_requests():
    coord, _, _, _ = make(FakeStore())
    with pytest.raises(ValueError):
        await coord.run_batch([{"type": "heartbeat", "userId": "u"}] * 11)
    with pytest.raises(ValueError):
        await coord.run_batch({"type": "heartbeat"})


# ---------------------------- health ---------------------------- #

@pytest.mark.asyncio
async def test_health_is_cached_for_five_seconds():
    store = FakeStore()
    coord, _, clock, _ = make(store)
    coord.update_location("u1", HERE, "x")

    h = await coord.health()
    assert h["status"] == "healthy"
    assert h["database"] == "connected"
    assert h["active_users"] == 1

    clock.advance(4000)
    await coord.health()
    assert store.count("ping") == 1

    clock.advance(2000)
    h = await coord.health()
    assert store.count("ping") == 2
    assert h["uptime_s"] == 6
    assert h["active_users"] == 0  # cache ttl is 3s


@pytest.mark.asyncio
async def test_health_reports_store_errors_and_absence():
    store = FakeStore()
    store.fail.add("ping")
    coord, _, _, _ = make(store)
    assert (await coord.health())["database"] == "error"

    bare, _, _, _ = make(None)
    assert (await bare.health())["database"] == "disconnected"
