# src/storage/redis_locations.py
from __future__ import annotations

import json
from typing import Callable, Optional, Sequence

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import WatchError

from tracker.utils.time import ms_to_s, s_to_ms, utc_now_ms
from tracker.utils.types import Coordinates, HistoryEntry, HistoryItem, StoredUser

TRACKING_KEY = "users:tracking"  # zset: user_key -> last_seen_ms, tracking users only

def user_hash(key: str) -> str:
    # user:{KEY}
    return f"user:{key}"

def history_key(key: str) -> str:
    # history:{KEY}, newest first
    return f"history:{key}"

def _s(v) -> str:
    return v.decode() if isinstance(v, (bytes, bytearray)) else str(v)

def _flag(v: bool) -> str:
    return "1" if v else "0"


class RedisLocationStore:
    """
    Redis-backed user/history store.

    Layout:
      user:{key}       hash  lat, lng, address, is_tracking, last_seen_ms, created_ms
      users:tracking   zset  members = tracking users, score = last_seen_ms
      history:{key}    list  JSON {lat, lng, address, tracked_at_ms}, LPUSH'ed

    Timestamps come from this store's own clock, not the caller's.
    """
    def __init__(self, redis: Redis, clock: Optional[Callable[[], int]] = None):
        self.redis = redis
        self._clock = clock or utc_now_ms

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisLocationStore":
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    # ---------- writer ----------

    async def upsert_user(
        self, user_key: str, coordinates: Coordinates, address: str, is_tracking: bool
    ) -> None:
        now = self._clock()
        k = user_hash(user_key)
        p = self.redis.pipeline(transaction=True)
        p.hset(k, mapping={
            "lat": repr(coordinates.lat),
            "lng": repr(coordinates.lng),
            "address": address,
            "is_tracking": _flag(is_tracking),
            "last_seen_ms": now,
        })
        p.hsetnx(k, "created_ms", now)
        if is_tracking:
            p.zadd(TRACKING_KEY, {user_key: now})
        else:
            p.zrem(TRACKING_KEY, user_key)
        await p.execute()

    async def append_history_batch(self, items: Sequence[HistoryItem]) -> None:
        """One round trip for the whole batch. Not idempotent: a replay appends again."""
        if not items:
            return
        now = self._clock()
        p = self.redis.pipeline(transaction=False)
        for it in items:
            p.lpush(history_key(it.user_key), json.dumps({
                "lat": it.coordinates.lat,
                "lng": it.coordinates.lng,
                "address": it.address,
                "tracked_at_ms": now,
            }))
        await p.execute()

    async def mark_inactive(self, threshold_s: float) -> int:
        """
        Flip is_tracking off for every tracking user not seen for threshold_s.
        Returns the number of users flipped; a second call right after flips none.

        WATCHes the tracking zset: a write to it between the read and EXEC
        aborts the transaction and the stale set is read again.
        """
        cutoff = self._clock() - s_to_ms(threshold_s)
        async with self.redis.pipeline(transaction=True) as p:
            while True:
                try:
                    await p.watch(TRACKING_KEY)
                    stale = [_s(m) for m in await p.zrangebyscore(TRACKING_KEY, "-inf", f"({cutoff}")]
                    if not stale:
                        return 0
                    p.multi()
                    for m in stale:
                        p.hset(user_hash(m), "is_tracking", "0")
                        p.zrem(TRACKING_KEY, m)
                    await p.execute()
                    return len(stale)
                except WatchError:
                    continue

    async def _update_existing(self, user_key: str, queue: Callable[[Pipeline, str, int], None]) -> None:
        # EXISTS and the update share one WATCHed transaction on the user hash
        k = user_hash(user_key)
        async with self.redis.pipeline(transaction=True) as p:
            while True:
                try:
                    await p.watch(k)
                    if not await p.exists(k):
                        return
                    p.multi()
                    queue(p, k, self._clock())
                    await p.execute()
                    return
                except WatchError:
                    continue

    async def touch_last_seen(self, user_key: str) -> None:
        def queue(p: Pipeline, k: str, now: int) -> None:
            p.hset(k, "last_seen_ms", now)
            # refresh the score only if the user is currently tracking
            p.zadd(TRACKING_KEY, {user_key: now}, xx=True)

        await self._update_existing(user_key, queue)

    async def set_tracking(self, user_key: str, is_tracking: bool) -> None:
        def queue(p: Pipeline, k: str, now: int) -> None:
            p.hset(k, mapping={"is_tracking": _flag(is_tracking), "last_seen_ms": now})
            if is_tracking:
                p.zadd(TRACKING_KEY, {user_key: now})
            else:
                p.zrem(TRACKING_KEY, user_key)

        await self._update_existing(user_key, queue)

    async def register_user(self, user_key: str) -> None:
        """Create the user (not tracking, no coordinates) or just refresh last_seen_ms."""
        now = self._clock()
        k = user_hash(user_key)
        p = self.redis.pipeline(transaction=True)
        p.hsetnx(k, "created_ms", now)
        p.hsetnx(k, "is_tracking", "0")
        p.hset(k, "last_seen_ms", now)
        await p.execute()

    # ---------- reader ----------

    async def query_active(self, threshold_s: float) -> list[StoredUser]:
        cutoff = self._clock() - s_to_ms(threshold_s)
        members = await self.redis.zrangebyscore(TRACKING_KEY, f"({cutoff}", "+inf")
        if not members:
            return []
        keys = [_s(m) for m in members]
        p = self.redis.pipeline(transaction=False)
        for k in keys:
            p.hgetall(user_hash(k))
        rows = await p.execute()

        out: list[StoredUser] = []
        for k, row in zip(keys, rows):
            row = {_s(f): _s(v) for f, v in (row or {}).items()}
            if not row.get("lat") or not row.get("lng"):
                continue
            out.append(StoredUser(
                user_key=k,
                coordinates=Coordinates(lat=float(row["lat"]), lng=float(row["lng"])),
                address=row.get("address", ""),
                is_tracking=row.get("is_tracking") == "1",
                last_seen_s=ms_to_s(int(row.get("last_seen_ms") or 0)),
            ))
        return out

    async def history(self, user_key: str, limit: int, offset: int) -> list[HistoryEntry]:
        raw = await self.redis.lrange(history_key(user_key), offset, offset + limit - 1)
        out: list[HistoryEntry] = []
        for item in raw or []:
            d = json.loads(_s(item))
            out.append(HistoryEntry(
                coordinates=Coordinates(lat=float(d["lat"]), lng=float(d["lng"])),
                address=d.get("address", ""),
                tracked_at_ms=int(d["tracked_at_ms"]),
            ))
        return out

    # ---------- lifecycle ----------

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def close(self) -> None:
        await self.redis.aclose()
