# src/tracker/service/coordinator.py
from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Callable, Optional

import structlog

from storage.base import LocationStore
from tracker.batch.history_batcher import HistoryBatcher
from tracker.cache.ttl_cache import TTLCache
from tracker.service.background import FireAndForget
from tracker.utils.time import iso_ms, utc_now_ms
from tracker.utils.types import (
    ActiveUser,
    ActiveUsers,
    Coordinates,
    HistoryEntry,
    HistoryItem,
    LocationRecord,
    StoredUser,
    normalize_address,
)

log = structlog.get_logger("coordinator")

MAX_BATCH_OPERATIONS = 10


class LocationCoordinator:
    """
    Front door of the tracking core.

    Writes go to the cache synchronously; the matching store writes are fired
    without waiting, and every location update is queued for the history batcher.

    list_active() is cache-first: if the cache holds at least one tracking user
    the store is not queried at all. Only a cache with no tracking users (for
    instance right after a restart) falls back to the store, and with no store
    configured the answer is empty with source="none".
    """

    def __init__(
        self,
        cache: TTLCache[str, LocationRecord],
        store: Optional[LocationStore] = None,
        batcher: Optional[HistoryBatcher] = None,
        *,
        inactive_threshold_s: float = 300.0,
        store_timeout_s: float = 5.0,
        history_limit: int = 100,
        history_default_limit: int = 50,
        health_cache_ms: int = 5000,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.cache = cache
        self.store = store
        self.batcher = batcher
        self.inactive_threshold_s = inactive_threshold_s
        self.store_timeout_s = store_timeout_s
        self.history_limit = history_limit
        self.history_default_limit = history_default_limit

        self._clock = clock or utc_now_ms
        self._started_ms = self._clock()
        self._bg = FireAndForget(timeout_s=store_timeout_s)
        self._health: TTLCache[str, dict] = TTLCache(health_cache_ms, clock=self._clock)

    @property
    def background(self) -> FireAndForget:
        return self._bg

    # ---------------------------- fast path ---------------------------- #

    def update_location(
        self,
        user_key: str,
        coordinates: Coordinates,
        address: Optional[str] = None,
        is_tracking: bool = True,
    ) -> LocationRecord:
        record = LocationRecord(
            coordinates=coordinates,
            address=normalize_address(address),
            is_tracking=is_tracking,
            last_seen_ms=self._clock(),
        )
        self.cache.set(user_key, record)

        if self.store is not None:
            self._bg.spawn(
                self.store.upsert_user(user_key, record.coordinates, record.address, record.is_tracking),
                "upsert_user",
                user=user_key,
            )
            if self.batcher is not None:
                self.batcher.enqueue(HistoryItem(user_key, record.coordinates, record.address))
        return record

    def heartbeat(self, user_key: str) -> bool:
        """Refresh last-seen in cache (if cached) and store. Returns whether the cache had the user."""
        hit = self._rewrite_cached(user_key, last_seen_ms=self._clock())
        if self.store is not None:
            self._bg.spawn(self.store.touch_last_seen(user_key), "touch_last_seen", user=user_key)
        return hit

    def stop_tracking(self, user_key: str) -> bool:
        hit = self._rewrite_cached(user_key, is_tracking=False, last_seen_ms=self._clock())
        if self.store is not None:
            self._bg.spawn(self.store.set_tracking(user_key, False), "set_tracking", user=user_key)
        return hit

    def _rewrite_cached(self, user_key: str, **changes: Any) -> bool:
        current = self.cache.get(user_key)
        if current is None:
            return False
        self.cache.set(user_key, replace(current, **changes))
        return True

    # ---------------------------- reads ---------------------------- #

    async def list_active(self) -> ActiveUsers:
        snap = self.cache.snapshot()
        users = [_from_record(k, r) for k, r in snap.items() if r.is_tracking]
        if users:
            return ActiveUsers(users=users, source="cache")

        if self.store is None:
            return ActiveUsers(users=[], source="none")

        try:
            rows = await asyncio.wait_for(
                self.store.query_active(self.inactive_threshold_s), timeout=self.store_timeout_s
            )
        except Exception as e:
            log.warning("active_users_query_failed", err=str(e))
            raise
        return ActiveUsers(users=[_from_row(r) for r in rows], source="store")

    async def history(
        self, user_key: str, limit: Optional[int] = None, offset: int = 0
    ) -> list[HistoryEntry]:
        """Newest-first page of a user's history; limit defaults to 50 and is capped at history_limit."""
        if self.store is None:
            return []
        limit = min(limit or self.history_default_limit, self.history_limit)
        limit = max(1, limit)
        offset = max(0, offset)
        try:
            return await asyncio.wait_for(
                self.store.history(user_key, limit, offset), timeout=self.store_timeout_s
            )
        except Exception as e:
            log.warning("history_query_failed", user=user_key, err=str(e))
            raise

    # ---------------------------- misc ---------------------------- #

    async def register_user(self, user_key: str) -> None:
        if self.store is None:
            return
        await asyncio.wait_for(self.store.register_user(user_key), timeout=self.store_timeout_s)

    async def run_batch(self, operations: list[dict]) -> list[bool]:
        """
        Apply up to MAX_BATCH_OPERATIONS heartbeat/update operations directly against
        the store, concurrently. One result per operation: True if it completed.
        """
        if not isinstance(operations, list) or len(operations) > MAX_BATCH_OPERATIONS:
            raise ValueError("invalid batch request")
        return list(await asyncio.gather(*(self._run_op(op) for op in operations)))

    async def _run_op(self, op: dict) -> bool:
        if self.store is None:
            return False
        try:
            kind = op.get("type")
            if kind == "heartbeat":
                aw = self.store.touch_last_seen(op["userId"])
            elif kind == "update":
                loc = op["location"]
                aw = self.store.upsert_user(
                    op["userId"],
                    Coordinates(lat=float(loc["lat"]), lng=float(loc["lng"])),
                    normalize_address(op.get("address")),
                    op.get("isTracking") is not False,
                )
            else:
                return False
            await asyncio.wait_for(aw, timeout=self.store_timeout_s)
        except Exception as e:
            log.warning("batch_operation_failed", op=op.get("type") if isinstance(op, dict) else None, err=str(e))
            return False
        return True

    async def health(self) -> dict:
        cached = self._health.get("health")
        if cached is not None:
            return dict(cached)

        if self.store is None:
            database = "disconnected"
        else:
            try:
                ok = await asyncio.wait_for(self.store.ping(), timeout=self.store_timeout_s)
                database = "connected" if ok else "error"
            except Exception as e:
                log.warning("health_ping_failed", err=str(e))
                database = "error"

        now = self._clock()
        result = {
            "status": "healthy",
            "database": database,
            "active_users": self.cache.size(),
            "uptime_s": max(0, now - self._started_ms) // 1000,
        }
        self._health.set("health", result)
        return dict(result)


def _from_record(user_key: str, r: LocationRecord) -> ActiveUser:
    return ActiveUser(
        userId=user_key,
        location=r.coordinates.as_dict(),
        address=r.address,
        isTracking=r.is_tracking,
        lastSeen=iso_ms(r.last_seen_ms),
    )


def _from_row(row: StoredUser) -> ActiveUser:
    return ActiveUser(
        userId=row.user_key,
        location=row.coordinates.as_dict(),
        address=row.address,
        isTracking=row.is_tracking,
        lastSeen=iso_ms(row.last_seen_s * 1000),
    )
