"""Store ports used by the tracker core. Implementations live next to this module."""

from __future__ import annotations

from typing import Protocol, Sequence

from tracker.utils.types import Coordinates, HistoryEntry, HistoryItem, StoredUser


class LocationWriter(Protocol):
    """Port: writes user state and history. Everything except append_history_batch is idempotent."""

    async def upsert_user(
        self, user_key: str, coordinates: Coordinates, address: str, is_tracking: bool
    ) -> None: ...

    async def append_history_batch(self, items: Sequence[HistoryItem]) -> None: ...

    async def mark_inactive(self, threshold_s: float) -> int: ...

    async def touch_last_seen(self, user_key: str) -> None: ...

    async def set_tracking(self, user_key: str, is_tracking: bool) -> None: ...

    async def register_user(self, user_key: str) -> None: ...


class LocationReader(Protocol):
    """Port: reads user state and history."""

    async def query_active(self, threshold_s: float) -> list[StoredUser]: ...

    async def history(self, user_key: str, limit: int, offset: int) -> list[HistoryEntry]: ...


class LocationStore(LocationWriter, LocationReader, Protocol):
    """A full store also answers health pings and owns its connection."""

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
