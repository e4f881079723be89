from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, TypedDict

from tracker.utils.time import iso_ms

MAX_ADDRESS_LEN = 512
DEFAULT_ADDRESS = "Unknown"

# ---- location primitives ----

@dataclass(slots=True, frozen=True)
class Coordinates:
    lat: float  # [-90, 90]
    lng: float  # [-180, 180]

    def as_dict(self) -> dict:
        return {"lat": self.lat, "lng": self.lng}


def normalize_address(address: str | None) -> str:
    if not address:
        return DEFAULT_ADDRESS
    return address[:MAX_ADDRESS_LEN]


@dataclass(slots=True, frozen=True)
class LocationRecord:
    """
    Latest known state of one user, as held by the cache.
    Immutable: updates build a new record (see dataclasses.replace).
    """
    coordinates: Coordinates
    address: str = DEFAULT_ADDRESS
    is_tracking: bool = True
    last_seen_ms: int = 0


@dataclass(slots=True, frozen=True)
class HistoryItem:
    """Write-once fact queued for a durable history append."""
    user_key: str
    coordinates: Coordinates
    address: str


# ---- store-facing rows ----

@dataclass(slots=True, frozen=True)
class StoredUser:
    """Row returned by the store's active-users query."""
    user_key: str
    coordinates: Coordinates
    address: str
    is_tracking: bool
    last_seen_s: float


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    coordinates: Coordinates
    address: str
    tracked_at_ms: int

    def to_dict(self) -> dict:
        return {
            "location": self.coordinates.as_dict(),
            "address": self.address,
            "trackedAt": iso_ms(self.tracked_at_ms),
        }


# ---- read results ----

Source = Literal["cache", "store", "none"]


class ActiveUser(TypedDict):
    userId: str
    location: dict
    address: str
    isTracking: bool
    lastSeen: str


@dataclass(slots=True)
class ActiveUsers:
    users: list[ActiveUser] = field(default_factory=list)
    source: Source = "none"

    @property
    def count(self) -> int:
        return len(self.users)

    def to_dict(self) -> dict:
        return {"users": list(self.users), "count": self.count, "source": self.source}
