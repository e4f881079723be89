from __future__ import annotations

import time
from datetime import datetime, timezone

# --- epoch helpers (the tracker works in milliseconds) ---

def utc_now_ms() -> int:
    """Unix epoch milliseconds (int)."""
    return time.time_ns() // 1_000_000

def ms_to_s(ms: int) -> float:
    return ms / 1000.0

def s_to_ms(s: float) -> int:
    return int(round(s * 1000))

def utc_dt(ms: int | float) -> datetime:
    """Epoch milliseconds -> timezone-aware UTC datetime."""
    return datetime.fromtimestamp(float(ms) / 1000.0, tz=timezone.utc)

def iso_ms(ms: int | float) -> str:
    """Epoch milliseconds -> ISO-8601 string with millisecond precision and a Z suffix."""
    return utc_dt(ms).isoformat(timespec="milliseconds").replace("+00:00", "Z")

def age_ms(stored_at_ms: int, now_ms: int) -> int:
    """Non-negative age (clamped at 0) so a clock step backwards never looks like expiry."""
    return max(0, now_ms - stored_at_ms)
