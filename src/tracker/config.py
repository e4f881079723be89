from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(slots=True)
class TrackerConfig:
    redis_url: str = "redis://localhost:6379/0"
    store_enabled: bool = True
    cache_ttl_ms: int = 3_000
    history_batch_size: int = 10
    history_flush_interval_ms: int = 5_000
    inactive_threshold_ms: int = 5 * 60 * 1000
    cleanup_interval_ms: int = 60 * 1000
    history_limit: int = 100
    history_default_limit: int = 50
    store_timeout_s: float = 5.0
    health_cache_ms: int = 5_000

    @property
    def inactive_threshold_s(self) -> float:
        return self.inactive_threshold_ms / 1000.0


def _int(env, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        v = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if v <= 0:
        raise ValueError(f"{name} must be > 0, got {v}")
    return v


def _float(env, name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        v = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if v <= 0:
        raise ValueError(f"{name} must be > 0, got {v}")
    return v


def _bool(env, name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes"):
        return True
    if v in ("0", "false", "no"):
        return False
    raise ValueError(f"{name} must be one of 1/true/yes/0/false/no, got {raw!r}")


def config_from_env(env=None) -> TrackerConfig:
    """Build config from environment variables (call load_dotenv() first to pick up .env)."""
    env = os.environ if env is None else env
    d = TrackerConfig()
    return TrackerConfig(
        redis_url=env.get("REDIS_URL", d.redis_url),
        store_enabled=_bool(env, "STORE_ENABLED", d.store_enabled),
        cache_ttl_ms=_int(env, "CACHE_TTL_MS", d.cache_ttl_ms),
        history_batch_size=_int(env, "HISTORY_BATCH_SIZE", d.history_batch_size),
        history_flush_interval_ms=_int(env, "HISTORY_FLUSH_INTERVAL_MS", d.history_flush_interval_ms),
        inactive_threshold_ms=_int(env, "INACTIVE_THRESHOLD_MS", d.inactive_threshold_ms),
        cleanup_interval_ms=_int(env, "CLEANUP_INTERVAL_MS", d.cleanup_interval_ms),
        history_limit=_int(env, "HISTORY_LIMIT", d.history_limit),
        history_default_limit=_int(env, "HISTORY_DEFAULT_LIMIT", d.history_default_limit),
        store_timeout_s=_float(env, "STORE_TIMEOUT_S", d.store_timeout_s),
        health_cache_ms=_int(env, "HEALTH_CACHE_MS", d.health_cache_ms),
    )
