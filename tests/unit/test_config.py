import pytest

from tracker.config import TrackerConfig, config_from_env


def test_defaults_match_service_constants():
    cfg = config_from_env({})
    assert cfg == TrackerConfig()
    assert cfg.cache_ttl_ms == 3000
    assert cfg.history_batch_size == 10
    assert cfg.history_flush_interval_ms == 5000
    assert cfg.inactive_threshold_s == 300.0
    assert cfg.cleanup_interval_ms == 60_000
    assert cfg.store_enabled is True


def test_env_overrides():
    cfg = config_from_env({
        "REDIS_URL": "redis://cache:6380/2",
        "CACHE_TTL_MS": "1500",
        "HISTORY_BATCH_SIZE": "25",
        "INACTIVE_THRESHOLD_MS": "90000",
        "STORE_TIMEOUT_S": "0.5",
        "STORE_ENABLED": "false",
        "HISTORY_LIMIT": "",
    })
    assert cfg.redis_url == "redis://cache:6380/2"
    assert cfg.cache_ttl_ms == 1500
    assert cfg.history_batch_size == 25
    assert cfg.inactive_threshold_s == 90.0
    assert cfg.store_timeout_s == 0.5
    assert cfg.store_enabled is False
    assert cfg.history_limit == 100


@pytest.mark.parametrize("name,value", [
    ("CACHE_TTL_MS", "soon"),
    ("HISTORY_BATCH_SIZE", "0"),
    ("STORE_TIMEOUT_S", "-1"),
    ("STORE_ENABLED", "ture"),
])
def test_invalid_values_name_the_variable(name, value):
    with pytest.raises(ValueError, match=name):
        config_from_env({name: value})


@pytest.mark.parametrize("value,expected", [
    ("1", True), ("Yes", True), (" true ", True),
    ("0", False), ("no", False), ("FALSE", False),
])
def test_store_enabled_accepts_both_spellings(value, expected):
    assert config_from_env({"STORE_ENABLED": value}).store_enabled is expected
