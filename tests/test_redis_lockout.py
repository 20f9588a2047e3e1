import hashlib
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from expensegate.service.errors import StoreUnavailableError
from expensegate.service.lockout import LockoutTracker
from expensegate.storage.errors import StoreUnavailable
from expensegate.storage.redis_cache import RedisCache

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _cache(script_result=None, script_error=None):
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unused"
    cache.client = AsyncMock()
    cache._increment_attempt = AsyncMock(return_value=script_result, side_effect=script_error)
    return cache


def test_lockout_key_hashes_the_ip():
    expected = "lockout:" + hashlib.sha256(b"10.0.0.1").hexdigest()

    assert RedisCache._lockout_key("10.0.0.1") == expected


def test_increment_script_resets_on_elapsed_window():
    script = RedisCache._INCREMENT_ATTEMPT_SCRIPT

    assert "(now - last) >= window" in script
    assert "attempts = 1" in script
    assert "EXPIRE" not in script.upper()


async def test_increment_attempt_runs_script_atomically():
    cache = _cache(script_result=5)

    record = await cache.increment_attempt("10.0.0.1", NOW, timedelta(minutes=60))

    assert record.attempts == 5
    assert record.ip_address == "10.0.0.1"
    assert record.last_attempt_at == NOW
    cache._increment_attempt.assert_awaited_once_with(
        keys=[RedisCache._lockout_key("10.0.0.1")],
        args=[NOW.timestamp(), 3600.0],
    )


async def test_connection_error_is_store_unavailable():
    cache = _cache(script_error=RedisConnectionError("refused"))

    with pytest.raises(StoreUnavailable) as excinfo:
        await cache.increment_attempt("10.0.0.1", NOW, timedelta(minutes=60))
    assert excinfo.value.backend == "redis"


async def test_get_lockout_parses_hash():
    cache = _cache()
    cache.client.hgetall.return_value = {"attempts": "7", "last": str(NOW.timestamp())}

    record = await cache.get_lockout("10.0.0.1")

    assert record.attempts == 7
    assert record.last_attempt_at == NOW


async def test_get_lockout_missing_key():
    cache = _cache()
    cache.client.hgetall.return_value = {}

    assert await cache.get_lockout("10.0.0.1") is None


async def test_tracker_awaits_async_backend(gate_config, clock):
    cache = _cache(script_result=5)
    tracker = LockoutTracker(cache, gate_config, clock=clock)

    decision = await tracker.record_attempt("10.0.0.1")

    assert not decision.allowed
    assert decision.attempts == 5


async def test_tracker_maps_redis_outage(gate_config, clock):
    cache = _cache(script_error=RedisConnectionError("refused"))
    tracker = LockoutTracker(cache, gate_config, clock=clock)

    with pytest.raises(StoreUnavailableError):
        await tracker.record_attempt("10.0.0.1")
