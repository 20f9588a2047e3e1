from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from expensegate.storage.common import normalize_ip_address, to_utc
from expensegate.storage.errors import StoreUnavailable
from expensegate.storage.models import LockoutRecord


class RedisCache:
    """Redis-backed lockout counters shared by every gate process."""

    # Atomic reset-or-increment of one IP's counter. Records never expire.
    _INCREMENT_ATTEMPT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local data = redis.call('HMGET', key, 'attempts', 'last')
local attempts = tonumber(data[1])
local last = tonumber(data[2])

if attempts == nil or last == nil or (now - last) >= window then
  attempts = 1
else
  attempts = attempts + 1
end

redis.call('HSET', key, 'attempts', attempts, 'last', ARGV[1])
return attempts
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment_attempt = self.client.register_script(
            self._INCREMENT_ATTEMPT_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling Redis-backed lockouts."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _lockout_key(ip_text: str) -> str:
        digest = hashlib.sha256(ip_text.encode()).hexdigest()
        return f"lockout:{digest}"

    async def increment_attempt(
        self, ip_addr: str, now: datetime, window: timedelta
    ) -> LockoutRecord:
        ip_text = normalize_ip_address(ip_addr)
        now = to_utc(now)
        try:
            attempts = await self._increment_attempt(
                keys=[self._lockout_key(ip_text)],
                args=[now.timestamp(), window.total_seconds()],
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("redis unavailable", backend="redis") from exc
        return LockoutRecord(
            ip_address=ip_text, attempts=int(attempts), last_attempt_at=now
        )

    async def get_lockout(self, ip_addr: str) -> LockoutRecord | None:
        ip_text = normalize_ip_address(ip_addr)
        try:
            data = await self.client.hgetall(self._lockout_key(ip_text))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("redis unavailable", backend="redis") from exc
        if not data:
            return None
        return LockoutRecord(
            ip_address=ip_text,
            attempts=int(data["attempts"]),
            last_attempt_at=datetime.fromtimestamp(float(data["last"]), tz=timezone.utc),
        )

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown or runtime reset."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
