from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding shared rate-limit counters."""

    # Fixed window: INCR and first-hit EXPIRE in one atomic step. A key left
    # without a TTL (e.g. by a crash between commands elsewhere) is repaired.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])

local current = redis.call('INCR', key)
if current == 1 then
  redis.call('EXPIRE', key, window)
end

local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
return {current, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(scope: str, subject: str) -> str:
        """Build a collision-resistant counter key.

        The subject (usually a client address) is hashed so delimiter
        characters in it cannot alias another scope's key.
        """

        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"rate:{scope}:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def increment_window(
        self, scope: str, subject: str, window_seconds: int
    ) -> Tuple[int, int]:
        """Count one hit and return ``(hits_in_window, seconds_until_reset)``."""

        safe_key = self._normalize_rate_key(scope, subject)
        current, ttl = await self._fixed_window(keys=[safe_key], args=[window_seconds])
        return int(current), max(0, int(ttl))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes the same awaitable methods as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def increment_window(
        self, scope: str, subject: str, window_seconds: int
    ) -> Tuple[int, int]:
        safe_key = RedisCache._normalize_rate_key(scope, subject)
        current, ttl = self._fixed_window(keys=[safe_key], args=[window_seconds])
        return int(current), max(0, int(ttl))

    async def close(self) -> None:
        self._sync_client.close()
