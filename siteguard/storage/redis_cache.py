from __future__ import annotations

from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for failure counters, lockouts, and single-use nonces."""

    # Atomic increment of a failure counter. The window starts at the first
    # failure; reaching the threshold records a strike and stretches the TTL to
    # window * 2^(strikes-1), capped at the maximum lockout.
    _FAILURE_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('TTL', KEYS[1])
local window = tonumber(ARGV[1])
local threshold = tonumber(ARGV[2])
local max_lockout = tonumber(ARGV[3])
local strike_ttl = tonumber(ARGV[4])

if count == 1 or ttl < 0 then
  redis.call('EXPIRE', KEYS[1], window)
  ttl = window
end

if count == threshold then
  local strikes = redis.call('INCR', KEYS[2])
  redis.call('EXPIRE', KEYS[2], strike_ttl)
  local lockout = math.floor(math.min(window * (2 ^ (strikes - 1)), max_lockout))
  redis.call('EXPIRE', KEYS[1], lockout)
  ttl = lockout
end

return {count, ttl}
"""

    _ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end
local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
  redis.call('DEL', KEYS[2])
  return {1, attempts}
end
return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._failure_script = self.client.register_script(self._FAILURE_SCRIPT)
        self._attempt_script = self.client.register_script(self._ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    # =========================================================================
    # Login failure counters
    # =========================================================================

    async def get_counter(self, key: str) -> Tuple[int, int]:
        """Return (count, seconds until reset) for a failure counter."""
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.ttl(key)
        raw, ttl = await pipe.execute()
        return (int(raw) if raw else 0, max(0, int(ttl or 0)))

    async def record_failure(
        self,
        key: str,
        strikes_key: str,
        *,
        window_seconds: int,
        threshold: int,
        max_lockout_seconds: int,
        strike_ttl_seconds: int,
    ) -> Tuple[int, int]:
        count, ttl = await self._failure_script(
            keys=[key, strikes_key],
            args=[window_seconds, threshold, max_lockout_seconds, strike_ttl_seconds],
        )
        return int(count), max(0, int(ttl))

    async def clear_counters(self, *keys: str) -> None:
        if keys:
            await self.client.delete(*keys)

    # =========================================================================
    # Two-factor code attempts
    # =========================================================================

    async def check_attempt_lockout(self, subject: str) -> bool:
        return bool(await self.client.exists(f"2fa:lockout:{subject}"))

    async def record_attempt(
        self, subject: str, *, max_attempts: int, window_seconds: int
    ) -> Tuple[bool, int]:
        """Atomically record a failed code attempt; returns (locked_out, attempts)."""
        locked, attempts = await self._attempt_script(
            keys=[f"2fa:lockout:{subject}", f"2fa:attempts:{subject}"],
            args=[max_attempts, window_seconds],
        )
        return bool(int(locked)), int(attempts)

    async def clear_attempts(self, subject: str) -> None:
        await self.client.delete(f"2fa:attempts:{subject}")

    # =========================================================================
    # Single-use nonces
    # =========================================================================

    async def consume_nonce(self, key: str, ttl_seconds: int) -> bool:
        """Mark a nonce as used; False when it was already consumed."""
        return bool(await self.client.set(key, "1", nx=True, ex=max(1, ttl_seconds)))


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues in pytest but
    exposes the same awaitable interface as :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._failure_script = self.client.register_script(RedisCache._FAILURE_SCRIPT)
        self._attempt_script = self.client.register_script(RedisCache._ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def close(self) -> None:
        self.client.close()

    async def get_counter(self, key: str) -> Tuple[int, int]:
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.ttl(key)
        raw, ttl = pipe.execute()
        return (int(raw) if raw else 0, max(0, int(ttl or 0)))

    async def record_failure(
        self,
        key: str,
        strikes_key: str,
        *,
        window_seconds: int,
        threshold: int,
        max_lockout_seconds: int,
        strike_ttl_seconds: int,
    ) -> Tuple[int, int]:
        count, ttl = self._failure_script(
            keys=[key, strikes_key],
            args=[window_seconds, threshold, max_lockout_seconds, strike_ttl_seconds],
        )
        return int(count), max(0, int(ttl))

    async def clear_counters(self, *keys: str) -> None:
        if keys:
            self.client.delete(*keys)

    async def check_attempt_lockout(self, subject: str) -> bool:
        return bool(self.client.exists(f"2fa:lockout:{subject}"))

    async def record_attempt(
        self, subject: str, *, max_attempts: int, window_seconds: int
    ) -> Tuple[bool, int]:
        locked, attempts = self._attempt_script(
            keys=[f"2fa:lockout:{subject}", f"2fa:attempts:{subject}"],
            args=[max_attempts, window_seconds],
        )
        return bool(int(locked)), int(attempts)

    async def clear_attempts(self, subject: str) -> None:
        self.client.delete(f"2fa:attempts:{subject}")

    async def consume_nonce(self, key: str, ttl_seconds: int) -> bool:
        return bool(self.client.set(key, "1", nx=True, ex=max(1, ttl_seconds)))


CounterCache = Optional[RedisCache | SyncRedisCache]
