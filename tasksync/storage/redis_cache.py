from __future__ import annotations

import hashlib
import time
from typing import Any, Awaitable, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tasksync.logging import get_logger
from tasksync.storage.errors import CacheUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for one-time codes, refresh tokens and rate limits.

    Every method touches a single namespaced key. Redis failures surface as
    :class:`CacheUnavailable` so callers never see driver exceptions.
    """

    # Lua token bucket: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tostring(tokens), 0}
"""

    # Delete only when the stored value still matches: single-use consume
    _COMPARE_AND_DELETE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and current == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    # Replace only when the stored value still matches: refresh rotation
    _COMPARE_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and current == ARGV[1] then
  redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
  return 1
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._compare_and_delete = self.client.register_script(
            self._COMPARE_AND_DELETE_SCRIPT
        )
        self._compare_and_set = self.client.register_script(
            self._COMPARE_AND_SET_SCRIPT
        )

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except RedisError as exc:
            logger.error("cache_operation_failed", operation=operation, error=str(exc))
            raise CacheUnavailable(operation, exc) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived synchronous client so the async one is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.client.ping()))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call("set", self.client.set(key, value, ex=max(1, int(ttl_seconds))))

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(key))

    async def delete(self, key: str) -> None:
        await self._call("delete", self.client.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", self.client.exists(key)))

    async def ttl(self, key: str) -> int:
        """Seconds until ``key`` expires, or ``-1`` when it is absent."""

        remaining = int(await self._call("ttl", self.client.ttl(key)))
        # Redis answers -2 for a missing key and -1 for a key without expiry;
        # every key written here carries a TTL so both mean "nothing live".
        return remaining if remaining >= 0 else -1

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        deleted = await self._call(
            "compare_and_delete",
            self._compare_and_delete(keys=[key], args=[expected]),
        )
        return bool(int(deleted))

    async def compare_and_set(
        self, key: str, expected: str, value: str, ttl_seconds: int
    ) -> bool:
        swapped = await self._call(
            "compare_and_set",
            self._compare_and_set(
                keys=[key], args=[expected, value, max(1, int(ttl_seconds))]
            ),
        )
        return bool(int(swapped))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so user-controlled text cannot forge keys."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._call(
            "check_rate_limit",
            self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            ),
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
