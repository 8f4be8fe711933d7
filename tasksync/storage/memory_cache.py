from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple, Union


class MemoryCache:
    """In-process stand-in for :class:`RedisCache` used in tests and local dev.

    Mirrors the Redis cache contract key for key. Each method runs under a
    single lock so conditional operations stay atomic across threads and
    interleaved coroutines. ``clock`` returns epoch seconds and can be swapped
    to force expiry in tests.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, float]] = {}
        self._buckets: Dict[str, Tuple[float, float]] = {}

    def _live(self, key: str, now: float) -> Optional[str]:
        """Return the value for ``key`` if not expired. Caller holds the lock."""

        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._values[key]
            return None
        return value

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key, self._clock())

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock()) is not None

    async def ttl(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            if self._live(key, now) is None:
                return -1
            _, expires_at = self._values[key]
            # Redis rounds remaining TTL down to whole seconds
            return max(0, int(expires_at - now))

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            if self._live(key, self._clock()) != expected:
                return False
            del self._values[key]
            return True

    async def compare_and_set(
        self, key: str, expected: str, value: str, ttl_seconds: int
    ) -> bool:
        with self._lock:
            now = self._clock()
            if self._live(key, now) != expected:
                return False
            self._values[key] = (value, now + max(1, int(ttl_seconds)))
            return True

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        cost = max(1, cost)
        with self._lock:
            now = self._clock()
            tokens, last_ts = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
            reset_seconds = (
                int((cost - tokens) / refill_rate) + 1
                if not allowed and refill_rate > 0
                else 0
            )
            remaining = int(tokens)
        if return_remaining:
            return (allowed, remaining, reset_seconds)
        return allowed

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._buckets.clear()
