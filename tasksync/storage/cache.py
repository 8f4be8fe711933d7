from __future__ import annotations

from typing import Optional, Protocol, Tuple, Union


class KeyValueCache(Protocol):
    """Operations the session services need from a TTL key-value cache.

    Implemented by :class:`tasksync.storage.redis_cache.RedisCache` and
    :class:`tasksync.storage.memory_cache.MemoryCache`.
    """

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def compare_and_delete(self, key: str, expected: str) -> bool: ...

    async def compare_and_set(
        self, key: str, expected: str, value: str, ttl_seconds: int
    ) -> bool: ...

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]: ...

    async def ping(self) -> bool: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...
