# backend/utils/cache.py
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from utils.errors import TransportError

logger = logging.getLogger(__name__)

# Generation counters outlive any cached value they guard
GENERATION_TTL_SECONDS = 7 * 24 * 3600


def generation_key(key: str) -> str:
    return f"{key}:generation"


class Cache(ABC):
    """
    Simple string cache. Implementations raise TransportError when the backend is unreachable.

    Every key has a generation counter. Writers bump it when the underlying data
    changes; readers take it before loading from the source of truth and store
    with ``set_if_generation``, which refuses the write if a change happened
    in between.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def invalidate(self, key: str) -> None: ...

    @abstractmethod
    async def generation(self, key: str) -> int: ...

    @abstractmethod
    async def bump_generation(self, key: str) -> None: ...

    @abstractmethod
    async def set_if_generation(self, key: str, value: str, ttl_seconds: int, generation: int) -> bool: ...

    async def close(self) -> None:
        return None


class NullCache(Cache):
    async def get(self, key: str) -> Optional[str]:
        return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        return None

    async def invalidate(self, key: str) -> None:
        return None

    async def generation(self, key: str) -> int:
        return 0

    async def bump_generation(self, key: str) -> None:
        return None

    async def set_if_generation(self, key: str, value: str, ttl_seconds: int, generation: int) -> bool:
        return False


class MemoryCache(Cache):
    """Process-local cache with absolute expiry, for single-instance runs and tests."""

    def __init__(self):
        self._data: Dict[str, Tuple[str, float]] = {}
        self._generations: Dict[str, int] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at < time.monotonic():
            self._data.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = (value, time.monotonic() + ttl_seconds)

    async def invalidate(self, key: str) -> None:
        self._data.pop(key, None)

    async def generation(self, key: str) -> int:
        return self._generations.get(key, 0)

    async def bump_generation(self, key: str) -> None:
        self._generations[key] = self._generations.get(key, 0) + 1

    async def set_if_generation(self, key: str, value: str, ttl_seconds: int, generation: int) -> bool:
        # No await between the check and the write
        if self._generations.get(key, 0) != generation:
            return False
        self._data[key] = (value, time.monotonic() + ttl_seconds)
        return True


class RedisCache(Cache):
    def __init__(self, url: str, client: Optional[redis.Redis] = None):
        self.url = url
        self._client = client or redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise TransportError(f"Cache get failed for {key}: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except RedisError as e:
            raise TransportError(f"Cache set failed for {key}: {e}") from e

    async def invalidate(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as e:
            raise TransportError(f"Cache invalidate failed for {key}: {e}") from e

    async def generation(self, key: str) -> int:
        try:
            return int(await self._client.get(generation_key(key)) or 0)
        except RedisError as e:
            raise TransportError(f"Cache generation read failed for {key}: {e}") from e

    async def bump_generation(self, key: str) -> None:
        try:
            await self._client.pipeline(transaction=True).incr(generation_key(key)).expire(
                generation_key(key), GENERATION_TTL_SECONDS
            ).execute()
        except RedisError as e:
            raise TransportError(f"Cache generation bump failed for {key}: {e}") from e

    async def set_if_generation(self, key: str, value: str, ttl_seconds: int, generation: int) -> bool:
        guard = generation_key(key)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                # WATCH aborts the SET if a writer bumps the generation before EXEC
                await pipe.watch(guard)
                current = int(await pipe.get(guard) or 0)
                if current != generation:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, value, ex=ttl_seconds)
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as e:
            raise TransportError(f"Cache set failed for {key}: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


def create_cache(url: str) -> Cache:
    if not url:
        return NullCache()
    if url.startswith("memory://"):
        return MemoryCache()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisCache(url)
    raise ValueError(f"Unsupported CACHE_URL: {url}")
