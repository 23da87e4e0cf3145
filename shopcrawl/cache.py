"""Tag-based invalidation of the read-side cache.

Redis has no native cache tags, so each tag is a set holding the keys
stored under it. Invalidating a tag deletes those keys and the set itself.
Backends without tag support fall back to a no-op instead of a full flush.
"""

import logging
from typing import Iterable, Optional, Protocol

import redis.asyncio as redis

from shopcrawl.config import settings

logger = logging.getLogger(__name__)


class CacheInvalidator(Protocol):
    async def invalidate_tags(self, tags: Iterable[str]) -> int: ...

    async def close(self) -> None: ...


class NullCache:
    """Cache backend without tag support; invalidation is a logged no-op."""

    supports_tags = False

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        logger.debug(f"Cache backend has no tag support, skipping invalidation of {list(tags)}")
        return 0

    async def close(self) -> None:
        return None


class RedisTagCache:
    """Redis-backed cache with tag sets."""

    supports_tags = True

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url or settings.redis_url
        self.prefix = prefix or settings.cache_tag_prefix
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _tag_key(self, tag: str) -> str:
        return f"{self.prefix}:tag:{tag}"

    def _cache_key(self, key: str) -> str:
        return f"{self.prefix}:cache:{key}"

    async def remember(self, key: str, value: str, tags: Iterable[str], ttl_seconds: int = 1800) -> None:
        """Store a value and register it under the given tags."""
        client = await self._get_redis()
        cache_key = self._cache_key(key)
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(cache_key, value, ex=ttl_seconds)
            for tag in tags:
                pipe.sadd(self._tag_key(tag), cache_key)
            await pipe.execute()

    async def get(self, key: str) -> Optional[str]:
        client = await self._get_redis()
        return await client.get(self._cache_key(key))

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Delete every key registered under the tags; returns keys removed."""
        tags = list(tags)
        client = await self._get_redis()
        removed = 0
        for tag in tags:
            tag_key = self._tag_key(tag)
            members = await client.smembers(tag_key)
            if members:
                removed += await client.delete(*members)
            await client.delete(tag_key)
        logger.info(f"Invalidated cache tags {list(tags)} ({removed} keys)")
        return removed


def build_cache(backend: Optional[str] = None) -> CacheInvalidator:
    """Create the configured cache invalidator."""
    backend = backend or settings.cache_backend
    if backend == "redis":
        return RedisTagCache()
    return NullCache()


async def invalidate_quietly(cache: Optional[CacheInvalidator], tags: Iterable[str]) -> bool:
    """Advisory invalidation: failures are logged, never raised."""
    if cache is None:
        return False
    tags = list(tags)
    try:
        await cache.invalidate_tags(tags)
        return True
    except Exception as e:
        logger.warning(f"Cache invalidation for tags {tags} failed: {e}")
        return False
