"""
Redis cache configuration and utilities
Derived read models only; every failure degrades to a miss
"""

import redis.asyncio as redis
from typing import Optional, Any, Union, Iterable
from datetime import timedelta, datetime
from fnmatch import fnmatchcase
import json
import logging

from .config import settings

logger = logging.getLogger(__name__)

class RedisCache:
    """Redis cache manager with in-memory fallback"""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self.redis_client: Optional[redis.Redis] = None
        self._fallback_cache: dict = {}  # In-memory fallback for development and tests
        self._use_redis = False

    async def connect(self):
        """Initialize Redis connection"""
        try:
            self.redis_client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=settings.REDIS_DECODE_RESPONSES,
                max_connections=settings.REDIS_MAX_CONNECTIONS
            )
            await self.redis_client.ping()
            logger.info("Redis connection established")
            self._use_redis = True
        except Exception as e:
            logger.warning(f"Failed to connect to Redis, using in-memory fallback: {e}")
            self._use_redis = False

    async def disconnect(self):
        """Close Redis connection"""
        if self.redis_client:
            await self.redis_client.aclose()
            logger.info("Redis connection closed")

    @property
    def _redis_ready(self) -> bool:
        return self._use_redis and self.redis_client is not None

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache"""
        try:
            if self._redis_ready:
                value = await self.redis_client.get(key)
                return json.loads(value) if value else None

            cache_item = self._fallback_cache.get(key)
            if cache_item:
                # Check expiry
                if cache_item.get('expires_at') and datetime.now() > cache_item['expires_at']:
                    del self._fallback_cache[key]
                    return None
                return json.loads(cache_item['value'])
            return None
        except Exception as e:
            logger.error(f"Cache get error for {key}: {e}")
            return None

    async def set(
        self,
        key: str,
        value: Any,
        expire: Optional[Union[int, timedelta]] = None
    ) -> bool:
        """Set JSON-serialisable value with optional expiration"""
        try:
            payload = json.dumps(value, default=str)
            if isinstance(expire, timedelta):
                expire = int(expire.total_seconds())

            if self._redis_ready:
                if expire:
                    return bool(await self.redis_client.setex(key, expire, payload))
                return bool(await self.redis_client.set(key, payload))

            cache_item = {'value': payload}
            if expire:
                cache_item['expires_at'] = datetime.now() + timedelta(seconds=expire)
            self._fallback_cache[key] = cache_item
            return True
        except Exception as e:
            logger.error(f"Cache set error for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """Delete key from cache"""
        try:
            if self._redis_ready:
                return bool(await self.redis_client.delete(key))
            return self._fallback_cache.pop(key, None) is not None
        except Exception as e:
            logger.error(f"Cache delete error for {key}: {e}")
            return False

    async def delete_many(self, keys: Iterable[str]) -> int:
        """Delete several keys in one round trip"""
        keys = [k for k in keys if k]
        if not keys:
            return 0
        try:
            if self._redis_ready:
                return await self.redis_client.delete(*keys)
            return sum(1 for k in keys if self._fallback_cache.pop(k, None) is not None)
        except Exception as e:
            logger.warning(f"Cache delete_many error: {e}")
            return 0

    async def delete_pattern(self, pattern: str, batch_size: int = 500) -> int:
        """Delete all keys matching a glob pattern"""
        deleted = 0
        try:
            if self._redis_ready:
                batch = []
                async for key in self.redis_client.scan_iter(match=pattern, count=batch_size):
                    batch.append(key)
                    if len(batch) >= batch_size:
                        deleted += await self.redis_client.unlink(*batch)
                        batch = []
                if batch:
                    deleted += await self.redis_client.unlink(*batch)
                return deleted

            for key in [k for k in self._fallback_cache if fnmatchcase(k, pattern)]:
                del self._fallback_cache[key]
                deleted += 1
            return deleted
        except Exception as e:
            logger.warning(f"Cache delete pattern error for {pattern}: {e}")
            return deleted

# Global cache instance
cache = RedisCache()
