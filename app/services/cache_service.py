"""
Cache Service for hot-path affiliate lookups.

Referral resolution runs on every tracked page visit, so resolved affiliate
references are cached by referral code.

Supports:
1. Redis (preferred for production)
2. In-memory fallback (for development/testing)

Usage:
    cache = build_cache(settings)          # once, in the app lifespan
    ref = await cache.get_affiliate_ref(code)
    await cache.invalidate_affiliate_ref(code)
"""
import json
from typing import Any, Optional, Dict
from datetime import datetime, timedelta, timezone
from abc import ABC, abstractmethod
import asyncio
import logging

import redis.asyncio as redis

from app.config import Settings, settings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract cache backend interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in cache with TTL (seconds)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key from cache."""
        pass

    async def close(self) -> None:
        pass


class InMemoryCache(CacheBackend):
    """
    In-memory cache for development/fallback.

    Not shared across server instances; prefer Redis in production.
    """

    def __init__(self):
        self._cache: Dict[str, tuple[Any, datetime]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            if key in self._cache:
                value, expires_at = self._cache[key]
                if expires_at > datetime.now(timezone.utc):
                    return value
                del self._cache[key]
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        async with self._lock:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
            self._cache[key] = (value, expires_at)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False


class RedisCache(CacheBackend):
    """
    Redis cache backend for production.

    A cache outage degrades to cache misses; errors are logged, not raised.
    """

    def __init__(self, redis_url: str):
        self._client = redis.from_url(redis_url, decode_responses=True)

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self._client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET failed for {key}: {e}")
            return None
        return json.loads(value) if value else None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        try:
            await self._client.set(key, json.dumps(value), ex=ttl)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis SET failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self._client.delete(key)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis DELETE failed for {key}: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()


class CacheService:
    """
    Namespaced cache with affiliate-specific helpers.

    Cache keys follow the format ``{namespace}:{resource_type}:{identifier}``,
    e.g. ``affiliates:ref:AB12CD34``.
    """

    def __init__(self, backend: CacheBackend, namespace: str = "affiliates", ttl: Optional[int] = None):
        self._backend = backend
        self._namespace = namespace
        self._ttl = ttl or settings.REFERRAL_CACHE_TTL

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    def _make_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        return await self._backend.get(self._make_key(key))

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return await self._backend.set(self._make_key(key), value, ttl or self._ttl)

    async def delete(self, key: str) -> bool:
        return await self._backend.delete(self._make_key(key))

    # ==================== Referral Cache ====================

    @staticmethod
    def _ref_key(code: str) -> str:
        return f"ref:{code.upper()}"

    async def get_affiliate_ref(self, code: str) -> Optional[dict]:
        """Get a cached, resolved affiliate reference."""
        return await self.get(self._ref_key(code))

    async def set_affiliate_ref(self, code: str, data: dict) -> bool:
        return await self.set(self._ref_key(code), data)

    async def invalidate_affiliate_ref(self, code: str) -> bool:
        return await self.delete(self._ref_key(code))

    async def close(self) -> None:
        await self._backend.close()


def build_cache(config: Settings = settings) -> Optional[CacheService]:
    """Create the cache service for the configured backend, or None when disabled."""
    if not config.CACHE_ENABLED:
        logger.info("Referral cache disabled")
        return None
    if config.REDIS_URL:
        logger.info("Using Redis cache backend")
        backend: CacheBackend = RedisCache(config.REDIS_URL)
    else:
        logger.info("Using in-memory cache backend (Redis not configured)")
        backend = InMemoryCache()
    return CacheService(backend, ttl=config.REFERRAL_CACHE_TTL)
