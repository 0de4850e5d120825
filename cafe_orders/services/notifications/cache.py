"""
Unread Notification Counter Cache

Polling clients ask for their unread count every few seconds, so the value
is cached briefly in Redis. Any write that changes a user's notifications
invalidates the cached value.

Two implementations share one interface:
    - RedisUnreadCountCache: production, backed by Redis
    - NullUnreadCountCache: caching disabled (CACHE_ENABLED=false)
"""

import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Optional

import redis

from cafe_orders.core.config import get_settings

logger = logging.getLogger(__name__)


class BaseUnreadCountCache(ABC):
    """Abstract base class for unread-count caches."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    def get(self, user_id: int) -> Optional[int]:
        """Cached count, or None on a miss."""
        pass

    @abstractmethod
    def set(self, user_id: int, count: int) -> None:
        pass

    @abstractmethod
    def invalidate(self, user_id: int) -> None:
        pass

    def health_check(self) -> bool:
        return True


class NullUnreadCountCache(BaseUnreadCountCache):
    """Never caches; every lookup is a miss."""

    @property
    def provider_name(self) -> str:
        return "disabled"

    def get(self, user_id: int) -> Optional[int]:
        return None

    def set(self, user_id: int, count: int) -> None:
        return None

    def invalidate(self, user_id: int) -> None:
        return None


class RedisUnreadCountCache(BaseUnreadCountCache):
    """
    Redis-backed cache.

    Redis outages never fail a request: errors are logged and treated as a
    cache miss.
    """

    def __init__(self, url: str, ttl_seconds: int):
        self.client = redis.Redis.from_url(url, socket_timeout=2, socket_connect_timeout=2)
        self.ttl_seconds = ttl_seconds
        logger.info(f"RedisUnreadCountCache initialized (ttl={ttl_seconds}s)")

    @property
    def provider_name(self) -> str:
        return "redis"

    @staticmethod
    def _key(user_id: int) -> str:
        return f"notification_count_user_{user_id}"

    def get(self, user_id: int) -> Optional[int]:
        try:
            value = self.client.get(self._key(user_id))
        except redis.RedisError as e:
            logger.warning(f"Unread count cache read failed: {e}")
            return None
        return int(value) if value is not None else None

    def set(self, user_id: int, count: int) -> None:
        try:
            self.client.setex(self._key(user_id), self.ttl_seconds, count)
        except redis.RedisError as e:
            logger.warning(f"Unread count cache write failed: {e}")

    def invalidate(self, user_id: int) -> None:
        try:
            self.client.delete(self._key(user_id))
        except redis.RedisError as e:
            logger.warning(f"Unread count cache invalidation failed: {e}")

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False


@lru_cache()
def get_unread_count_cache() -> BaseUnreadCountCache:
    """Get the configured unread-count cache."""
    settings = get_settings()

    if not settings.cache_enabled:
        logger.info("Unread count cache: disabled")
        return NullUnreadCountCache()

    return RedisUnreadCountCache(settings.redis_url, settings.unread_count_cache_ttl)


def reset_unread_count_cache() -> None:
    """Clear the cached cache instance."""
    get_unread_count_cache.cache_clear()
