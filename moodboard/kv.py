"""Minimal durable key-value interface shared by the backoff store and response cache.

Only single-key get/set/delete with an optional expiry is needed; each
resource key's state is independent so no transactions are involved.
"""
from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """get/set-with-expiry/delete over string values."""

    name: str = 'base'

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    def ping(self) -> bool:
        return True


class RedisKV(KeyValueStore):
    name = 'redis'

    def __init__(self, client: 'redis.Redis', prefix: str = ''):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = '', timeout: float = 2.0) -> 'RedisKV':
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client, prefix=prefix)

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[str]:
        return self.client.get(self._k(key))

    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        if ttl_seconds is not None and ttl_seconds > 0:
            # Redis expiries are whole seconds; round up so a record never dies early
            self.client.set(self._k(key), value, ex=max(1, int(ttl_seconds + 0.999)))
        else:
            self.client.set(self._k(key), value)

    def delete(self, key: str) -> None:
        self.client.delete(self._k(key))

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False


class MemoryKV(KeyValueStore):
    """Process-local store for development and tests. Not shared across instances."""

    name = 'memory'

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            hit = self._data.get(key)
            if hit is None:
                return None
            value, expires_at = hit
            if expires_at is not None and expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


def kv_from_config(config) -> KeyValueStore:
    """Redis when ``REDIS_URL`` is configured and reachable, else an in-process store."""
    url = config.get('REDIS_URL')
    prefix = config.get('KV_PREFIX', '')
    if not url:
        logger.warning('REDIS_URL not set; using in-process key-value store (state is per instance)')
        return MemoryKV()
    store = RedisKV.from_url(url, prefix=prefix)
    if store.ping():
        logger.info('Redis connected: %s', url.split('@')[-1])
    else:
        # Keep the Redis store anyway: backoff fails open and the cache degrades to misses
        logger.error('Redis not reachable at startup: %s', url.split('@')[-1])
    return store


__all__ = ['KeyValueStore', 'RedisKV', 'MemoryKV', 'kv_from_config']
