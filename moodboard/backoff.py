"""Durable per-resource cooldown timestamps written on upstream throttling.

The store fails open: if the key-value backend is unreachable a read reports
"no active backoff" so a throttling dependency never turns into an outage.
"""
from __future__ import annotations

import logging
import time
from typing import Callable

from moodboard.kv import KeyValueStore

logger = logging.getLogger(__name__)


def backoff_key(resource_key: str) -> str:
    return f"backoff:{resource_key}"


class BackoffStore:
    def __init__(self, kv: KeyValueStore, clock: Callable[[], float] = time.time):
        self.kv = kv
        self.clock = clock

    def get(self, resource_key: str) -> float:
        """Epoch seconds until which ``resource_key`` is cooling down, or 0.0."""
        try:
            raw = self.kv.get(backoff_key(resource_key))
        except Exception as e:
            logger.warning('backoff.read_failed %s: %s', resource_key, e,
                           extra={'event': 'backoff_read_failed', 'resource_key': resource_key})
            return 0.0
        if not raw:
            return 0.0
        try:
            return float(raw)
        except (TypeError, ValueError):
            return 0.0

    def set(self, resource_key: str, cooldown_until: float) -> bool:
        ttl = cooldown_until - self.clock()
        if ttl <= 0:
            return True
        try:
            self.kv.set(backoff_key(resource_key), repr(float(cooldown_until)), ttl_seconds=ttl + 1)
        except Exception as e:
            logger.warning('backoff.write_failed %s: %s', resource_key, e,
                           extra={'event': 'backoff_write_failed', 'resource_key': resource_key})
            return False
        logger.warning('backoff.set %s for %.1fs', resource_key, ttl,
                       extra={'event': 'backoff_set', 'resource_key': resource_key,
                              'cooldown_until': cooldown_until})
        return True

    def remaining(self, resource_key: str) -> float:
        return max(0.0, self.get(resource_key) - self.clock())


__all__ = ['BackoffStore', 'backoff_key']
