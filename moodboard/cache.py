"""
Response cache for upstream payloads.
Stores the last good payload per logical resource with its provenance and
fetch time, as compact JSON in the key-value store.
"""
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from moodboard.kv import KeyValueStore

logger = logging.getLogger(__name__)


def iso_now() -> str:
    """Returns current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def iso_from_epoch(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


class Provenance(Enum):
    """Closed set of provenance states a cached payload can carry."""

    CURRENT = 'current'
    LEGACY = 'legacy'


class CorruptCacheEntry(ValueError):
    """Stored value cannot be decoded into a cache entry."""


def parse_provenance(tag: Optional[str], legacy_tags: Iterable[str], current_tags: Iterable[str]) -> Provenance:
    t = (tag or '').strip().lower()
    if not t:
        raise CorruptCacheEntry('missing provenance tag')
    if t == Provenance.LEGACY.value or t in legacy_tags:
        return Provenance.LEGACY
    if t == Provenance.CURRENT.value or t in current_tags:
        return Provenance.CURRENT
    raise CorruptCacheEntry(f'unknown provenance tag {tag!r}')


@dataclass
class CachePolicy:
    """
    Cache behavior configuration.

    - ttl_seconds: How long a payload is considered "fresh" unless the entry carries its own
    - max_age_seconds: Beyond this age an entry is deleted instead of kept for stale-if-error
    """
    ttl_seconds: int = 60
    max_age_seconds: int = 48 * 60 * 60


@dataclass
class CacheEntry:
    key: str
    payload: Dict[str, Any]
    provenance: Provenance
    fetched_at: float
    ttl_seconds: int
    tag: str = Provenance.CURRENT.value

    def age(self, now: float) -> float:
        return max(0.0, now - self.fetched_at)


def _json_dumps(obj: Dict[str, Any]) -> str:
    """Compact JSON encode for KV storage."""
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def cache_key(resource_key: str) -> str:
    """Store key for a resource's cached payload: ``history:bitcoin:7`` -> ``history_bitcoin_7``."""
    return resource_key.replace(':', '_')


class ResponseCache:
    def __init__(self, kv: KeyValueStore, policy: Optional[CachePolicy] = None,
                 legacy_tags: Iterable[str] = ('coingecko',), current_tags: Iterable[str] = ('coincap', 'newsapi'),
                 clock: Callable[[], float] = time.time):
        self.kv = kv
        self.policy = policy or CachePolicy()
        self.legacy_tags = {t.strip().lower() for t in legacy_tags}
        self.current_tags = {t.strip().lower() for t in current_tags}
        self.clock = clock
        self._stats_lock = threading.Lock()
        self.stats = {'reads': 0, 'hits': 0, 'misses': 0, 'corrupt_deleted': 0, 'expired_deleted': 0,
                      'writes': 0, 'write_errors': 0, 'read_errors': 0}

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self.stats[name] += 1

    def decode(self, key: str, raw: str) -> CacheEntry:
        try:
            doc = json.loads(raw)
        except ValueError as e:
            raise CorruptCacheEntry(f'invalid JSON: {e}') from e
        if not isinstance(doc, dict):
            raise CorruptCacheEntry('entry is not an object')
        if 'payload' in doc:
            payload = doc.get('payload')
            tag = doc.get('provenance')
            fetched_at = doc.get('fetched_at')
            ttl = doc.get('ttl_seconds', self.policy.ttl_seconds)
        else:
            # Entries written by the earlier worker: {"data": {..., "source": ...}, "timestamp": <ms>}
            payload = doc.get('data')
            tag = (payload or {}).get('source') if isinstance(payload, dict) else doc.get('source')
            ts = doc.get('timestamp') or doc.get('ts')
            fetched_at = float(ts) / 1000.0 if isinstance(ts, (int, float)) else None
            ttl = self.policy.ttl_seconds
        if not isinstance(payload, dict):
            raise CorruptCacheEntry('payload is not an object')
        if not isinstance(fetched_at, (int, float)):
            raise CorruptCacheEntry('missing fetch timestamp')
        provenance = parse_provenance(tag, self.legacy_tags, self.current_tags)
        return CacheEntry(key=key, payload=payload, provenance=provenance, fetched_at=float(fetched_at),
                          ttl_seconds=int(ttl), tag=str(tag))

    def load(self, key: str) -> Optional[CacheEntry]:
        """Decode the stored entry without side effects. Raises CorruptCacheEntry."""
        raw = self.kv.get(key)
        if not raw:
            return None
        return self.decode(key, raw)

    def read(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` or None; corrupt and very old entries are deleted."""
        self._count('reads')
        try:
            entry = self.load(key)
        except CorruptCacheEntry as e:
            logger.warning('cache.corrupt_entry %s: %s; deleting', key, e,
                           extra={'event': 'cache_corrupt', 'cache_key': key})
            self._count('corrupt_deleted')
            self.delete(key)
            return None
        except Exception as e:
            logger.warning('cache.read_failed %s: %s', key, e, extra={'event': 'cache_read_failed', 'cache_key': key})
            self._count('read_errors')
            return None
        if entry is None:
            self._count('misses')
            return None
        if entry.age(self.clock()) > self.policy.max_age_seconds:
            logger.info('cache.very_old %s (age %.0fs); deleting', key, entry.age(self.clock()),
                        extra={'event': 'cache_very_old', 'cache_key': key})
            self._count('expired_deleted')
            self.delete(key)
            return None
        self._count('hits')
        return entry

    def is_fresh(self, entry: CacheEntry, ttl: Optional[float] = None, now: Optional[float] = None) -> bool:
        ttl = entry.ttl_seconds if ttl is None else ttl
        now = self.clock() if now is None else now
        return entry.age(now) <= ttl

    def write(self, key: str, payload: Dict[str, Any], provenance: Provenance = Provenance.CURRENT,
              ttl_seconds: Optional[int] = None) -> bool:
        doc = {
            'payload': payload,
            'provenance': provenance.value,
            'fetched_at': self.clock(),
            'ttl_seconds': int(ttl_seconds if ttl_seconds is not None else self.policy.ttl_seconds),
        }
        try:
            self.kv.set(key, _json_dumps(doc), ttl_seconds=self.policy.max_age_seconds)
        except Exception as e:
            logger.warning('cache.write_failed %s: %s', key, e, extra={'event': 'cache_write_failed', 'cache_key': key})
            self._count('write_errors')
            return False
        self._count('writes')
        return True

    def delete(self, key: str) -> None:
        try:
            self.kv.delete(key)
        except Exception as e:
            logger.warning('cache.delete_failed %s: %s', key, e, extra={'event': 'cache_delete_failed', 'cache_key': key})

    def snapshot(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self.stats)


__all__ = ['ResponseCache', 'CacheEntry', 'CachePolicy', 'Provenance', 'CorruptCacheEntry',
           'cache_key', 'iso_now', 'iso_from_epoch', 'parse_provenance']
