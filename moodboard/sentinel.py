"""Legacy-data sentinel.

Every cache read used by a handler passes through :class:`LegacySentinel`.
Entries tagged with a retired provider are never served, not even as a
stale-if-error fallback: they are deleted on sight and the read is reported as
a miss. ``purge_legacy`` sweeps a known key set in bulk.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from moodboard.cache import CacheEntry, CorruptCacheEntry, Provenance, ResponseCache
from moodboard.errors import LegacyDataEvicted

logger = logging.getLogger(__name__)


class CacheState(Enum):
    FRESH_CURRENT = 'fresh_current'
    STALE_CURRENT = 'stale_current'
    LEGACY = 'legacy'


@dataclass
class PurgeReport:
    deleted_keys: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted_keys)


class LegacySentinel:
    def __init__(self, cache: ResponseCache):
        self.cache = cache
        self._lock = threading.Lock()
        self.stats = {'legacy_evictions': 0, 'purge_runs': 0, 'purge_deleted': 0}

    def _count(self, name: str, n: int = 1) -> None:
        with self._lock:
            self.stats[name] += n

    def classify(self, entry: CacheEntry, now: Optional[float] = None) -> CacheState:
        if entry.provenance is Provenance.LEGACY:
            return CacheState.LEGACY
        if entry.provenance is Provenance.CURRENT:
            if self.cache.is_fresh(entry, now=now):
                return CacheState.FRESH_CURRENT
            return CacheState.STALE_CURRENT
        raise AssertionError(f'unhandled provenance {entry.provenance!r}')

    def evict(self, entry: CacheEntry) -> None:
        """Delete a legacy entry and signal the caller to treat the read as a forced miss."""
        self.cache.delete(entry.key)
        self._count('legacy_evictions')
        logger.warning('sentinel.legacy_evicted %s (source=%s)', entry.key, entry.tag,
                       extra={'event': 'legacy_evicted', 'cache_key': entry.key, 'provenance': entry.tag})
        raise LegacyDataEvicted(entry.key, entry.tag)

    def lookup(self, key: str) -> Optional[Tuple[CacheEntry, CacheState]]:
        """Read ``key`` through the provenance check.

        Returns ``None`` on a miss, ``(entry, state)`` for a current entry, and
        raises :class:`LegacyDataEvicted` after deleting a legacy one.
        """
        entry = self.cache.read(key)
        if entry is None:
            return None
        state = self.classify(entry)
        if state is CacheState.LEGACY:
            self.evict(entry)
        return entry, state

    def fallback(self, key: str) -> Optional[CacheEntry]:
        """Entry usable as stale-if-error, or None. Legacy entries are evicted, never returned."""
        try:
            hit = self.lookup(key)
        except LegacyDataEvicted:
            return None
        if hit is None:
            return None
        return hit[0]

    def purge_legacy(self, keys: Iterable[str]) -> PurgeReport:
        report = PurgeReport()
        for key in keys:
            try:
                entry = self.cache.load(key)
            except CorruptCacheEntry:
                try:
                    self.cache.kv.delete(key)
                except Exception as e:
                    report.errors.append(f'{key}: {e}')
                    continue
                report.deleted_keys.append(f'{key} (corrupt)')
                continue
            except Exception as e:
                report.errors.append(f'{key}: {e}')
                continue
            if entry is None or entry.provenance is not Provenance.LEGACY:
                continue
            try:
                self.cache.kv.delete(key)
            except Exception as e:
                report.errors.append(f'{key}: {e}')
                continue
            report.deleted_keys.append(key)
        self._count('purge_runs')
        self._count('purge_deleted', report.deleted_count)
        logger.info('sentinel.purge_completed deleted=%d errors=%d', report.deleted_count, len(report.errors),
                    extra={'event': 'purge_completed'})
        return report

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.stats)


__all__ = ['LegacySentinel', 'CacheState', 'PurgeReport']
