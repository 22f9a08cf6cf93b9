"""Per-endpoint orchestration over the response cache and fetch coordinator.

Every data endpoint follows the same path: a fresh current cache entry is
returned without touching the network; otherwise the coordinator fetches,
the payload is validated and written back tagged current; if that fails, a
stale current entry is served as ``stale-if-error`` and legacy data never is.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from moodboard.cache import Provenance, ResponseCache, cache_key, iso_from_epoch
from moodboard.coordinator import UpstreamCoordinator
from moodboard.errors import LegacyDataEvicted, UpstreamError
from moodboard.providers import SUPPORTED_COINS, Coin, CohereProvider, CoinCapProvider, NewsApiProvider
from moodboard.schemas import HistoryData, NewsData, PriceData, SentimentSummary, validate_payload
from moodboard.sentiment import score_headlines
from moodboard.sentinel import CacheState, LegacySentinel, PurgeReport

logger = logging.getLogger(__name__)

FRESH = 'fresh'
MISS = 'miss'
STALE_IF_ERROR = 'stale-if-error'


def is_force_refresh(args: Mapping[str, str]) -> bool:
    """``_`` (cache-buster) or ``force=1|true`` in the query string."""
    if '_' in args:
        return True
    return (args.get('force') or '').strip().lower() in ('1', 'true')


class UnknownCoin(ValueError):
    def __init__(self, coin: str):
        super().__init__(f'unsupported coin: {coin}')
        self.coin = coin


def resolve_coin(coin_id: Optional[str]) -> Coin:
    cid = (coin_id or 'bitcoin').strip().lower()
    coin = SUPPORTED_COINS.get(cid)
    if coin is None:
        raise UnknownCoin(cid)
    return coin


@dataclass
class Resource:
    resource_key: str
    ttl_seconds: int
    produce: Callable[[], Dict[str, Any]]

    @property
    def cache_key(self) -> str:
        return cache_key(self.resource_key)


@dataclass
class Served:
    payload: Dict[str, Any]
    cache_status: str
    age_seconds: float
    latency_ms: float
    error: Optional[UpstreamError] = None

    @property
    def from_cache(self) -> bool:
        return self.cache_status != MISS


class CachedResourceHandler:
    def __init__(self, cache: ResponseCache, sentinel: LegacySentinel, clock: Callable[[], float] = time.time):
        self.cache = cache
        self.sentinel = sentinel
        self.clock = clock
        self._lock = threading.Lock()
        self.stats = {'fresh_hits': 0, 'misses': 0, 'stale_if_error': 0, 'legacy_forced_misses': 0,
                      'upstream_failures': 0}

    def _count(self, name: str) -> None:
        with self._lock:
            self.stats[name] += 1

    def serve(self, resource: Resource, force: bool = False) -> Served:
        start = self.clock()
        key = resource.cache_key

        if not force:
            try:
                hit = self.sentinel.lookup(key)
            except LegacyDataEvicted:
                self._count('legacy_forced_misses')
                hit = None
            if hit is not None and hit[1] is CacheState.FRESH_CURRENT:
                entry = hit[0]
                self._count('fresh_hits')
                return Served(entry.payload, FRESH, entry.age(start), (self.clock() - start) * 1000.0)

        try:
            payload = resource.produce()
        except UpstreamError as e:
            self._count('upstream_failures')
            stale = self.sentinel.fallback(key)
            if stale is None:
                logger.error('handler.failed %s: %s', resource.resource_key, e,
                             extra={'event': 'upstream_failed', 'resource_key': resource.resource_key,
                                    'kind': e.kind})
                raise
            self._count('stale_if_error')
            now = self.clock()
            logger.warning('handler.stale_if_error %s (age %.0fs) after %s', resource.resource_key,
                           stale.age(now), e.kind,
                           extra={'event': 'stale_if_error', 'resource_key': resource.resource_key,
                                  'kind': e.kind, 'cache_status': STALE_IF_ERROR})
            return Served(stale.payload, STALE_IF_ERROR, stale.age(now), (now - start) * 1000.0, error=e)

        self.cache.write(key, payload, Provenance.CURRENT, ttl_seconds=resource.ttl_seconds)
        self._count('misses')
        return Served(payload, MISS, 0.0, (self.clock() - start) * 1000.0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.stats)


class MoodService:
    """The dashboard's data operations, one method per endpoint."""

    def __init__(self, config: Dict[str, Any], coordinator: UpstreamCoordinator, cache: ResponseCache,
                 sentinel: LegacySentinel, clock: Callable[[], float] = time.time):
        self.config = config
        self.coordinator = coordinator
        self.sentinel = sentinel
        self.clock = clock
        self.handler = CachedResourceHandler(cache, sentinel, clock=clock)
        self.coincap = CoinCapProvider(config)
        self.newsapi = NewsApiProvider(config)
        self.cohere = CohereProvider(config)

    # ------------------------------------------------------------------ price
    def price(self, coin: Coin, force: bool = False) -> Served:
        def produce():
            result = self.coordinator.fetch(self.coincap.price_request(coin))
            data = self.coincap.parse_price(coin, result.response, self.clock())
            return validate_payload(PriceData, data, f'price:{coin.id}')

        return self.handler.serve(Resource(f'price:{coin.id}', self.config['PRICE_TTL_SECONDS'], produce), force)

    # ---------------------------------------------------------------- history
    def clamp_days(self, days: Any) -> int:
        try:
            n = int(days)
        except (TypeError, ValueError):
            n = 7
        return max(1, min(int(self.config.get('HISTORY_MAX_DAYS', 30)), n))

    def history(self, coin: Coin, days: int, force: bool = False) -> Served:
        rk = f'history:{coin.id}:{days}'

        def produce():
            result = self.coordinator.fetch(self.coincap.history_request(coin, days, self.clock()))
            data = self.coincap.parse_history(coin, days, result.response, self.clock())
            return validate_payload(HistoryData, data, rk)

        return self.handler.serve(Resource(rk, self.config['HISTORY_TTL_SECONDS'], produce), force)

    # ------------------------------------------------------------------- news
    def news(self, coin: Coin, force: bool = False) -> Served:
        def produce():
            result = self.coordinator.fetch(self.newsapi.news_request(coin, self.clock()))
            data = self.newsapi.parse_news(coin, result.response, self.clock())
            return validate_payload(NewsData, data, f'news:{coin.id}')

        return self.handler.serve(Resource(f'news:{coin.id}', self.config['NEWS_TTL_SECONDS'], produce), force)

    # -------------------------------------------------------------- sentiment
    def _score(self, coin: Coin, headlines: List[Dict[str, Any]]) -> Dict[str, Any]:
        if headlines and self.cohere.configured():
            req = self.cohere.sentiment_request(coin, headlines)
            try:
                result = self.coordinator.fetch(req)
                scored = self.cohere.parse_sentiment(result.response, req.resource_key)
            except UpstreamError as e:
                logger.warning('sentiment.cohere_failed %s (%s); using VADER', coin.id, e.kind,
                               extra={'event': 'cohere_fallback', 'resource_key': req.resource_key,
                                      'kind': e.kind})
            else:
                scored['source'] = self.cohere.name
                return scored
        scored = score_headlines(headlines)
        scored['source'] = 'vader'
        return scored

    def sentiment_summary(self, coin: Coin, force: bool = False) -> Served:
        rk = f'sentiment:{coin.id}'

        def produce():
            headlines = self.news(coin).payload.get('headlines') or []
            scored = self._score(coin, headlines)
            data = {
                'coin': coin.id,
                'score': scored['score'],
                'label': scored['label'],
                'count': len(headlines),
                'headlines': [{'title': h.get('title'), 'url': h.get('url'), 'publishedAt': h.get('publishedAt')}
                              for h in headlines[:10]],
                'source': scored['source'],
                'timestamp': iso_from_epoch(self.clock()),
            }
            if scored.get('summary'):
                data['summary'] = scored['summary']
            return validate_payload(SentimentSummary, data, rk)

        return self.handler.serve(Resource(rk, self.config['SENTIMENT_TTL_SECONDS'], produce), force)

    # ------------------------------------------------------------------ admin
    def known_cache_keys(self) -> List[str]:
        """Every cache key a handler can write: one history key per day count ``clamp_days`` allows."""
        keys: List[str] = []
        for coin_id in SUPPORTED_COINS:
            keys.append(cache_key(f'price:{coin_id}'))
            for days in range(1, int(self.config.get('HISTORY_MAX_DAYS', 30)) + 1):
                keys.append(cache_key(f'history:{coin_id}:{days}'))
            keys.append(cache_key(f'news:{coin_id}'))
            keys.append(cache_key(f'sentiment:{coin_id}'))
        return keys

    def purge_legacy(self) -> PurgeReport:
        return self.sentinel.purge_legacy(self.known_cache_keys())


__all__ = ['CachedResourceHandler', 'MoodService', 'Resource', 'Served', 'UnknownCoin', 'resolve_coin',
           'is_force_refresh', 'FRESH', 'MISS', 'STALE_IF_ERROR']
