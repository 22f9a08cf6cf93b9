import json

import pytest

from moodboard.cache import CacheEntry, CorruptCacheEntry, Provenance, ResponseCache, cache_key, parse_provenance
from moodboard.errors import LegacyDataEvicted
from moodboard.sentinel import CacheState, LegacySentinel
from moodboard.tests.fakes import BrokenKV, UndeletableKV

PRICE = {'coin': 'bitcoin', 'price': 43250.5, 'change24h': 2.35, 'symbol': 'BTC', 'source': 'coincap'}


def _legacy_entry(clock, source='coingecko', age=10):
    """Entry in the format the earlier worker stored: {data, timestamp(ms)}."""
    return json.dumps({'data': dict(PRICE, source=source), 'timestamp': int((clock() - age) * 1000)})


def test_cache_key_layout():
    assert cache_key('price:bitcoin') == 'price_bitcoin'
    assert cache_key('history:bitcoin:7') == 'history_bitcoin_7'


class TestResponseCache:
    def test_write_then_read(self, cache, clock):
        assert cache.write('price_bitcoin', PRICE, ttl_seconds=60) is True
        entry = cache.read('price_bitcoin')
        assert entry.payload == PRICE
        assert entry.provenance is Provenance.CURRENT
        assert entry.fetched_at == clock()
        assert entry.ttl_seconds == 60

    def test_freshness_follows_entry_ttl(self, cache, clock):
        cache.write('price_bitcoin', PRICE, ttl_seconds=60)
        assert cache.is_fresh(cache.read('price_bitcoin'))
        clock.advance(61)
        entry = cache.read('price_bitcoin')
        assert entry is not None
        assert not cache.is_fresh(entry)

    def test_miss(self, cache):
        assert cache.read('price_bitcoin') is None
        assert cache.snapshot()['misses'] == 1

    def test_corrupt_json_is_deleted(self, cache, kv):
        kv.set('price_bitcoin', '{not json')
        assert cache.read('price_bitcoin') is None
        assert kv.get('price_bitcoin') is None
        assert cache.snapshot()['corrupt_deleted'] == 1

    def test_unknown_provenance_is_corrupt(self, cache, kv, clock):
        kv.set('price_bitcoin', json.dumps({'payload': PRICE, 'provenance': 'mystery', 'fetched_at': clock()}))
        assert cache.read('price_bitcoin') is None
        assert kv.get('price_bitcoin') is None

    def test_very_old_entry_is_deleted(self, cache, kv, clock):
        cache.write('price_bitcoin', PRICE)
        clock.advance(cache.policy.max_age_seconds + 1)
        # Bypass the store-level expiry to exercise the read-side age check
        kv.set('price_bitcoin', json.dumps({'payload': PRICE, 'provenance': 'current',
                                            'fetched_at': clock() - cache.policy.max_age_seconds - 1}))
        assert cache.read('price_bitcoin') is None
        assert kv.get('price_bitcoin') is None

    def test_reads_earlier_worker_format(self, cache, kv, clock):
        kv.set('price_bitcoin', _legacy_entry(clock, source='coincap', age=5))
        entry = cache.read('price_bitcoin')
        assert entry.provenance is Provenance.CURRENT
        assert entry.fetched_at == pytest.approx(clock() - 5)

    def test_legacy_tag_parses_to_legacy(self, cache, kv, clock):
        kv.set('price_bitcoin', _legacy_entry(clock))
        entry = cache.read('price_bitcoin')
        assert entry.provenance is Provenance.LEGACY
        assert entry.tag == 'coingecko'

    def test_store_outage_degrades_to_miss_and_no_op(self, clock):
        cache = ResponseCache(BrokenKV(), clock=clock)
        assert cache.read('price_bitcoin') is None
        assert cache.write('price_bitcoin', PRICE) is False
        cache.delete('price_bitcoin')
        stats = cache.snapshot()
        assert stats['read_errors'] == 1
        assert stats['write_errors'] == 1
        assert stats['writes'] == 0


def test_parse_provenance():
    assert parse_provenance('current', ['coingecko'], []) is Provenance.CURRENT
    assert parse_provenance('CoinGecko', ['coingecko'], []) is Provenance.LEGACY
    assert parse_provenance('legacy', [], []) is Provenance.LEGACY
    assert parse_provenance('coincap', [], ['coincap']) is Provenance.CURRENT
    with pytest.raises(CorruptCacheEntry):
        parse_provenance('', [], [])
    with pytest.raises(CorruptCacheEntry):
        parse_provenance('binance', ['coingecko'], ['coincap'])


class TestSentinel:
    def test_classify(self, sentinel, clock):
        entry = CacheEntry('k', PRICE, Provenance.CURRENT, fetched_at=clock(), ttl_seconds=60)
        assert sentinel.classify(entry) is CacheState.FRESH_CURRENT
        assert sentinel.classify(entry, now=clock() + 61) is CacheState.STALE_CURRENT
        legacy = CacheEntry('k', PRICE, Provenance.LEGACY, fetched_at=clock(), ttl_seconds=60)
        assert sentinel.classify(legacy) is CacheState.LEGACY
        assert sentinel.classify(legacy, now=clock() + 10_000) is CacheState.LEGACY

    def test_lookup_evicts_legacy(self, sentinel, kv, clock):
        kv.set('price_bitcoin', _legacy_entry(clock))
        with pytest.raises(LegacyDataEvicted) as exc:
            sentinel.lookup('price_bitcoin')
        assert exc.value.key == 'price_bitcoin'
        assert kv.get('price_bitcoin') is None
        assert sentinel.snapshot()['legacy_evictions'] == 1

    def test_lookup_current(self, sentinel, cache):
        cache.write('price_bitcoin', PRICE)
        entry, state = sentinel.lookup('price_bitcoin')
        assert entry.payload == PRICE
        assert state is CacheState.FRESH_CURRENT

    def test_fallback_never_returns_legacy(self, sentinel, kv, clock):
        kv.set('price_bitcoin', _legacy_entry(clock, age=600))
        assert sentinel.fallback('price_bitcoin') is None
        assert kv.get('price_bitcoin') is None

    def test_fallback_returns_stale_current(self, sentinel, cache, clock):
        cache.write('price_bitcoin', PRICE)
        clock.advance(600)
        assert sentinel.fallback('price_bitcoin').payload == PRICE

    def test_purge_is_idempotent(self, sentinel, cache, kv, clock):
        kv.set('price_bitcoin', _legacy_entry(clock))
        kv.set('history_ethereum_7', json.dumps({'data': {'coin': 'ethereum', 'prices': [], 'source': 'coingecko'},
                                                 'timestamp': int(clock() * 1000)}))
        kv.set('sentiment_solana', 'garbage')
        cache.write('price_ethereum', dict(PRICE, coin='ethereum'))
        keys = ['price_bitcoin', 'price_ethereum', 'history_ethereum_7', 'sentiment_solana', 'news_dash']

        first = sentinel.purge_legacy(keys)
        assert first.deleted_count == 3
        assert set(first.deleted_keys) == {'price_bitcoin', 'history_ethereum_7', 'sentiment_solana (corrupt)'}
        assert first.errors == []
        assert kv.get('price_ethereum') is not None

        second = sentinel.purge_legacy(keys)
        assert second.deleted_count == 0
        assert second.deleted_keys == []

    def test_purge_reports_failed_deletes(self, clock):
        kv = UndeletableKV(clock=clock)
        sentinel = LegacySentinel(ResponseCache(kv, clock=clock))
        kv.set('sentiment_solana', 'garbage')
        kv.set('price_bitcoin', _legacy_entry(clock))

        report = sentinel.purge_legacy(['sentiment_solana', 'price_bitcoin'])
        assert report.deleted_keys == []
        assert report.deleted_count == 0
        assert report.errors == ['sentiment_solana: delete refused', 'price_bitcoin: delete refused']
        assert kv.get('sentiment_solana') == 'garbage'

    def test_purge_during_store_outage(self, clock):
        sentinel = LegacySentinel(ResponseCache(BrokenKV(), clock=clock))
        report = sentinel.purge_legacy(['price_bitcoin', 'news_bitcoin'])
        assert report.deleted_count == 0
        assert report.errors == ['price_bitcoin: kv down', 'news_bitcoin: kv down']
