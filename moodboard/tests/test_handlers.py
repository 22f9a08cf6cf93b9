import json

import pytest

from moodboard.cache import Provenance
from moodboard.errors import InvalidUpstreamPayload, RetriesExhausted, UpstreamHttpError
from moodboard.handlers import FRESH, MISS, STALE_IF_ERROR, MoodService, UnknownCoin, is_force_refresh, resolve_coin
from moodboard.tests.fakes import coincap_assets, coincap_history, newsapi_articles, resp

BTC = resolve_coin('bitcoin')

HEADLINES = [
    'Bitcoin rally lifts crypto market to record high',
    'Investors cheer strong ETF inflows into Bitcoin',
    'Analysts see steady growth for crypto adoption',
]


def _seed_legacy_price(kv, clock, age=5):
    kv.set('price_bitcoin', json.dumps({
        'data': {'coin': 'bitcoin', 'price': 99.0, 'change24h': 1.0, 'symbol': 'BTC', 'source': 'coingecko'},
        'timestamp': int((clock() - age) * 1000),
    }))


def test_resolve_coin():
    assert resolve_coin(None).id == 'bitcoin'
    assert resolve_coin(' Ripple ').coincap_id == 'xrp'
    with pytest.raises(UnknownCoin):
        resolve_coin('notacoin')


@pytest.mark.parametrize('args,expected', [
    ({}, False),
    ({'force': '1'}, True),
    ({'force': 'true'}, True),
    ({'force': 'TRUE'}, True),
    ({'force': 'no'}, False),
    ({'_': '1700000000'}, True),
])
def test_is_force_refresh(args, expected):
    assert is_force_refresh(args) is expected


class TestPrice:
    def test_miss_then_fresh(self, mood, transport):
        transport.script('price:', resp(200, coincap_assets()))
        first = mood.price(BTC)
        assert first.cache_status == MISS
        assert first.from_cache is False
        assert first.payload['price'] == 43250.5
        assert first.payload['change24h'] == 2.5
        assert first.payload['source'] == 'coincap'

        second = mood.price(BTC)
        assert second.cache_status == FRESH
        assert second.payload == first.payload
        assert len(transport.calls) == 1

    def test_force_bypasses_fresh_entry(self, mood, transport):
        transport.script('price:', resp(200, coincap_assets()))
        mood.price(BTC)
        assert mood.price(BTC, force=True).cache_status == MISS
        assert len(transport.calls) == 2

    def test_stale_if_error(self, mood, transport, clock):
        transport.script('price:', resp(200, coincap_assets()))
        good = mood.price(BTC).payload
        clock.advance(61)
        transport.script('price:', resp(503))
        served = mood.price(BTC)
        assert served.cache_status == STALE_IF_ERROR
        assert served.payload == good
        assert served.age_seconds == pytest.approx(61)
        assert isinstance(served.error, RetriesExhausted)

    def test_failure_without_cache_raises(self, mood, transport):
        transport.script('price:', resp(503))
        with pytest.raises(RetriesExhausted):
            mood.price(BTC)

    def test_client_error_still_falls_back(self, mood, transport, clock):
        transport.script('price:', resp(200, coincap_assets()))
        mood.price(BTC)
        clock.advance(120)
        transport.script('price:', resp(403))
        served = mood.price(BTC)
        assert served.cache_status == STALE_IF_ERROR
        assert isinstance(served.error, UpstreamHttpError)

    def test_invalid_payload_is_not_cached(self, mood, transport, kv):
        transport.script('price:', resp(200, coincap_assets(price='0')))
        with pytest.raises(InvalidUpstreamPayload):
            mood.price(BTC)
        assert kv.get('price_bitcoin') is None

    def test_legacy_entry_forces_one_fetch(self, mood, transport, kv, clock, cache):
        _seed_legacy_price(kv, clock)
        transport.script('price:', resp(200, coincap_assets()))
        served = mood.price(BTC)
        assert served.cache_status == MISS
        assert served.payload['source'] == 'coincap'
        assert len(transport.calls) == 1
        entry = cache.read('price_bitcoin')
        assert entry.provenance is Provenance.CURRENT
        assert mood.handler.snapshot()['legacy_forced_misses'] == 1

    def test_legacy_entry_never_used_as_fallback(self, mood, transport, kv, clock):
        _seed_legacy_price(kv, clock, age=600)
        transport.script('price:', resp(503))
        with pytest.raises(RetriesExhausted):
            mood.price(BTC)
        assert len(transport.calls) == 2
        assert kv.get('price_bitcoin') is None


class TestHistory:
    def test_days_are_clamped(self, mood):
        assert mood.clamp_days('365') == 30
        assert mood.clamp_days('0') == 1
        assert mood.clamp_days('abc') == 7

    def test_history_interval_and_payload(self, mood, transport):
        transport.script('history:', resp(200, coincap_history(points=4)))
        served = mood.history(BTC, 7)
        assert served.cache_status == MISS
        assert served.payload['days'] == 7
        assert len(served.payload['prices']) == 4
        assert served.payload['prices'][1]['price'] == 40010.12
        req = transport.calls[0]
        assert req.resource_key == 'history:bitcoin:7'
        assert req.params['interval'] == 'd1'
        assert req.params['end'] - req.params['start'] == 7 * 24 * 3600 * 1000

    def test_short_history_uses_hourly(self, mood, transport):
        transport.script('history:', resp(200, coincap_history()))
        mood.history(BTC, 1)
        assert transport.calls[0].params['interval'] == 'h1'

    def test_empty_history_is_invalid(self, mood, transport):
        transport.script('history:', resp(200, {'data': []}))
        with pytest.raises(InvalidUpstreamPayload):
            mood.history(BTC, 7)


class TestNewsAndSentiment:
    def test_news_filters_headlines(self, mood, transport):
        titles = HEADLINES + ['[Removed]', 'Short', 'Advertisement: buy now, crypto deals inside']
        transport.script('news:', resp(200, newsapi_articles(titles)))
        served = mood.news(BTC)
        assert [h['title'] for h in served.payload['headlines']] == HEADLINES
        assert served.payload['query'] == 'Bitcoin OR BTC OR cryptocurrency OR crypto'
        assert transport.calls[0].headers['X-Api-Key'] == 'test-news-key'

    def test_newsapi_error_body_is_invalid_payload(self, mood, transport):
        transport.script('news:', resp(200, {'status': 'error', 'code': 'rateLimited', 'message': 'slow down'}))
        with pytest.raises(InvalidUpstreamPayload):
            mood.news(BTC)

    def test_summary_uses_vader_without_cohere_key(self, mood, transport):
        transport.script('news:', resp(200, newsapi_articles(HEADLINES)))
        served = mood.sentiment_summary(BTC)
        payload = served.payload
        assert served.cache_status == MISS
        assert payload['source'] == 'vader'
        assert payload['count'] == 3
        assert 0.0 <= payload['score'] <= 1.0
        assert payload['label'] in ('Bullish', 'Neutral', 'Bearish')
        assert transport.calls_for('sentiment-ai:') == []

        assert mood.sentiment_summary(BTC).cache_status == FRESH
        assert len(transport.calls) == 1

    def test_summary_with_no_headlines_is_neutral(self, mood, transport):
        transport.script('news:', resp(200, newsapi_articles([])))
        payload = mood.sentiment_summary(BTC).payload
        assert payload['score'] == 0.5
        assert payload['label'] == 'Neutral'

    def test_summary_uses_cohere_when_configured(self, config, coordinator, cache, sentinel, clock, transport):
        mood = MoodService(dict(config, COHERE_API_KEY='co-key'), coordinator, cache, sentinel, clock=clock)
        transport.script('news:', resp(200, newsapi_articles(HEADLINES)))
        reply = '{"score": 0.81, "label": "Bullish", "summary": ["ETF inflows", "record high", "adoption"]}'
        transport.script('sentiment-ai:', resp(200, {'message': {'content': [{'type': 'text', 'text': reply}]}}))
        payload = mood.sentiment_summary(BTC).payload
        assert payload['source'] == 'cohere'
        assert payload['score'] == 0.81
        assert payload['label'] == 'Bullish'
        assert payload['summary'] == ['ETF inflows', 'record high', 'adoption']
        cohere_req = transport.calls_for('sentiment-ai:')[0]
        assert cohere_req.method == 'POST'
        assert cohere_req.headers['Authorization'] == 'Bearer co-key'

    def test_cohere_failure_falls_back_to_vader(self, config, coordinator, cache, sentinel, clock, transport):
        mood = MoodService(dict(config, COHERE_API_KEY='co-key'), coordinator, cache, sentinel, clock=clock)
        transport.script('news:', resp(200, newsapi_articles(HEADLINES)))
        transport.script('sentiment-ai:', resp(500))
        payload = mood.sentiment_summary(BTC).payload
        assert payload['source'] == 'vader'
        assert 'summary' not in payload

    def test_summary_uses_stale_news(self, mood, transport, clock):
        transport.script('news:', resp(200, newsapi_articles(HEADLINES)))
        mood.sentiment_summary(BTC)
        clock.advance(3600)
        transport.script('news:', resp(503))
        served = mood.sentiment_summary(BTC)
        assert served.cache_status == MISS
        assert served.payload['count'] == 3

    def test_summary_stale_if_news_unavailable(self, mood, transport, clock, kv):
        transport.script('news:', resp(200, newsapi_articles(HEADLINES)))
        first = mood.sentiment_summary(BTC).payload
        clock.advance(3600)
        kv.delete('news_bitcoin')
        transport.script('news:', resp(503))
        served = mood.sentiment_summary(BTC)
        assert served.cache_status == STALE_IF_ERROR
        assert served.payload == first


def test_known_cache_keys_cover_every_coin(mood):
    keys = mood.known_cache_keys()
    assert 'price_bitcoin' in keys
    assert 'history_solana_30' in keys
    assert 'history_ripple_1' in keys
    assert 'sentiment_dogecoin' in keys
    assert 'history_bitcoin_13' in keys
    assert len(set(keys)) == len(keys) == 16 * (1 + 30 + 2)
