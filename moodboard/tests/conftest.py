"""
Shared pytest fixtures for the coordinator, cache and app tests.
"""
import random

import pytest

from moodboard.app import create_app
from moodboard.backoff import BackoffStore
from moodboard.cache import CachePolicy, ResponseCache
from moodboard.config import load_config
from moodboard.coordinator import RetryPolicy, UpstreamCoordinator
from moodboard.handlers import MoodService
from moodboard.kv import MemoryKV
from moodboard.sentinel import LegacySentinel
from moodboard.tests.fakes import FakeTransport, ManualClock, RecordingSleeper


@pytest.fixture
def clock():
    """Manually advanced clock shared by every component under test."""
    return ManualClock()


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def kv(clock):
    return MemoryKV(clock=clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config():
    """Config with secrets cleared so tests never depend on the developer's .env."""
    return load_config({
        'REDIS_URL': None,
        'COINCAP_API_KEY': None,
        'NEWSAPI_KEY': 'test-news-key',
        'COHERE_API_KEY': None,
        'ADMIN_PURGE_TOKEN': 'purge-secret',
        'FETCH_MAX_ATTEMPTS': 2,
        'LEGACY_PROVIDERS': ['coingecko'],
        'CURRENT_PROVIDERS': ['coincap', 'newsapi', 'cohere', 'vader', 'rule-based'],
        'CORS_ALLOWED_ORIGINS': '*',
    })


@pytest.fixture
def backoff(kv, clock):
    return BackoffStore(kv, clock=clock)


@pytest.fixture
def coordinator(transport, backoff, clock, sleeper):
    return UpstreamCoordinator(transport, backoff, RetryPolicy(), clock=clock, sleep=sleeper,
                               rng=random.Random(7))


@pytest.fixture
def cache(kv, clock, config):
    return ResponseCache(kv, CachePolicy(ttl_seconds=60, max_age_seconds=config['CACHE_MAX_AGE_SECONDS']),
                         legacy_tags=config['LEGACY_PROVIDERS'], current_tags=config['CURRENT_PROVIDERS'],
                         clock=clock)


@pytest.fixture
def sentinel(cache):
    return LegacySentinel(cache)


@pytest.fixture
def mood(config, coordinator, cache, sentinel, clock):
    return MoodService(config, coordinator, cache, sentinel, clock=clock)


@pytest.fixture
def app(config, kv, transport, clock, sleeper):
    """Flask app wired to the in-memory store, scripted transport and manual clock."""
    app = create_app(config, kv=kv, transport=transport, clock=clock, sleep=sleeper, rng=random.Random(7))
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()
