import pytest

from moodboard.backoff import BackoffStore, backoff_key
from moodboard.tests.fakes import BrokenKV


def test_set_then_get(backoff, clock, kv):
    assert backoff.set('price:bitcoin', clock() + 5) is True
    assert backoff.get('price:bitcoin') == pytest.approx(clock() + 5)
    assert backoff.remaining('price:bitcoin') == pytest.approx(5)
    assert kv.get(backoff_key('price:bitcoin')) is not None


def test_record_expires_with_ttl(backoff, clock, kv):
    backoff.set('price:bitcoin', clock() + 5)
    clock.advance(7)
    assert kv.get(backoff_key('price:bitcoin')) is None
    assert backoff.get('price:bitcoin') == 0.0
    assert backoff.remaining('price:bitcoin') == 0.0


def test_past_cooldown_is_not_written(backoff, clock, kv):
    assert backoff.set('price:bitcoin', clock() - 1) is True
    assert kv.get(backoff_key('price:bitcoin')) is None


def test_garbage_value_reads_as_no_backoff(backoff, kv):
    kv.set(backoff_key('price:bitcoin'), 'not-a-number')
    assert backoff.get('price:bitcoin') == 0.0


def test_fails_open_when_store_unavailable(clock):
    store = BackoffStore(BrokenKV(), clock=clock)
    assert store.get('price:bitcoin') == 0.0
    assert store.remaining('price:bitcoin') == 0.0
    assert store.set('price:bitcoin', clock() + 5) is False


def test_coordinator_proceeds_when_store_unavailable(transport, clock, sleeper):
    from moodboard.coordinator import UpstreamCoordinator
    from moodboard.tests.fakes import coincap_assets, resp
    from moodboard.transport import UpstreamRequest

    coordinator = UpstreamCoordinator(transport, BackoffStore(BrokenKV(), clock=clock), clock=clock, sleep=sleeper)
    transport.script('price:', resp(200, coincap_assets()))
    result = coordinator.fetch(UpstreamRequest(url='https://x/assets', resource_key='price:bitcoin'))
    assert result.response.status == 200
