"""Upstream fetch coordinator: coalescing, per-resource backoff and status-aware retries.

One ``UpstreamCoordinator`` instance owns the in-flight registry for its
process; coalescing never spans instances. Retry sleeps block only the thread
serving the request being retried.

Worst-case latency of :meth:`UpstreamCoordinator.fetch` is
``max_attempts * (per-attempt timeout + max backoff)``.
"""
from __future__ import annotations

import dataclasses
import email.utils
import logging
import math
import os
import random
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Optional, Tuple

from moodboard.backoff import BackoffStore
from moodboard.errors import (
    BackoffInEffect,
    NetworkOrDnsFailure,
    RetriesExhausted,
    UpstreamHttpError,
)
from moodboard.transport import TransportError, UpstreamRequest, UpstreamResponse

logger = logging.getLogger(__name__)

_DURATIONS_MAX = int(os.environ.get('FETCH_DURATIONS_MAX', '200'))
_HIST_BUCKETS_MS = [int(x) for x in os.environ.get('FETCH_DURATION_BUCKETS', '50,100,200,400,800,1600,3200,6400').split(',') if x.strip()]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    base_429: float = 0.5
    max_429: float = 5.0
    base_5xx: float = 0.3
    max_5xx: float = 1.0
    unreachable_statuses: FrozenSet[int] = frozenset({530})
    unreachable_retry_after: float = 60.0

    @classmethod
    def from_config(cls, cfg) -> 'RetryPolicy':
        return cls(
            max_attempts=max(1, min(5, int(cfg.get('FETCH_MAX_ATTEMPTS', 2)))),
            base_429=float(cfg.get('BACKOFF_429_BASE', 0.5)),
            max_429=float(cfg.get('BACKOFF_429_MAX', 5)),
            base_5xx=float(cfg.get('BACKOFF_5XX_BASE', 0.3)),
            max_5xx=float(cfg.get('BACKOFF_5XX_MAX', 1)),
            unreachable_statuses=frozenset(cfg.get('UNREACHABLE_STATUSES') or ()),
        )

    @property
    def max_backoff(self) -> float:
        return max(self.max_429, self.max_5xx)


@dataclass(frozen=True)
class FetchResult:
    response: UpstreamResponse
    attempts: int
    latency_ms: float
    coalesced: bool = False


def parse_retry_after(value: Optional[str], now: float) -> Optional[float]:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        # 'inf', 'nan' and overflowing literals fall back to the computed delay
        if not math.isfinite(seconds):
            return None
        return max(0.0, seconds)
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, when.timestamp() - now)


class InflightRegistry:
    """Request signature -> shared Future, for one process instance."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[Tuple[str, str, str], Future] = {}

    def join_or_lead(self, signature) -> Tuple[Future, bool]:
        with self._lock:
            fut = self._pending.get(signature)
            if fut is not None:
                return fut, False
            fut = Future()
            self._pending[signature] = fut
            return fut, True

    def settle(self, signature) -> None:
        with self._lock:
            self._pending.pop(signature, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class UpstreamCoordinator:
    def __init__(self, transport, backoff: BackoffStore, policy: Optional[RetryPolicy] = None,
                 clock: Callable[[], float] = time.time, sleep: Callable[[float], None] = time.sleep,
                 rng: Optional[random.Random] = None):
        self.transport = transport
        self.backoff = backoff
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.inflight = InflightRegistry()
        self._metrics_lock = threading.Lock()
        self._metrics = {
            'total_calls': 0,
            'coalesced_waits': 0,
            'network_attempts': 0,
            'successes': 0,
            'backoff_rejections': 0,
            'rate_limited_responses': 0,
            'server_errors': 0,
            'client_errors': 0,
            'network_errors': 0,
            'unreachable_short_circuits': 0,
            'retries_exhausted': 0,
            'last_fetch_duration_ms': 0.0,
            'durations_ms': [],
        }
        self._hist_counts = {b: 0 for b in _HIST_BUCKETS_MS}
        self._hist_overflow = 0
        self._hist_sum = 0.0
        self._hist_count = 0

    # ------------------------------------------------------------------ helpers
    def _bump(self, name: str, n: int = 1) -> None:
        with self._metrics_lock:
            self._metrics[name] += n

    def _jittered(self, base: float, cap: float) -> float:
        return min(cap, base + self.rng.random() * (base / 2))

    def _delay_429(self, attempt: int) -> float:
        return self._jittered(self.policy.base_429 * (2 ** (attempt - 1)), self.policy.max_429)

    def _delay_5xx(self, attempt: int) -> float:
        return self._jittered(self.policy.base_5xx * (2 ** (attempt - 1)), self.policy.max_5xx)

    @property
    def worst_case_seconds(self) -> float:
        timeout = getattr(self.transport, 'timeout_total', 0.0)
        return self.policy.max_attempts * (timeout + self.policy.max_backoff)

    def _observe(self, dur_ms: float) -> None:
        with self._metrics_lock:
            self._metrics['last_fetch_duration_ms'] = dur_ms
            arr = self._metrics['durations_ms']
            arr.append(dur_ms)
            if len(arr) > _DURATIONS_MAX:
                del arr[: len(arr) - _DURATIONS_MAX]
            self._hist_count += 1
            self._hist_sum += dur_ms
            for edge in _HIST_BUCKETS_MS:
                if dur_ms <= edge:
                    self._hist_counts[edge] += 1
                    break
            else:
                self._hist_overflow += 1

    # ------------------------------------------------------------------ public
    def fetch(self, req: UpstreamRequest) -> FetchResult:
        """Fetch ``req``, sharing one in-flight call among concurrent identical callers."""
        self._bump('total_calls')
        signature = req.signature
        fut, leader = self.inflight.join_or_lead(signature)
        if not leader:
            self._bump('coalesced_waits')
            logger.debug('coordinator.coalesced %s', req.resource_key,
                         extra={'event': 'fetch_coalesced', 'resource_key': req.resource_key})
            return dataclasses.replace(fut.result(), coalesced=True)
        try:
            result = self._fetch_with_retries(req)
        except BaseException as e:
            self.inflight.settle(signature)
            fut.set_exception(e)
            raise
        self.inflight.settle(signature)
        fut.set_result(result)
        return result

    def _fetch_with_retries(self, req: UpstreamRequest) -> FetchResult:
        policy = self.policy
        key = req.resource_key
        start = self.clock()
        until = self.backoff.get(key)
        if until > start:
            self._bump('backoff_rejections')
            logger.warning('coordinator.backoff_in_effect %s (%.1fs left)', key, until - start,
                           extra={'event': 'backoff_in_effect', 'resource_key': key})
            raise BackoffInEffect(key, until, until - start)

        attempt = 0
        last_status: Optional[int] = None
        last_network: Optional[TransportError] = None
        cooldown_until = 0.0
        while attempt < policy.max_attempts:
            attempt += 1
            self._bump('network_attempts')
            attempt_start = self.clock()
            try:
                resp = self.transport.send(req)
            except TransportError as e:
                self._bump('network_errors')
                last_network, last_status = e, None
                logger.warning('coordinator.network_error %s attempt %d/%d: %s', key, attempt,
                               policy.max_attempts, e,
                               extra={'event': 'fetch_network_error', 'resource_key': key, 'attempt': attempt})
                if attempt < policy.max_attempts:
                    self.sleep(self._delay_5xx(attempt))
                continue

            status = resp.status
            latency_ms = (self.clock() - attempt_start) * 1000.0
            logger.info('coordinator.attempt %s %d/%d -> %d (%.0fms)', key, attempt, policy.max_attempts,
                        status, latency_ms,
                        extra={'event': 'fetch_attempt', 'resource_key': key, 'attempt': attempt,
                               'status': status, 'latency_ms': round(latency_ms, 1)})

            if 200 <= status < 300:
                self._bump('successes')
                total_ms = (self.clock() - start) * 1000.0
                self._observe(total_ms)
                return FetchResult(response=resp, attempts=attempt, latency_ms=total_ms)

            if status == 429:
                self._bump('rate_limited_responses')
                now = self.clock()
                provided = parse_retry_after(resp.header('Retry-After'), now)
                delay = provided if provided is not None else self._delay_429(attempt)
                cooldown_until = now + delay
                self.backoff.set(key, cooldown_until)
                last_status, last_network = 429, None
                if attempt < policy.max_attempts and delay <= policy.max_429:
                    self.sleep(delay)
                    continue
                # A provider delay beyond the cap is deferred to later requests via the backoff record
                break

            if status in policy.unreachable_statuses:
                self._bump('unreachable_short_circuits')
                logger.error('coordinator.unreachable %s status %d; not retrying', key, status,
                             extra={'event': 'fetch_unreachable', 'resource_key': key, 'status': status})
                raise NetworkOrDnsFailure(
                    f'upstream unreachable (HTTP {status})',
                    detail={'status': status, 'attempts': attempt, 'resource_key': key},
                    retry_after=policy.unreachable_retry_after,
                    status=status,
                )

            if 500 <= status < 600:
                self._bump('server_errors')
                last_status, last_network = status, None
                if attempt < policy.max_attempts:
                    self.sleep(self._delay_5xx(attempt))
                continue

            self._bump('client_errors')
            raise UpstreamHttpError(status, detail={'resource_key': key, 'body': resp.text[:200]})

        self._observe((self.clock() - start) * 1000.0)
        if last_network is not None:
            raise NetworkOrDnsFailure(
                f'network failure after {attempt} attempt(s): {last_network}',
                detail={'category': last_network.category, 'attempts': attempt, 'resource_key': key},
            )
        self._bump('retries_exhausted')
        retry_after = None
        if last_status == 429:
            retry_after = max(0.0, cooldown_until - self.clock())
        logger.error('coordinator.retries_exhausted %s after %d attempt(s), last status %s', key, attempt,
                     last_status, extra={'event': 'retries_exhausted', 'resource_key': key, 'status': last_status})
        raise RetriesExhausted(attempt, last_status, detail={'resource_key': key}, retry_after=retry_after)

    def snapshot(self) -> Dict[str, object]:
        with self._metrics_lock:
            data = dict(self._metrics)
            durations = list(data.pop('durations_ms'))
            data['fetch_duration_hist_buckets'] = {str(edge): self._hist_counts[edge] for edge in _HIST_BUCKETS_MS}
            data['fetch_duration_hist_overflow'] = self._hist_overflow
            data['fetch_duration_sum_ms'] = round(self._hist_sum, 3)
            data['fetch_duration_count'] = self._hist_count
        p95 = None
        if durations:
            sorted_d = sorted(durations)
            idx = max(0, min(int(len(sorted_d) * 0.95) - 1, len(sorted_d) - 1))
            p95 = sorted_d[idx]
        data.update({
            'p95_fetch_duration_ms': p95,
            'inflight': len(self.inflight),
            'max_attempts': self.policy.max_attempts,
            'worst_case_seconds': round(self.worst_case_seconds, 3),
        })
        return data


__all__ = ['UpstreamCoordinator', 'RetryPolicy', 'FetchResult', 'InflightRegistry', 'parse_retry_after']
