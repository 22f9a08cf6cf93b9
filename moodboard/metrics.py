"""Metrics exposition helpers for JSON and Prometheus outputs."""
from __future__ import annotations

from typing import Any, Dict, List


def emit_prometheus(lines: list[str], name: str, value: Any, mtype: str, help_text: str):
    lines.append(f'# HELP {name} {help_text}')
    lines.append(f'# TYPE {name} {mtype}')
    if value is None:
        value = 'NaN'
    elif value is True or value is False:
        value = int(value)
    lines.append(f'{name} {value}')


_COORDINATOR_COUNTERS = (
    ('total_calls', 'Coordinated fetch calls'),
    ('coalesced_waits', 'Calls that joined an in-flight fetch'),
    ('network_attempts', 'Network attempts made'),
    ('successes', 'Fetches that ended in 2xx'),
    ('backoff_rejections', 'Fetches rejected by an active backoff'),
    ('rate_limited_responses', 'HTTP 429 responses'),
    ('server_errors', 'HTTP 5xx responses'),
    ('client_errors', 'Non-retryable HTTP 4xx responses'),
    ('network_errors', 'Attempts failed by timeout, DNS or connect errors'),
    ('unreachable_short_circuits', 'Unreachable-origin statuses'),
    ('retries_exhausted', 'Fetches that ran out of attempts'),
)


def emit_coordinator_prometheus(lines: List[str], snap: Dict[str, Any]):
    for key, help_text in _COORDINATOR_COUNTERS:
        emit_prometheus(lines, f'upstream_{key}_total', snap.get(key, 0), 'counter', help_text)
    emit_prometheus(lines, 'upstream_inflight', snap.get('inflight', 0), 'gauge', 'In-flight coalesced fetches')
    emit_prometheus(lines, 'upstream_last_fetch_duration_ms', snap.get('last_fetch_duration_ms'), 'gauge',
                    'Duration of the last completed fetch (ms)')
    emit_prometheus(lines, 'upstream_p95_fetch_duration_ms', snap.get('p95_fetch_duration_ms'), 'gauge',
                    'p95 fetch duration over the recent window (ms)')
    emit_prometheus(lines, 'upstream_worst_case_seconds', snap.get('worst_case_seconds'), 'gauge',
                    'Worst-case latency bound of one coordinated fetch')
    buckets = snap.get('fetch_duration_hist_buckets') or {}
    if buckets:
        lines.append('# HELP upstream_fetch_duration_ms Fetch duration histogram')
        lines.append('# TYPE upstream_fetch_duration_ms histogram')
        cumulative = 0
        for edge, count in buckets.items():
            cumulative += int(count)
            lines.append(f'upstream_fetch_duration_ms_bucket{{le="{edge}"}} {cumulative}')
        cumulative += int(snap.get('fetch_duration_hist_overflow', 0))
        lines.append(f'upstream_fetch_duration_ms_bucket{{le="+Inf"}} {cumulative}')
        lines.append(f"upstream_fetch_duration_ms_sum {snap.get('fetch_duration_sum_ms', 0)}")
        lines.append(f"upstream_fetch_duration_ms_count {snap.get('fetch_duration_count', 0)}")


def emit_counter_block(lines: List[str], prefix: str, stats: Dict[str, int]):
    for key, value in stats.items():
        emit_prometheus(lines, f'{prefix}_{key}_total', value, 'counter', f'{prefix} {key.replace("_", " ")}')
