"""Typed failures raised by the upstream fetch layer and request handlers.

Every client-visible failure derives from :class:`UpstreamError` and renders an
``ErrorEnvelope`` (``kind``, ``message``, ``detail``, ``retry_after``). The
Flask layer maps ``http_status`` onto the response; nothing below the app
module knows about HTTP responses.
"""
from __future__ import annotations

import math
from typing import Any, Dict, Optional


class UpstreamError(Exception):
    kind = 'UpstreamError'
    http_status = 502

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.retry_after = retry_after

    def envelope(self) -> Dict[str, Any]:
        out = {'kind': self.kind, 'message': self.message, 'detail': self.detail}
        if self.retry_after is not None and math.isfinite(self.retry_after):
            out['retry_after'] = max(0, int(round(self.retry_after)))
        return out


class BackoffInEffect(UpstreamError):
    """A 429 cooldown is active for the resource; no network call was made."""

    kind = 'BackoffInEffect'
    http_status = 503

    def __init__(self, resource_key: str, until: float, remaining: float):
        super().__init__(
            f'backoff in effect for {resource_key}, {remaining:.1f}s left',
            detail={'resource_key': resource_key, 'until': until},
            retry_after=remaining,
        )
        self.until = until
        self.remaining = remaining


class NetworkOrDnsFailure(UpstreamError):
    """The upstream could not be reached (DNS, connect, timeout, or origin unreachable)."""

    kind = 'NetworkOrDnsFailure'
    http_status = 504

    def __init__(self, message: str, *, detail=None, retry_after=None, status: Optional[int] = None):
        super().__init__(message, detail=detail, retry_after=retry_after)
        self.status = status
        # An unreachable-origin status came back through a gateway, not a timeout.
        if status is not None:
            self.http_status = 502


class UpstreamHttpError(UpstreamError):
    """Non-retryable upstream response (4xx other than 429)."""

    kind = 'UpstreamHttpError'

    def __init__(self, status: int, message: Optional[str] = None, *, detail=None):
        super().__init__(message or f'upstream returned HTTP {status}', detail=detail)
        self.status = status
        self.detail.setdefault('status', status)


class RetriesExhausted(UpstreamError):
    kind = 'RetriesExhausted'

    def __init__(self, attempts: int, last_status: Optional[int], *, detail=None, retry_after=None):
        msg = f'exhausted {attempts} attempt(s)'
        if last_status is not None:
            msg += f', last status {last_status}'
        super().__init__(msg, detail=detail, retry_after=retry_after)
        self.attempts = attempts
        self.last_status = last_status


class InvalidUpstreamPayload(UpstreamError):
    """Upstream answered 2xx but the body failed handler-level validation."""

    kind = 'InvalidUpstreamPayload'


class LegacyDataEvicted(Exception):
    """Internal signal: a legacy-tagged cache entry was removed. Never sent to clients."""

    def __init__(self, key: str, tag: str):
        super().__init__(f'legacy cache entry {key} ({tag}) evicted')
        self.key = key
        self.tag = tag


__all__ = [
    'UpstreamError', 'BackoffInEffect', 'NetworkOrDnsFailure', 'UpstreamHttpError',
    'RetriesExhausted', 'InvalidUpstreamPayload', 'LegacyDataEvicted',
]
