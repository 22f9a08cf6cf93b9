"""HTTP request/response primitive used by the coordinator.

The coordinator owns retries, so the session's adapter is mounted with
``max_retries=0``; each call makes exactly one network attempt.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from requests.exceptions import ConnectionError, ConnectTimeout, ReadTimeout, RequestException

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpstreamRequest:
    url: str
    resource_key: str
    method: str = 'GET'
    headers: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    params: Optional[Dict[str, Any]] = field(default=None, hash=False, compare=False)
    json_body: Optional[Dict[str, Any]] = field(default=None, hash=False, compare=False)

    @property
    def resolved_url(self) -> str:
        if not self.params:
            return self.url
        return requests.Request(self.method, self.url, params=self.params).prepare().url

    @property
    def signature(self) -> Tuple[str, str, str]:
        return (self.method.upper(), self.resolved_url, self.resource_key)


@dataclass
class UpstreamResponse:
    status: int
    headers: Dict[str, str]
    text: str

    def json(self) -> Any:
        """Parsed body, or None when the body is not JSON."""
        try:
            return json.loads(self.text) if self.text else None
        except ValueError:
            return None

    def header(self, name: str) -> Optional[str]:
        lname = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lname:
                return v
        return None


class TransportError(Exception):
    """One network attempt failed before an HTTP status was received."""

    def __init__(self, message: str, category: str):
        super().__init__(message)
        self.category = category  # 'timeout' | 'dns' | 'connect' | 'network'


class RequestsTransport:
    def __init__(self, timeout: Tuple[float, float] = (3.0, 5.0), pool_maxsize: int = 32,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        adapter = HTTPAdapter(pool_connections=pool_maxsize, pool_maxsize=pool_maxsize, max_retries=0)
        self.session.mount('https://', adapter)
        self.session.mount('http://', adapter)

    @property
    def timeout_total(self) -> float:
        return float(sum(self.timeout))

    def send(self, req: UpstreamRequest) -> UpstreamResponse:
        try:
            r = self.session.request(
                req.method,
                req.url,
                params=req.params,
                json=req.json_body,
                headers=req.headers,
                timeout=self.timeout,
            )
        except (ConnectTimeout, ReadTimeout) as e:
            raise TransportError(f'timeout: {e}', 'timeout') from e
        except ConnectionError as e:
            text = str(e)
            category = 'dns' if ('Name or service not known' in text or 'getaddrinfo' in text
                                 or 'NameResolution' in text) else 'connect'
            raise TransportError(text, category) from e
        except RequestException as e:
            raise TransportError(str(e), 'network') from e
        return UpstreamResponse(status=r.status_code, headers=dict(r.headers), text=r.text)


__all__ = ['UpstreamRequest', 'UpstreamResponse', 'TransportError', 'RequestsTransport']
