"""Pydantic models for upstream payloads and API responses.

Provider payloads are validated here before they are written to the cache; a
failure becomes ``InvalidUpstreamPayload`` so bad data never replaces good data.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from moodboard.errors import InvalidUpstreamPayload

M = TypeVar('M', bound=BaseModel)


class PriceData(BaseModel):
    model_config = ConfigDict(extra="allow")

    coin: str
    price: float = Field(gt=0)
    change24h: float
    symbol: str
    market_cap: float | None = None
    volume_24h: float | None = None
    timestamp: str
    source: str


class HistoryPoint(BaseModel):
    timestamp: str = Field(min_length=1)
    price: float = Field(gt=0)


class HistoryData(BaseModel):
    model_config = ConfigDict(extra="allow")

    coin: str
    prices: List[HistoryPoint] = Field(min_length=1)
    days: int
    symbol: str
    source: str
    timestamp: str | None = None


class NewsArticle(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str = Field(min_length=1)
    description: str = ''
    url: str | None = None
    source: str = 'Unknown'
    publishedAt: str | None = None
    author: str | None = None
    urlToImage: str | None = None


class NewsData(BaseModel):
    model_config = ConfigDict(extra="allow")

    coin: str
    headlines: List[NewsArticle]
    total: int
    source: str
    query: str | None = None
    timestamp: str | None = None


class SentimentHeadline(BaseModel):
    title: str
    url: str | None = None
    publishedAt: str | None = None


class SentimentSummary(BaseModel):
    model_config = ConfigDict(extra="allow")

    coin: str
    score: float = Field(ge=0, le=1)
    label: str
    count: int
    headlines: List[SentimentHeadline] = Field(default_factory=list)
    summary: List[str] | None = None
    source: str
    timestamp: str

    @field_validator('label')
    @classmethod
    def _known_label(cls, v: str) -> str:
        if v not in ('Bullish', 'Neutral', 'Bearish'):
            raise ValueError(f'unknown label {v!r}')
        return v


class ErrorEnvelope(BaseModel):
    kind: str
    message: str
    detail: Dict[str, Any] = Field(default_factory=dict)
    retry_after: Optional[int] = None


class PurgeResponse(BaseModel):
    status: str
    deletedCount: int
    deletedKeys: List[str]
    errors: List[str]
    timestamp: str


class HealthResponse(BaseModel):
    status: str = Field(pattern='^(ok|degraded)$')
    uptime_seconds: float
    errors_5xx: int
    kv_backend: str
    kv_ok: bool


def validate_payload(model: Type[M], payload: Any, resource_key: str) -> Dict[str, Any]:
    """Validate ``payload`` against ``model`` and return the normalized dict."""
    try:
        return model.model_validate(payload).model_dump(exclude_none=True)
    except ValidationError as e:
        raise InvalidUpstreamPayload(
            f'invalid {model.__name__} payload for {resource_key}',
            detail={'resource_key': resource_key, 'errors': e.errors(include_url=False, include_context=False,
                                                                 include_input=False)},
        ) from e


__all__ = [
    'PriceData', 'HistoryPoint', 'HistoryData', 'NewsArticle', 'NewsData', 'SentimentHeadline',
    'SentimentSummary', 'ErrorEnvelope', 'PurgeResponse', 'HealthResponse', 'validate_payload',
]
