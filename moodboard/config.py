"""Runtime configuration for the mood dashboard backend.

Values come from environment variables (a local ``.env`` is loaded first) with
defaults tuned for the free CoinCap/NewsAPI tiers. ``CONFIG`` is built once at
import; ``load_config`` rebuilds it with overrides for the app factory and
tests.
"""
from __future__ import annotations

import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

SECRET_KEYS = {'COINCAP_API_KEY', 'NEWSAPI_KEY', 'COHERE_API_KEY', 'ADMIN_PURGE_TOKEN', 'REDIS_URL'}


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.environ.get(name, default).strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_csv(name: str, default: str) -> list[str]:
    return [x.strip() for x in os.environ.get(name, default).split(',') if x.strip()]


def _env_statuses(name: str, default: str) -> set[int]:
    return {int(x) for x in _env_csv(name, default) if x.isdigit()}


def _build_config() -> Dict[str, Any]:
    return {
        # Storage
        'REDIS_URL': os.environ.get('REDIS_URL') or None,
        'KV_PREFIX': os.environ.get('KV_PREFIX', 'mood:'),
        # Upstreams
        'COINCAP_API_BASE': os.environ.get('COINCAP_API_BASE', 'https://rest.coincap.io/v3').rstrip('/'),
        'COINCAP_API_KEY': os.environ.get('COINCAP_API_KEY') or None,
        'NEWSAPI_BASE': os.environ.get('NEWSAPI_BASE', 'https://newsapi.org/v2').rstrip('/'),
        'NEWSAPI_KEY': os.environ.get('NEWSAPI_KEY') or None,
        'COHERE_API_BASE': os.environ.get('COHERE_API_BASE', 'https://api.cohere.com/v2').rstrip('/'),
        'COHERE_API_KEY': os.environ.get('COHERE_API_KEY') or None,
        'COHERE_MODEL': os.environ.get('COHERE_MODEL', 'command-r-plus-08-2024'),
        'USER_AGENT': os.environ.get('USER_AGENT', 'Crypto-Mood-Dashboard/1.0'),
        # Admin
        'ADMIN_PURGE_TOKEN': os.environ.get('ADMIN_PURGE_TOKEN') or None,
        'LEGACY_PROVIDERS': _env_csv('LEGACY_PROVIDERS', 'coingecko'),
        # Source tags accepted as current when reading entries written before provenance was stored
        'CURRENT_PROVIDERS': _env_csv('CURRENT_PROVIDERS', 'coincap,newsapi,cohere,vader,rule-based'),
        # Cache freshness (seconds)
        'PRICE_TTL_SECONDS': int(os.environ.get('PRICE_TTL_SECONDS', 60)),
        'HISTORY_TTL_SECONDS': int(os.environ.get('HISTORY_TTL_SECONDS', 60)),
        'NEWS_TTL_SECONDS': int(os.environ.get('NEWS_TTL_SECONDS', 300)),
        'SENTIMENT_TTL_SECONDS': int(os.environ.get('SENTIMENT_TTL_SECONDS', 600)),
        'CACHE_MAX_AGE_SECONDS': int(os.environ.get('CACHE_MAX_AGE_SECONDS', 48 * 60 * 60)),
        # Coordinator retry policy
        'FETCH_MAX_ATTEMPTS': int(os.environ.get('FETCH_MAX_ATTEMPTS', 2)),
        'FETCH_TIMEOUT_CONNECT': float(os.environ.get('FETCH_TIMEOUT_CONNECT', 3)),
        'FETCH_TIMEOUT_READ': float(os.environ.get('FETCH_TIMEOUT_READ', 5)),
        'BACKOFF_429_BASE': float(os.environ.get('BACKOFF_429_BASE', 0.5)),
        'BACKOFF_429_MAX': float(os.environ.get('BACKOFF_429_MAX', 5)),
        'BACKOFF_5XX_BASE': float(os.environ.get('BACKOFF_5XX_BASE', 0.3)),
        'BACKOFF_5XX_MAX': float(os.environ.get('BACKOFF_5XX_MAX', 1)),
        'UNREACHABLE_STATUSES': _env_statuses('UNREACHABLE_STATUSES', '530'),
        'HTTP_POOL_MAXSIZE': int(os.environ.get('HTTP_POOL_MAXSIZE', 32)),
        # Endpoint limits
        'HISTORY_MAX_DAYS': int(os.environ.get('HISTORY_MAX_DAYS', 30)),
        'NEWS_MAX_HEADLINES': int(os.environ.get('NEWS_MAX_HEADLINES', 15)),
        # Server
        'CORS_ALLOWED_ORIGINS': os.environ.get('CORS_ALLOWED_ORIGINS', '*'),
        'HOST': os.environ.get('HOST', '0.0.0.0'),
        'PORT': int(os.environ.get('PORT', 8787)),
        'DEBUG': _env_bool('DEBUG'),
    }


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return a fresh configuration mapping with ``overrides`` applied."""
    cfg = _build_config()
    if overrides:
        cfg.update(overrides)
    cfg['FETCH_MAX_ATTEMPTS'] = max(1, min(5, int(cfg['FETCH_MAX_ATTEMPTS'])))
    return cfg


def masked(config: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``config`` with secret values hidden, safe to log or expose."""
    out = {}
    for key, value in config.items():
        if key in SECRET_KEYS and value:
            out[key] = '***'
        else:
            out[key] = value
    return out


CONFIG = load_config()
