"""Crypto mood dashboard backend: coordinated, cached access to price, news and sentiment upstreams."""

__version__ = "1.0.0"
