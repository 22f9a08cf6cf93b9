"""Base exports for upstream provider integrations."""
from .base import UpstreamProvider
from .coincap import SUPPORTED_COINS, Coin, CoinCapProvider
from .cohere import CohereProvider
from .newsapi import NewsApiProvider

__all__ = ["UpstreamProvider", "Coin", "SUPPORTED_COINS", "CoinCapProvider", "NewsApiProvider", "CohereProvider"]
