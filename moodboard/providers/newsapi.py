"""NewsAPI ``/everything`` headlines for a coin."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from moodboard.cache import iso_from_epoch
from moodboard.errors import InvalidUpstreamPayload
from moodboard.providers.base import UpstreamProvider
from moodboard.providers.coincap import Coin
from moodboard.transport import UpstreamRequest, UpstreamResponse

MIN_TITLE_LENGTH = 10


def search_query(coin: Coin) -> str:
    return ' OR '.join([coin.name, coin.symbol, 'cryptocurrency', 'crypto'])


def _keep(article: Any) -> bool:
    if not isinstance(article, dict):
        return False
    title = article.get('title')
    if not isinstance(title, str) or len(title) <= MIN_TITLE_LENGTH:
        return False
    return '[Removed]' not in title and 'advertisement' not in title.lower()


class NewsApiProvider(UpstreamProvider):
    name = 'newsapi'
    api_key_setting = 'NEWSAPI_KEY'

    def headers(self) -> Dict[str, str]:
        h = self.base_headers()
        if self.api_key:
            # Header auth keeps the key out of URLs and logs
            h['X-Api-Key'] = self.api_key
        return h

    def news_request(self, coin: Coin, now: float) -> UpstreamRequest:
        since = (datetime.fromtimestamp(now, timezone.utc) - timedelta(days=1)).strftime('%Y-%m-%d')
        return UpstreamRequest(
            url=f"{self.config['NEWSAPI_BASE']}/everything",
            params={
                'q': search_query(coin),
                'language': 'en',
                'sortBy': 'publishedAt',
                'pageSize': 20,
                'from': since,
            },
            headers=self.headers(),
            resource_key=f'news:{coin.id}',
        )

    def parse_news(self, coin: Coin, response: UpstreamResponse, now: float) -> Dict[str, Any]:
        rk = f'news:{coin.id}'
        body = self.json_body(response, rk)
        if not isinstance(body, dict):
            raise InvalidUpstreamPayload('NewsAPI body is not an object', detail={'resource_key': rk})
        if body.get('status') == 'error':
            raise InvalidUpstreamPayload(f"NewsAPI error: {body.get('message') or body.get('code')}",
                                         detail={'resource_key': rk, 'code': body.get('code')})
        articles = body.get('articles')
        if not isinstance(articles, list):
            raise InvalidUpstreamPayload('NewsAPI body has no articles list', detail={'resource_key': rk})
        limit = int(self.config.get('NEWS_MAX_HEADLINES', 15))
        headlines: List[Dict[str, Any]] = []
        for a in filter(_keep, articles):
            src = a.get('source')
            headlines.append({
                'title': a['title'].strip(),
                'description': (a.get('description') or '').strip(),
                'url': a.get('url'),
                'source': (src.get('name') if isinstance(src, dict) else None) or 'Unknown',
                'publishedAt': a.get('publishedAt'),
                'author': a.get('author'),
                'urlToImage': a.get('urlToImage'),
            })
            if len(headlines) >= limit:
                break
        return {
            'coin': coin.id,
            'headlines': headlines,
            'total': int(body.get('totalResults') or len(headlines)),
            'source': self.name,
            'query': search_query(coin),
            'timestamp': iso_from_epoch(now),
        }


__all__ = ['NewsApiProvider', 'search_query']
