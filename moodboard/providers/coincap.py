"""CoinCap v3 asset price and history."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List

from moodboard.cache import iso_from_epoch
from moodboard.errors import InvalidUpstreamPayload
from moodboard.providers.base import UpstreamProvider
from moodboard.transport import UpstreamRequest, UpstreamResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Coin:
    id: str
    name: str
    symbol: str
    coincap_id: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


SUPPORTED_COINS: Dict[str, Coin] = {c.id: c for c in (
    Coin('bitcoin', 'Bitcoin', 'BTC', 'bitcoin'),
    Coin('ethereum', 'Ethereum', 'ETH', 'ethereum'),
    Coin('litecoin', 'Litecoin', 'LTC', 'litecoin'),
    Coin('bitcoin-cash', 'Bitcoin Cash', 'BCH', 'bitcoin-cash'),
    Coin('cardano', 'Cardano', 'ADA', 'cardano'),
    Coin('ripple', 'Ripple', 'XRP', 'xrp'),
    Coin('dogecoin', 'Dogecoin', 'DOGE', 'dogecoin'),
    Coin('polkadot', 'Polkadot', 'DOT', 'polkadot'),
    Coin('chainlink', 'Chainlink', 'LINK', 'chainlink'),
    Coin('stellar', 'Stellar', 'XLM', 'stellar'),
    Coin('monero', 'Monero', 'XMR', 'monero'),
    Coin('tezos', 'Tezos', 'XTZ', 'tezos'),
    Coin('eos', 'EOS', 'EOS', 'eos'),
    Coin('zcash', 'Zcash', 'ZEC', 'zcash'),
    Coin('dash', 'Dash', 'DASH', 'dash'),
    Coin('solana', 'Solana', 'SOL', 'solana'),
)}

DAY_MS = 24 * 60 * 60 * 1000


def _num(value: Any, field: str, resource_key: str) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError) as e:
        raise InvalidUpstreamPayload(f'non-numeric {field} for {resource_key}',
                                     detail={'resource_key': resource_key, 'field': field}) from e


class CoinCapProvider(UpstreamProvider):
    name = 'coincap'
    api_key_setting = 'COINCAP_API_KEY'

    def configured(self) -> bool:
        # Works without a key at the lower free-tier rate limit
        return True

    @property
    def base_url(self) -> str:
        return self.config['COINCAP_API_BASE']

    def headers(self) -> Dict[str, str]:
        h = self.base_headers()
        if self.api_key:
            h['Authorization'] = f'Bearer {self.api_key}'
        return h

    # ------------------------------------------------------------------ price
    def price_request(self, coin: Coin) -> UpstreamRequest:
        return UpstreamRequest(
            url=f'{self.base_url}/assets',
            params={'ids': coin.coincap_id},
            headers=self.headers(),
            resource_key=f'price:{coin.id}',
        )

    def parse_price(self, coin: Coin, response: UpstreamResponse, now: float) -> Dict[str, Any]:
        rk = f'price:{coin.id}'
        body = self.json_body(response, rk)
        items = body.get('data') if isinstance(body, dict) else None
        if not isinstance(items, list) or not items:
            raise InvalidUpstreamPayload(f'CoinCap returned no assets for {coin.coincap_id}',
                                         detail={'resource_key': rk})
        item = next((it for it in items if isinstance(it, dict)
                     and str(it.get('id', '')).lower() == coin.coincap_id), None)
        if item is None:
            raise InvalidUpstreamPayload(f'CoinCap response missing asset {coin.coincap_id}',
                                         detail={'resource_key': rk})
        return {
            'coin': coin.id,
            'price': round(_num(item.get('priceUsd'), 'priceUsd', rk), 2),
            'change24h': round(_num(item.get('changePercent24Hr'), 'changePercent24Hr', rk), 2),
            'market_cap': _num(item.get('marketCapUsd'), 'marketCapUsd', rk),
            'volume_24h': _num(item.get('volumeUsd24Hr'), 'volumeUsd24Hr', rk),
            'symbol': item.get('symbol') or coin.symbol,
            'timestamp': iso_from_epoch(now),
            'source': self.name,
        }

    # ---------------------------------------------------------------- history
    def history_request(self, coin: Coin, days: int, now: float) -> UpstreamRequest:
        # Daily candles from a week up, hourly below
        interval = 'd1' if days >= 7 else 'h1'
        # Window end is truncated to the minute so concurrent identical requests share a URL
        end = int(now // 60) * 60 * 1000
        return UpstreamRequest(
            url=f'{self.base_url}/assets/{coin.coincap_id}/history',
            params={'interval': interval, 'start': end - days * DAY_MS, 'end': end},
            headers=self.headers(),
            resource_key=f'history:{coin.id}:{days}',
        )

    def parse_history(self, coin: Coin, days: int, response: UpstreamResponse, now: float) -> Dict[str, Any]:
        rk = f'history:{coin.id}:{days}'
        body = self.json_body(response, rk)
        rows = body.get('data') if isinstance(body, dict) else None
        if not isinstance(rows, list) or not rows:
            raise InvalidUpstreamPayload(f'CoinCap returned no history for {coin.coincap_id}',
                                         detail={'resource_key': rk})
        points: List[Dict[str, Any]] = []
        for p in rows:
            if not isinstance(p, dict):
                continue
            points.append({
                'timestamp': iso_from_epoch(_num(p.get('time'), 'time', rk) / 1000.0),
                'price': round(_num(p.get('priceUsd'), 'priceUsd', rk), 2),
            })
        return {
            'coin': coin.id,
            'prices': points,
            'days': days,
            'symbol': coin.symbol,
            'source': self.name,
            'timestamp': iso_from_epoch(now),
        }


__all__ = ['Coin', 'SUPPORTED_COINS', 'CoinCapProvider']
