"""Cohere chat v2 mood scoring for headlines (optional)."""
from __future__ import annotations

import json
import re
from typing import Any, Dict, List

from moodboard.errors import InvalidUpstreamPayload
from moodboard.providers.base import UpstreamProvider
from moodboard.providers.coincap import Coin
from moodboard.sentiment import label_for
from moodboard.transport import UpstreamRequest, UpstreamResponse

MAX_HEADLINES = 10
_JSON_OBJECT = re.compile(r'\{.*\}', re.DOTALL)

PROMPT = """Analyze the sentiment of these cryptocurrency news headlines and determine the overall market mood.

Headlines:
{headlines}

Respond with ONLY a JSON object in this exact format:
{{"score": 0.75, "label": "Bullish", "summary": ["Point 1", "Point 2", "Point 3"]}}

Rules:
- "score": a number between 0 and 1 (0.0-0.33 Bearish, 0.34-0.66 Neutral, 0.67-1.0 Bullish)
- "label": one of "Bullish", "Neutral", "Bearish"
- "summary": exactly 3 short strings naming the main sentiment drivers
- Use ONLY the provided headlines"""


class CohereProvider(UpstreamProvider):
    name = 'cohere'
    api_key_setting = 'COHERE_API_KEY'

    def sentiment_request(self, coin: Coin, headlines: List[Dict[str, Any]]) -> UpstreamRequest:
        texts = [h.get('title', '') for h in headlines if len(h.get('title') or '') > 5][:MAX_HEADLINES]
        prompt = PROMPT.format(headlines='\n'.join(f'{i}. {t}' for i, t in enumerate(texts, 1)))
        headers = self.base_headers()
        headers.update({'Authorization': f'Bearer {self.api_key}', 'Content-Type': 'application/json'})
        return UpstreamRequest(
            url=f"{self.config['COHERE_API_BASE']}/chat",
            method='POST',
            headers=headers,
            json_body={
                'model': self.config.get('COHERE_MODEL'),
                'messages': [{'role': 'user', 'content': prompt}],
                'temperature': 0.3,
                'max_tokens': 500,
            },
            resource_key=f'sentiment-ai:{coin.id}',
        )

    def parse_sentiment(self, response: UpstreamResponse, resource_key: str) -> Dict[str, Any]:
        body = self.json_body(response, resource_key)
        try:
            text = body['message']['content'][0]['text']
        except (KeyError, IndexError, TypeError) as e:
            raise InvalidUpstreamPayload('Cohere response has no message text',
                                         detail={'resource_key': resource_key}) from e
        match = _JSON_OBJECT.search(text or '')
        if not match:
            raise InvalidUpstreamPayload('no JSON object in Cohere reply', detail={'resource_key': resource_key})
        try:
            result = json.loads(match.group(0))
        except ValueError as e:
            raise InvalidUpstreamPayload('unparseable JSON in Cohere reply',
                                         detail={'resource_key': resource_key}) from e
        score = result.get('score') if isinstance(result, dict) else None
        if isinstance(score, bool) or not isinstance(score, (int, float)) or not 0 <= score <= 1:
            raise InvalidUpstreamPayload('Cohere score missing or out of range',
                                         detail={'resource_key': resource_key})
        score = round(float(score), 2)
        label = result.get('label')
        summary = result.get('summary')
        return {
            'score': score,
            'label': label if label in ('Bullish', 'Neutral', 'Bearish') else label_for(score),
            'summary': [str(s) for s in summary] if isinstance(summary, list) else [],
        }


__all__ = ['CohereProvider']
