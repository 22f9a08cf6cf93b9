"""Headline mood scoring with the VADER lexicon analyzer.

Used when no Cohere key is configured or the Cohere call fails. Scores are
normalized to 0..1 (0.5 neutral) with Bullish/Neutral/Bearish labels.
"""
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from vaderSentiment.vaderSentiment import SentimentIntensityAnalyzer

logger = logging.getLogger(__name__)

BULLISH_MIN = 0.66
BEARISH_MAX = 0.33

# Crypto vocabulary on a 0..1 scale, folded into VADER's -4..4 lexicon
CRYPTO_LEXICON = {
    'moon': 0.9, 'mooning': 0.9, 'bullish': 0.8, 'pump': 0.85, 'rally': 0.8, 'surge': 0.8,
    'soar': 0.85, 'ath': 0.8, 'breakout': 0.75, 'adoption': 0.7, 'accumulate': 0.75,
    'recovery': 0.7, 'gains': 0.75, 'approved': 0.7, 'upgrade': 0.65,
    'correction': 0.4, 'volatility': 0.45, 'uncertainty': 0.45, 'sideways': 0.45,
    'bearish': 0.2, 'dump': 0.25, 'crash': 0.2, 'plunge': 0.2, 'plummet': 0.15, 'selloff': 0.25,
    'liquidated': 0.1, 'rekt': 0.1, 'capitulation': 0.1, 'hack': 0.1, 'exploit': 0.15,
    'rugpull': 0.0, 'scam': 0.0, 'ponzi': 0.0, 'fraud': 0.05,
}

_ANALYZER: Optional[SentimentIntensityAnalyzer] = None
_ANALYZER_LOCK = threading.Lock()


def get_analyzer() -> SentimentIntensityAnalyzer:
    global _ANALYZER
    with _ANALYZER_LOCK:
        if _ANALYZER is None:
            analyzer = SentimentIntensityAnalyzer()
            for term, score in CRYPTO_LEXICON.items():
                analyzer.lexicon[term] = (score - 0.5) * 8
            _ANALYZER = analyzer
            logger.info("VADER sentiment analyzer initialized (%d crypto terms)", len(CRYPTO_LEXICON))
        return _ANALYZER


def label_for(score: float) -> str:
    if score >= BULLISH_MIN:
        return 'Bullish'
    if score <= BEARISH_MAX:
        return 'Bearish'
    return 'Neutral'


def _headline_text(h: Any) -> str:
    if isinstance(h, dict):
        return f"{h.get('title') or ''} {h.get('description') or ''}".strip()
    return str(h or '').strip()


def score_headlines(headlines: Iterable[Any]) -> Dict[str, Any]:
    """Average VADER compound score of the headlines mapped to 0..1."""
    texts: List[str] = [t for t in (_headline_text(h) for h in headlines) if t]
    if not texts:
        return {'score': 0.5, 'label': 'Neutral'}
    analyzer = get_analyzer()
    compound = sum(analyzer.polarity_scores(t)['compound'] for t in texts) / len(texts)
    score = round((compound + 1) / 2, 2)
    return {'score': score, 'label': label_for(score)}
