"""
Content signal heuristics and reporting period keys.

Deterministic keyword rules used for queue prioritization and as the
fallback when the analysis provider is unavailable.
"""

import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from domain.models import Priority

URGENT_KEYWORDS = ('emergency', 'critical', 'urgent', 'immediate', 'asap')

INFORMATIONAL_MARKERS = (
    'fyi', 'newsletter', 'digest', 'for your information',
    'no action', 'weekly summary', 'announcement'
)

HIGH_IMPORTANCE_KEYWORDS = ('critical', 'urgent', 'important', 'risk', 'security', 'deadline')
LOW_IMPORTANCE_KEYWORDS = ('note', 'optional', 'suggestion', 'minor')

POSITIVE_WORDS = ('great', 'good', 'success', 'win', 'launched', 'improved', 'ahead', 'happy', 'completed')
NEGATIVE_WORDS = ('blocked', 'delay', 'delayed', 'risk', 'issue', 'problem', 'behind', 'concern', 'failed', 'churn')

STOPWORDS = frozenset((
    'the', 'and', 'for', 'with', 'this', 'that', 'from', 'have', 'has', 'are', 'was',
    'were', 'will', 'our', 'your', 'their', 'they', 'them', 'into', 'about', 'week',
    'things', 'top', 'also', 'been', 'more', 'than', 'just', 'some', 'team', 'all'
))

_LIST_ITEM = re.compile(r'^\s*(?:\d+[.)]|[-*•])\s+(.+?)\s*$')
_WORD = re.compile(r'[a-z][a-z\-]{2,}')


def _contains_word(text: str, phrase: str) -> bool:
    return re.search(r'\b' + re.escape(phrase) + r'\b', text) is not None


def derive_priority(subject: str, body: str = '') -> Priority:
    """
    Derive analysis priority from content signals.

    Urgency keywords anywhere mean HIGH; informational subject markers mean
    LOW; everything else is MEDIUM.

    Example:
        >>> derive_priority('URGENT: outage in eu-west', '')
        <Priority.HIGH: 'high'>
        >>> derive_priority('FYI: office closed Friday', '')
        <Priority.LOW: 'low'>
    """
    subject_lower = (subject or '').lower()
    body_lower = (body or '').lower()

    if any(_contains_word(subject_lower, k) or _contains_word(body_lower, k) for k in URGENT_KEYWORDS):
        return Priority.HIGH
    if any(_contains_word(subject_lower, m) for m in INFORMATIONAL_MARKERS):
        return Priority.LOW
    return Priority.MEDIUM


def determine_importance(text: str) -> str:
    """Classify text importance as 'high', 'medium' or 'low'."""
    lowered = (text or '').lower()
    if any(k in lowered for k in HIGH_IMPORTANCE_KEYWORDS):
        return 'high'
    if any(k in lowered for k in LOW_IMPORTANCE_KEYWORDS):
        return 'low'
    return 'medium'


def score_sentiment(text: str) -> float:
    """Score sentiment in [-1, 1] from positive/negative word counts."""
    lowered = (text or '').lower()
    positive = sum(1 for w in POSITIVE_WORDS if _contains_word(lowered, w))
    negative = sum(1 for w in NEGATIVE_WORDS if _contains_word(lowered, w))
    total = positive + negative
    if total == 0:
        return 0.0
    return round((positive - negative) / total, 2)


def sentiment_label(score: float) -> str:
    if score > 0.2:
        return 'positive'
    if score < -0.2:
        return 'negative'
    return 'neutral'


def extract_items(body: str, max_items: int = 5) -> List[str]:
    """
    Extract list items (numbered or bulleted lines) from a body.

    Falls back to the first non-empty lines when no list is present.
    """
    lines = (body or '').splitlines()
    items = []
    for line in lines:
        match = _LIST_ITEM.match(line)
        if match:
            items.append(match.group(1))
    if not items:
        items = [line.strip() for line in lines if line.strip()]
    return items[:max_items]


def extract_topics(text: str, limit: int = 5) -> List[str]:
    """Return the most frequent non-stopword terms."""
    words = [w for w in _WORD.findall((text or '').lower()) if w not in STOPWORDS]
    return [word for word, _ in Counter(words).most_common(limit)]


def heuristic_insights(subject: str, body: str) -> List[Dict[str, Any]]:
    """
    Build insight records for one submission without the provider.

    Returns:
        List of dicts with text, topics, sentiment, priority and urgent keys
    """
    insights = []
    for item in extract_items(body):
        score = score_sentiment(item)
        importance = determine_importance(item)
        insights.append({
            'text': item,
            'topics': extract_topics(item, limit=3),
            'sentiment': sentiment_label(score),
            'sentiment_score': score,
            'priority': importance,
            'urgent': derive_priority(subject, item) is Priority.HIGH
        })
    return insights


def week_key(date: Optional[datetime] = None) -> str:
    """
    ISO week key, e.g. '2025-W10'.

    Uses the ISO week-year so late-December dates that belong to week 1 of
    the next year get that year's key.
    """
    date = date or datetime.now(timezone.utc)
    iso_year, iso_week, _ = date.isocalendar()
    return f"{iso_year}-W{iso_week}"


def day_key(date: Optional[datetime] = None) -> str:
    date = date or datetime.now(timezone.utc)
    return date.strftime('%Y-%m-%d')


def month_key(date: Optional[datetime] = None) -> str:
    date = date or datetime.now(timezone.utc)
    return date.strftime('%Y-%m')


def period_key(period: str, date: Optional[datetime] = None) -> str:
    """Key for 'day', 'week', 'month' or 'year' periods."""
    if period == 'day':
        return day_key(date)
    if period == 'week':
        return week_key(date)
    if period == 'month':
        return month_key(date)
    date = date or datetime.now(timezone.utc)
    return str(date.year)
