"""
Intelligence analysis with an LLM provider and a deterministic fallback.

The provider sees a bounded, redacted payload only. A failed call is
retried once; after that, or on a malformed response, the batch is
analyzed with keyword heuristics so ingestion never depends on the
provider being up.
"""

import asyncio
import json
import logging
import os
import re
from typing import Any, Callable, Dict, List, Optional

from .errors import ConfigurationError, TransientAnalysisFailure
from .models import AnalysisOutcome, QueuedMessage
from integrations import analysis_provider
from services import prompts
from services.signals import heuristic_insights

logger = logging.getLogger(__name__)

ANALYSIS_MAX_BODY_CHARS = int(os.environ.get('ANALYSIS_MAX_BODY_CHARS', '2000'))

PROVIDER_ATTEMPTS = 2

_EMAIL = re.compile(r'[\w.+\-]+@[\w\-]+(?:\.[\w\-]+)+')
_LONG_NUMBER = re.compile(r'\d{6,}')
_JSON_FENCE = re.compile(r'^```(?:json)?\s*|\s*```$', re.MULTILINE)

SENTIMENTS = ('positive', 'neutral', 'negative')
PRIORITIES = ('high', 'medium', 'low')


def redact(text: str, max_chars: int = ANALYSIS_MAX_BODY_CHARS) -> str:
    """
    Mask addresses and long digit runs, then truncate.

    Example:
        >>> redact('Call 5551234567 or mail bob@acme.com')
        'Call [number] or mail [email]'
    """
    masked = _LONG_NUMBER.sub('[number]', _EMAIL.sub('[email]', text or ''))
    if len(masked) > max_chars:
        masked = masked[:max_chars] + ' [truncated]'
    return masked


def _normalize_insight(raw: Dict[str, Any]) -> Dict[str, Any]:
    text = raw.get('text')
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Insight without text")
    topics = raw.get('topics') or []
    sentiment = raw.get('sentiment')
    priority = raw.get('priority')
    return {
        'text': text.strip(),
        'topics': [str(t) for t in topics if isinstance(t, str)][:5],
        'sentiment': sentiment if sentiment in SENTIMENTS else 'neutral',
        'priority': priority if priority in PRIORITIES else 'medium',
        'urgent': bool(raw.get('urgent', False))
    }


class IntelligenceAnalyzer:
    """
    Batch analyzer used by the BatchAnalysisQueue.

    Args:
        invoke: Provider call (prompt, organization_id=...) -> response text
        provider_enabled: Force provider use on/off (default: provider configured)
        max_body_chars: Per-message body budget sent to the provider
    """

    def __init__(
        self,
        invoke: Optional[Callable[..., str]] = None,
        provider_enabled: Optional[bool] = None,
        max_body_chars: int = ANALYSIS_MAX_BODY_CHARS
    ):
        self.invoke = invoke or analysis_provider.complete
        if provider_enabled is None:
            provider_enabled = analysis_provider.is_configured()
        self.provider_enabled = provider_enabled
        self.max_body_chars = max_body_chars

    def build_prompt(self, organization_id: str, items: List[QueuedMessage]) -> str:
        payload = [
            {
                'index': index,
                'subject': redact(item.payload.subject, 200),
                'body': redact(item.payload.body, self.max_body_chars)
            }
            for index, item in enumerate(items)
        ]
        return prompts.render_prompt(
            prompts.INTELLIGENCE_BATCH_PROMPT,
            organization_id=organization_id,
            item_count=len(items),
            items=json.dumps(payload, ensure_ascii=False, indent=2)
        )

    async def analyze_batch(self, organization_id: str, items: List[QueuedMessage]) -> List[AnalysisOutcome]:
        """
        Analyze one organization's batch.

        Returns:
            One AnalysisOutcome per item, in input order
        """
        if not items:
            return []

        if self.provider_enabled:
            try:
                return await self._analyze_with_provider(organization_id, items)
            except TransientAnalysisFailure as e:
                logger.warning(
                    f"Provider unavailable for {organization_id} after {PROVIDER_ATTEMPTS} attempts, "
                    f"using heuristics: {e}"
                )
            except ConfigurationError as e:
                logger.error(f"Provider misconfigured, using heuristics for {organization_id}: {e}")
            except ValueError as e:
                logger.warning(f"Malformed provider response for {organization_id}, using heuristics: {e}")

        return [self._fallback(organization_id, item) for item in items]

    async def _analyze_with_provider(self, organization_id: str, items: List[QueuedMessage]) -> List[AnalysisOutcome]:
        prompt = self.build_prompt(organization_id, items)

        for attempt in range(1, PROVIDER_ATTEMPTS + 1):
            try:
                response = await self._call_provider(prompt, organization_id)
                break
            except TransientAnalysisFailure as e:
                if attempt == PROVIDER_ATTEMPTS:
                    raise
                logger.info(f"Provider attempt {attempt} failed ({e}), retrying once")

        per_item = self.parse_response(response, len(items))
        logger.info(f"Provider analyzed {len(items)} item(s) for {organization_id}")
        return [
            AnalysisOutcome(item.id, organization_id, True, insights, source='provider')
            for item, insights in zip(items, per_item)
        ]

    async def _call_provider(self, prompt: str, organization_id: str) -> str:
        try:
            return await asyncio.to_thread(self.invoke, prompt, organization_id=organization_id)
        except (ConfigurationError, TransientAnalysisFailure):
            raise
        except Exception as e:
            raise TransientAnalysisFailure(f"{e.__class__.__name__}: {e}") from e

    @staticmethod
    def parse_response(response: str, expected: int) -> List[List[Dict[str, Any]]]:
        """
        Parse the provider's JSON array into per-item insight lists.

        Raises:
            ValueError: If the response is not a JSON array covering every item
        """
        if not isinstance(response, str) or not response.strip():
            raise ValueError("Empty provider response")

        text = _JSON_FENCE.sub('', response.strip())
        start, end = text.find('['), text.rfind(']')
        if start == -1 or end <= start:
            raise ValueError("No JSON array in provider response")

        try:
            data = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in provider response: {e}")

        if not isinstance(data, list) or len(data) != expected:
            raise ValueError(f"Expected {expected} result(s), got {len(data) if isinstance(data, list) else 'non-list'}")

        results: List[Optional[List[Dict[str, Any]]]] = [None] * expected
        for position, entry in enumerate(data):
            if not isinstance(entry, dict):
                raise ValueError("Result entry is not an object")
            index = entry.get('index', position)
            if not isinstance(index, int) or not 0 <= index < expected or results[index] is not None:
                raise ValueError(f"Invalid result index: {index}")
            insights = entry.get('insights')
            if not isinstance(insights, list):
                raise ValueError("Result entry without insights list")
            results[index] = [_normalize_insight(i) for i in insights if isinstance(i, dict)]
        return results

    @staticmethod
    def _fallback(organization_id: str, item: QueuedMessage) -> AnalysisOutcome:
        try:
            insights = heuristic_insights(item.payload.subject, item.payload.body)
            return AnalysisOutcome(item.id, organization_id, True, insights, source='fallback')
        except Exception as e:
            logger.error(f"Heuristic analysis failed for item {item.id}: {e}", exc_info=True)
            return AnalysisOutcome(item.id, organization_id, False, source='fallback', error=str(e))
