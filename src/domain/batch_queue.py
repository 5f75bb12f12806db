"""
Priority batch queue decoupling ingestion from analysis.

queue_message() returns as soon as the item is on the heap. A background
consumer (or an explicit flush) pops items strictly by priority, FIFO
within a tier, groups them by organization and hands each group to the
analyzer. Per-item failures are isolated and logged; a bad item never
blocks the rest of its batch.
"""

import asyncio
import heapq
import itertools
import logging
import os
import time
from collections import Counter, deque
from typing import Any, Callable, Deque, Dict, List, Optional

from .models import AnalysisOutcome, Message, Priority, QueuedMessage
from services.signals import derive_priority, week_key

logger = logging.getLogger(__name__)

BATCH_MAX_SIZE = int(os.environ.get('BATCH_MAX_SIZE', '20'))
BATCH_INTERVAL_SECONDS = float(os.environ.get('BATCH_INTERVAL_SECONDS', '30'))
BATCH_MAX_RETRIES = int(os.environ.get('BATCH_MAX_RETRIES', '3'))
FAILURE_LOG_LIMIT = 100


class BatchAnalysisQueue:
    """
    In-process priority queue with a batching consumer.

    Args:
        analyzer: Object with async analyze_batch(organization_id, items)
        store: Store receiving insights (optional)
        max_batch_size: Items popped per batch
        batch_interval_seconds: Consumer wake-up interval
        max_retries: Re-queue attempts for items whose results could not be stored
        on_saved: Callback (organization_id, period) after insights are stored
    """

    def __init__(
        self,
        analyzer,
        store=None,
        max_batch_size: int = BATCH_MAX_SIZE,
        batch_interval_seconds: float = BATCH_INTERVAL_SECONDS,
        max_retries: int = BATCH_MAX_RETRIES,
        on_saved: Optional[Callable[[str, str], None]] = None,
        clock: Callable[[], float] = time.time
    ):
        self.analyzer = analyzer
        self.store = store
        self.max_batch_size = max_batch_size
        self.batch_interval_seconds = batch_interval_seconds
        self.max_retries = max_retries
        self.on_saved = on_saved
        self.clock = clock

        self._heap: List[QueuedMessage] = []
        self._sequence = itertools.count()
        self._wakeup: Optional[asyncio.Event] = None
        self._consumer: Optional[asyncio.Task] = None
        self._running = False

        self.processed_count = 0
        self.failed_count = 0
        self.batch_count = 0
        self.failures: Deque[Dict[str, Any]] = deque(maxlen=FAILURE_LOG_LIMIT)

    def __len__(self) -> int:
        return len(self._heap)

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def queue_message(
        self,
        message: Message,
        organization_id: str,
        priority: Optional[Priority] = None
    ) -> QueuedMessage:
        """
        Enqueue a message for analysis. Returns immediately.
        """
        sequence = next(self._sequence)
        item = QueuedMessage(
            id=message.message_id or f"item-{sequence}",
            payload=message,
            organization_id=organization_id,
            priority=priority or derive_priority(message.subject, message.body),
            enqueued_at=self.clock(),
            sequence=sequence
        )
        heapq.heappush(self._heap, item)
        logger.info(
            f"Queued {item.id} for {organization_id} "
            f"(priority={item.priority.value}, queue_size={len(self._heap)})"
        )

        if self._wakeup is not None and len(self._heap) >= self.max_batch_size:
            self._wakeup.set()
        return item

    def start(self) -> None:
        """Launch the consumer task on the running event loop."""
        if self.is_running:
            return
        self._running = True
        self._wakeup = asyncio.Event()
        self._consumer = asyncio.create_task(self._consume())
        logger.info(
            f"Batch consumer started: max_batch_size={self.max_batch_size}, "
            f"interval={self.batch_interval_seconds}s"
        )

    async def stop(self, drain: bool = True) -> None:
        """Stop the consumer, then optionally process what is left."""
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        if self._consumer is not None:
            await self._consumer
            self._consumer = None
        if drain:
            await self.flush()
        logger.info("Batch consumer stopped")

    async def _consume(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.batch_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            if self._heap and self._running:
                try:
                    await self.process_next_batch()
                except Exception as e:
                    logger.error(f"Batch consumer iteration failed: {e}", exc_info=True)

    def _pop_batch(self) -> List[QueuedMessage]:
        count = min(self.max_batch_size, len(self._heap))
        return [heapq.heappop(self._heap) for _ in range(count)]

    async def process_next_batch(self) -> List[AnalysisOutcome]:
        """
        Pop and analyze up to max_batch_size items.

        Returns:
            Outcomes in processing order
        """
        batch = self._pop_batch()
        if not batch:
            return []

        self.batch_count += 1
        groups: Dict[str, List[QueuedMessage]] = {}
        for item in batch:
            groups.setdefault(item.organization_id, []).append(item)

        logger.info(f"Processing batch of {len(batch)} item(s) across {len(groups)} organization(s)")

        outcomes: List[AnalysisOutcome] = []
        for organization_id, items in groups.items():
            results = await self._analyze(organization_id, items)
            for item, outcome in zip(items, results):
                try:
                    outcomes.append(await self._record(item, outcome))
                except Exception as e:
                    logger.error(f"Failed to record outcome for {item.id}: {e}", exc_info=True)
                    self._fail(item, f"Record failure: {e}")
                    outcomes.append(AnalysisOutcome(item.id, organization_id, False, error=str(e)))
        return outcomes

    async def _analyze(self, organization_id: str, items: List[QueuedMessage]) -> List[AnalysisOutcome]:
        try:
            results = list(await self.analyzer.analyze_batch(organization_id, items))
        except Exception as e:
            logger.error(f"Analyzer failed for {organization_id}: {e}", exc_info=True)
            results = []

        if len(results) == len(items):
            return results

        by_id = {r.item_id: r for r in results}
        return [
            by_id.get(item.id) or AnalysisOutcome(
                item.id, organization_id, False, error='No analysis result'
            )
            for item in items
        ]

    async def _record(self, item: QueuedMessage, outcome: AnalysisOutcome) -> AnalysisOutcome:
        if not outcome.success:
            self._fail(item, outcome.error or 'Analysis failed')
            return outcome

        if self.store is not None and outcome.insights:
            period = week_key(item.payload.received_at)
            records = [
                dict(insight, message_id=item.payload.message_id, sender=item.payload.sender, source=outcome.source)
                for insight in outcome.insights
            ]
            try:
                await self.store.save_insights(item.organization_id, period, records)
            except Exception as e:
                logger.error(f"Failed to store insights for {item.id}: {e}", exc_info=True)
                if item.attempts < self.max_retries:
                    item.attempts += 1
                    heapq.heappush(self._heap, item)
                    logger.info(f"Re-queued {item.id} (attempt {item.attempts}/{self.max_retries})")
                else:
                    self._fail(item, f"Store failure: {e}")
                return AnalysisOutcome(item.id, item.organization_id, False, source=outcome.source, error=str(e))

            if self.on_saved is not None:
                try:
                    self.on_saved(item.organization_id, period)
                except Exception as e:
                    # Insights are already stored; the hook failing does not fail the item
                    logger.error(f"on_saved hook failed for {item.organization_id}/{period}: {e}", exc_info=True)

        self.processed_count += 1
        return outcome

    def _fail(self, item: QueuedMessage, error: str) -> None:
        self.failed_count += 1
        self.failures.append({
            'item_id': item.id,
            'organization_id': item.organization_id,
            'priority': item.priority.value,
            'attempts': item.attempts,
            'error': error,
            'failed_at': self.clock()
        })
        logger.warning(f"Analysis failed for {item.id} ({item.organization_id}): {error}")

    async def flush(self) -> List[AnalysisOutcome]:
        """Process batches until the queue is empty."""
        outcomes: List[AnalysisOutcome] = []
        while self._heap:
            outcomes.extend(await self.process_next_batch())
        return outcomes

    def stats(self) -> Dict[str, Any]:
        now = self.clock()
        priorities = Counter(item.priority.value for item in self._heap)
        return {
            'total_queued': len(self._heap),
            'by_organization': dict(Counter(item.organization_id for item in self._heap)),
            'by_priority': {p.value: priorities.get(p.value, 0) for p in Priority},
            'oldest_wait_seconds': max((now - i.enqueued_at for i in self._heap), default=0),
            'processed': self.processed_count,
            'failed': self.failed_count,
            'batches': self.batch_count,
            'running': self.is_running,
            'recent_failures': list(self.failures)
        }
