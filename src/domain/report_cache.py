"""
Report cache with stale-while-revalidate and an exclusive build per key.

ReportCache is pure bookkeeping: every method is synchronous, so the
in-progress test-and-set cannot interleave with another task on the event
loop. ReportService layers the serving policy on top:

- fresh hit: return it
- stale hit: return it now, start at most one background rebuild
- miss, no build running: build and wait
- miss, build running: wait for that build instead of starting another

A failed rebuild leaves the previous value in place and always releases
the in-progress flag.
"""

import asyncio
import logging
import os
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

logger = logging.getLogger(__name__)

REPORT_CACHE_TTL_SECONDS = int(os.environ.get('REPORT_CACHE_TTL_MINUTES', '10')) * 60

REPORT_KINDS = ('top5', 'insights', 'comprehensive')


@dataclass(frozen=True)
class ReportKey:
    agent_identifier: str
    period: str
    kind: str = 'comprehensive'

    def __str__(self) -> str:
        return f"{self.kind}:{self.agent_identifier}:{self.period}"


@dataclass
class CacheEntry:
    value: Any
    generated_at: float
    ttl_seconds: int
    in_progress: bool = False

    def is_stale(self, now: float) -> bool:
        return now - self.generated_at > self.ttl_seconds


@dataclass(frozen=True)
class CacheLookup:
    """data is None on a miss; a miss is always reported as stale."""
    data: Any
    is_stale: bool


class ReportCache:
    """In-process report cache keyed by ReportKey."""

    def __init__(self, ttl_seconds: int = REPORT_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[ReportKey, CacheEntry] = {}
        self._in_progress: Set[ReportKey] = set()
        # Bumped on invalidation so an in-flight build cannot store stale data
        self._generations: Dict[ReportKey, int] = {}
        self._epoch = 0

    def generation(self, key: ReportKey) -> Tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    def get(self, key: ReportKey) -> CacheLookup:
        entry = self._entries.get(key)
        if entry is None:
            return CacheLookup(data=None, is_stale=True)
        return CacheLookup(data=entry.value, is_stale=entry.is_stale(self.clock()))

    def set(self, key: ReportKey, value: Any, generation: Optional[Tuple[int, int]] = None) -> bool:
        """
        Store a value. With generation, the write is dropped (returns False)
        if the key was invalidated since that generation was read.
        """
        if generation is not None and generation != self.generation(key):
            return False
        self._entries[key] = CacheEntry(
            value=value,
            generated_at=self.clock(),
            ttl_seconds=self.ttl_seconds,
            in_progress=key in self._in_progress
        )
        return True

    def mark_in_progress(self, key: ReportKey) -> bool:
        """
        Atomic test-and-set.

        Returns:
            bool: False if a build is already running for the key
        """
        if key in self._in_progress:
            return False
        self._in_progress.add(key)
        entry = self._entries.get(key)
        if entry is not None:
            entry.in_progress = True
        return True

    def unmark_in_progress(self, key: ReportKey) -> None:
        self._in_progress.discard(key)
        entry = self._entries.get(key)
        if entry is not None:
            entry.in_progress = False

    def is_in_progress(self, key: ReportKey) -> bool:
        return key in self._in_progress

    def should_refresh(self, key: ReportKey) -> bool:
        """True when the key is stale or missing and no build is running."""
        return self.get(key).is_stale and key not in self._in_progress

    def invalidate(self, key: ReportKey) -> bool:
        """Remove an entry and its in-progress flag."""
        self._in_progress.discard(key)
        self._generations[key] = self._generations.get(key, 0) + 1
        return self._entries.pop(key, None) is not None

    def invalidate_all(self, agent_identifier: str, period: Optional[str] = None) -> int:
        """Remove every kind for an agent (optionally one period)."""
        keys = [
            k for k in set(self._entries) | self._in_progress
            if k.agent_identifier == agent_identifier and (period is None or k.period == period)
        ]
        return sum(1 for k in keys if self.invalidate(k))

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove entries whose string key ("kind:agent:period") starts with prefix."""
        keys = [k for k in set(self._entries) | self._in_progress if str(k).startswith(prefix)]
        return sum(1 for k in keys if self.invalidate(k))

    def clear(self) -> None:
        self._entries.clear()
        self._in_progress.clear()
        self._epoch += 1

    def stats(self) -> Dict[str, Any]:
        now = self.clock()
        stale = sum(1 for e in self._entries.values() if e.is_stale(now))
        return {
            'total_entries': len(self._entries),
            'fresh_entries': len(self._entries) - stale,
            'stale_entries': stale,
            'in_progress': sorted(str(k) for k in self._in_progress),
            'ttl_seconds': self.ttl_seconds,
            'keys': sorted(str(k) for k in self._entries)
        }


@dataclass
class ReportResult:
    """
    Tagged report outcome.

    Attributes:
        data: Report payload (None if nothing could be served)
        is_stale: True when data is past its TTL or missing
        source: 'cache', 'build', 'pending' or 'error'
        error: Sender-safe error description
    """
    data: Any
    is_stale: bool
    source: str
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.data is not None


ReportBuilder = Callable[[ReportKey], Awaitable[Any]]


class ReportService:
    """
    Serves reports from a ReportCache, rebuilding through builder.

    Every build runs in its own task. Callers wait on it through
    asyncio.shield, so a caller cancelled by the ingestion timeout neither
    aborts the build nor strands other callers waiting on the same key.

    Args:
        cache: ReportCache holding entries and in-progress flags
        builder: async callable (ReportKey) -> report data
    """

    def __init__(self, cache: ReportCache, builder: ReportBuilder):
        self.cache = cache
        self.builder = builder
        # key -> (future, cache generation the build started under)
        self._inflight: Dict[ReportKey, Tuple[asyncio.Future, Tuple[int, int]]] = {}
        self._background: Set[asyncio.Task] = set()
        self.build_count = 0

    async def get_report(self, agent_identifier: str, period: str, kind: str = 'comprehensive') -> ReportResult:
        if kind not in REPORT_KINDS:
            return ReportResult(None, True, 'error', error=f"Unknown report kind: {kind}")

        key = ReportKey(agent_identifier, period, kind)
        lookup = self.cache.get(key)

        if lookup.data is not None:
            if lookup.is_stale:
                self._schedule_refresh(key)
            return ReportResult(lookup.data, lookup.is_stale, 'cache')

        future = self._current_build(key)
        if future is None:
            future = self._start_build(key)
            if future is None:
                # Marked by someone other than this service
                return ReportResult(None, True, 'pending', error='Report is being generated')

        try:
            data = await asyncio.shield(future)
        except Exception:
            return ReportResult(None, True, 'error', error='Report generation failed')
        return ReportResult(data, False, 'build')

    def _current_build(self, key: ReportKey) -> Optional[asyncio.Future]:
        """In-flight build for key, unless the key was invalidated after it started."""
        inflight = self._inflight.get(key)
        if inflight is None:
            return None
        future, generation = inflight
        if generation != self.cache.generation(key):
            return None
        return future

    def _start_build(self, key: ReportKey) -> Optional[asyncio.Future]:
        if not self.cache.mark_in_progress(key):
            return None
        future = asyncio.get_running_loop().create_future()
        generation = self.cache.generation(key)
        self._inflight[key] = (future, generation)

        task = asyncio.create_task(self._run_build(key, future, generation))
        self._background.add(task)
        task.add_done_callback(lambda t: self._build_done(key, future, t))
        return future

    def _build_done(self, key: ReportKey, future: asyncio.Future, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not future.done():
            # Cancelled before its first step, so _run_build never ran
            future.set_exception(RuntimeError(f"Report build cancelled for {key}"))
            future.exception()
            self._release(key, future)

    def _release(self, key: ReportKey, future: asyncio.Future) -> None:
        # A newer build for the same key owns the flag once this one is superseded
        inflight = self._inflight.get(key)
        if inflight is not None and inflight[0] is future:
            del self._inflight[key]
            self.cache.unmark_in_progress(key)

    async def _run_build(self, key: ReportKey, future: asyncio.Future, generation: Tuple[int, int]) -> None:
        start_time = time.time()
        self.build_count += 1
        try:
            data = await self.builder(key)
            if data is None:
                raise ValueError("Report builder returned no data")
            if self.cache.set(key, data, generation=generation):
                logger.info(f"Built report {key} in {time.time() - start_time:.2f}s")
            else:
                logger.info(f"Report {key} was invalidated during its build, result not cached")
            future.set_result(data)
        except asyncio.CancelledError:
            logger.warning(f"Report build cancelled for {key}")
            future.set_exception(RuntimeError(f"Report build cancelled for {key}"))
            future.exception()
            raise
        except Exception as e:
            logger.error(f"Report build failed for {key}: {e}", exc_info=True)
            future.set_exception(e)
            # Waiters read the exception; mark it retrieved for the build itself
            future.exception()
        finally:
            self._release(key, future)

    def _schedule_refresh(self, key: ReportKey) -> bool:
        if self._start_build(key) is None:
            logger.debug(f"Rebuild already running for {key}")
            return False
        logger.info(f"Serving stale report {key}, scheduling background rebuild")
        return True

    async def drain(self) -> None:
        """Wait for in-flight builds to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


def _confidence(count: int) -> str:
    if count > 20:
        return 'high'
    if count > 10:
        return 'medium'
    return 'low'


def _rank(insight: Dict[str, Any]):
    priority = {'high': 0, 'medium': 1, 'low': 2}.get(insight.get('priority'), 1)
    return (0 if insight.get('urgent') else 1, priority)


class InsightReportBuilder:
    """Aggregates stored insights for (agent, period) into a report."""

    def __init__(self, store, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    async def __call__(self, key: ReportKey) -> Dict[str, Any]:
        insights = await self.store.list_insights(key.agent_identifier, key.period)
        ranked = sorted(insights, key=_rank)

        if key.kind == 'top5':
            return {
                'agent': key.agent_identifier,
                'period': key.period,
                'items': [i.get('text') for i in ranked[:5]],
                'total_insights': len(insights)
            }

        topics = Counter(t for i in insights for t in i.get('topics', []))
        if key.kind == 'insights':
            return {
                'agent': key.agent_identifier,
                'period': key.period,
                'insights': ranked,
                'topic_counts': dict(topics)
            }

        sentiment = Counter(i.get('sentiment', 'neutral') for i in insights)
        return {
            'agent': key.agent_identifier,
            'period': key.period,
            'generated_at': self.clock(),
            'total_insights': len(insights),
            'top_items': [i.get('text') for i in ranked[:5]],
            'top_topics': [t for t, _ in topics.most_common(10)],
            'sentiment_overview': {
                'positive': sentiment.get('positive', 0),
                'neutral': sentiment.get('neutral', 0),
                'negative': sentiment.get('negative', 0)
            },
            'urgent_items': [i.get('text') for i in insights if i.get('urgent')],
            'data_source_confidence': _confidence(len(insights))
        }
