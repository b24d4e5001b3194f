"""Admin analytics reports.

Read-only views derived from analytics sink contents. The pure functions
take a list of events; ``AnalyticsReports`` fetches the right time windows
from a sink and applies them.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import structlog

from ..models import AnalyticsEvent
from .sinks import AnalyticsSink

logger = structlog.get_logger("analytics.reports")

TOP_QUERIES_LIMIT = 20
SLOWEST_QUERIES_LIMIT = 10
TRENDING_MIN_COUNT = 3


def _ranked_counts(counter: Counter, key: str, limit: Optional[int]) -> List[Dict[str, Any]]:
    # Count desc, then alphabetical for stable output
    ordered = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    if limit is not None:
        ordered = ordered[:limit]
    return [{key: value, "count": count} for value, count in ordered]


def zero_result_queries(events: Sequence[AnalyticsEvent], limit: int = TOP_QUERIES_LIMIT) -> List[Dict[str, Any]]:
    """Most frequent queries that returned nothing."""
    counter = Counter(e.query for e in events if e.result_count == 0)
    return _ranked_counts(counter, "query", limit)


def summarize(events: Sequence[AnalyticsEvent]) -> Dict[str, Any]:
    """Aggregate search analytics for a window."""
    total = len(events)
    if total == 0:
        return {
            "totalSearches": 0,
            "averageExecutionTimeMs": 0.0,
            "averageResultsCount": 0.0,
            "zeroResultsRate": 0.0,
            "clickThroughRate": 0.0,
            "topQueries": [],
            "topEntities": [],
            "zeroResultQueries": [],
        }

    durations = np.array([e.execution_time_ms for e in events], dtype=float)
    result_counts = np.array([e.result_count for e in events], dtype=float)
    zero_results = sum(1 for e in events if e.result_count == 0)
    clicked = sum(1 for e in events if e.click is not None)

    entity_counter: Counter = Counter()
    for event in events:
        entity_counter.update(kind.value for kind in event.entities)

    return {
        "totalSearches": total,
        "averageExecutionTimeMs": float(durations.mean()),
        "averageResultsCount": float(result_counts.mean()),
        "zeroResultsRate": zero_results / total,
        "clickThroughRate": clicked / total,
        "topQueries": _ranked_counts(Counter(e.query for e in events), "query", TOP_QUERIES_LIMIT),
        "topEntities": [
            {"entity": entity, "searchCount": count}
            for entity, count in sorted(entity_counter.items(), key=lambda item: (-item[1], item[0]))
        ],
        "zeroResultQueries": zero_result_queries(events),
    }


def performance_metrics(events: Sequence[AnalyticsEvent]) -> Dict[str, Any]:
    """Average, p50/p95/p99 duration and the slowest queries.

    Percentiles take the element at ``floor(n * p)`` of the ascending
    durations (clamped to the last element).
    """
    if not events:
        return {
            "averageExecutionTimeMs": 0.0,
            "p50ExecutionTimeMs": 0,
            "p95ExecutionTimeMs": 0,
            "p99ExecutionTimeMs": 0,
            "slowestQueries": [],
        }

    durations = np.sort(np.array([e.execution_time_ms for e in events], dtype=np.int64))
    n = len(durations)

    def percentile(p: float) -> int:
        return int(durations[min(int(np.floor(n * p)), n - 1)])

    slowest = sorted(events, key=lambda e: e.execution_time_ms, reverse=True)[:SLOWEST_QUERIES_LIMIT]
    return {
        "averageExecutionTimeMs": float(durations.mean()),
        "p50ExecutionTimeMs": percentile(0.50),
        "p95ExecutionTimeMs": percentile(0.95),
        "p99ExecutionTimeMs": percentile(0.99),
        "slowestQueries": [
            {"query": e.query, "executionTimeMs": e.execution_time_ms} for e in slowest
        ],
    }


def trending_searches(
    recent: Sequence[AnalyticsEvent],
    previous: Sequence[AnalyticsEvent],
    limit: int = 10,
    min_count: int = TRENDING_MIN_COUNT,
) -> List[Dict[str, Any]]:
    """Queries gaining volume between two equal windows.

    Growth is the percentage change from the previous window, or 100 when
    the query did not appear there.
    """
    recent_counts = Counter(e.query for e in recent)
    previous_counts = Counter(e.query for e in previous)

    trending = []
    for query, count in recent_counts.items():
        if count < min_count:
            continue
        before = previous_counts.get(query, 0)
        growth = ((count - before) / before) * 100 if before > 0 else 100.0
        trending.append({"query": query, "count": count, "growth": growth})

    trending.sort(key=lambda item: (-item["growth"], -item["count"], item["query"]))
    return trending[:limit]


def recent_searches(events: Sequence[AnalyticsEvent], user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    """A user's distinct recent queries, newest first."""
    seen = set()
    recent = []
    for event in sorted(events, key=lambda e: e.created_at, reverse=True):
        if event.user_id != user_id or event.query in seen:
            continue
        seen.add(event.query)
        recent.append({
            "query": event.query,
            "entities": [kind.value for kind in event.entities],
            "createdAt": event.created_at.isoformat(),
        })
        if len(recent) >= limit:
            break
    return recent


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalyticsReports:
    """Windowed report queries over an analytics sink."""

    def __init__(self, sink: AnalyticsSink, clock: Callable[[], datetime] = _utcnow):
        self.sink = sink
        self.clock = clock

    def default_window(self, start: Optional[datetime], end: Optional[datetime], days: int = 30):
        # Sink windows are end-exclusive; include events stamped "now"
        end = end or self.clock() + timedelta(microseconds=1)
        start = start or end - timedelta(days=days)
        return start, end

    async def summary(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        start, end = self.default_window(start, end)
        return summarize(await self.sink.events_between(start, end))

    async def zero_results(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = TOP_QUERIES_LIMIT,
    ) -> List[Dict[str, Any]]:
        start, end = self.default_window(start, end)
        return zero_result_queries(await self.sink.events_between(start, end), limit)

    async def performance(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        start, end = self.default_window(start, end)
        return performance_metrics(await self.sink.events_between(start, end))

    async def trending(self, hours: int = 24, limit: int = 10) -> List[Dict[str, Any]]:
        now = self.clock()
        recent_start = now - timedelta(hours=hours)
        previous_start = recent_start - timedelta(hours=hours)
        recent = await self.sink.events_between(recent_start, now + timedelta(microseconds=1))
        previous = await self.sink.events_between(previous_start, recent_start)
        return trending_searches(recent, previous, limit)

    async def recent(self, user_id: str, limit: int = 10, days: int = 30) -> List[Dict[str, Any]]:
        start, end = self.default_window(None, None, days)
        events = await self.sink.events_between(start, end)
        return recent_searches(events, user_id, limit)
