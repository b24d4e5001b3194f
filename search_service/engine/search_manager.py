"""Search manager for unified, relevance-ranked search.

Normalizes the request, fans it out to one entity adapter per requested
kind in parallel, scores every candidate, merges and paginates, and hands
the outcome to analytics without waiting on it.

Concurrency
- Each adapter call runs under its own timeout; a slow or failing kind is
  reported as unavailable and the rest of the response is still built
- The tuning is read from the ``ConfigHolder`` once per request
- Cancelling ``search`` cancels the in-flight adapter calls and records a
  degraded analytics event before the cancellation propagates
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

import structlog

from libs.common.logging import bind_request_context, log_performance
from libs.common.metrics import MetricsCollector
from libs.common.tracing import SearchTracer
from ..analytics.recorder import AnalyticsRecorder
from ..errors import AdapterError, AdapterTimeout, AllAdaptersFailedError, ValidationError
from ..intelligence.query_normalizer import QueryNormalizer
from ..models import EntityKind, PermissionContext, SearchFilters, SearchQuery, SearchResponse
from ..ranking.aggregator import RankingAggregator
from ..ranking.config import ConfigHolder
from ..ranking.scoring import RelevanceScorer
from ..retrievers.base import AdapterResult, EntityAdapter

logger = structlog.get_logger("search_service.search_manager")


@dataclass(frozen=True)
class AdapterOutcome:
    """Result of one adapter call: either ``result`` or ``error`` is set."""
    kind: EntityKind
    result: Optional[AdapterResult] = None
    error: Optional[AdapterError] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class SearchManager:
    """Manages unified search operations.

    Responsibilities
    - Validate requests against the current tuning version
    - Run adapters concurrently with per-adapter timeouts
    - Score, merge, sort, paginate and facet candidates
    - Record analytics fire-and-forget
    """

    def __init__(
        self,
        adapters: Mapping[EntityKind, EntityAdapter],
        config_holder: ConfigHolder,
        recorder: AnalyticsRecorder,
        adapter_timeout_ms: int = 750,
        metrics: Optional[MetricsCollector] = None,
        tracer: Optional[SearchTracer] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Construct a search manager.

        Parameters
        - adapters: One adapter per entity kind
        - config_holder: Source of the current ``SearchConfig``
        - recorder: Analytics recorder (already started by the caller)
        - adapter_timeout_ms: Budget for each adapter call
        - metrics: Optional metrics collector
        - tracer: Optional search tracer
        - clock: Reference time source for recency scoring
        """
        self.adapters = dict(adapters)
        self.config_holder = config_holder
        self.recorder = recorder
        self.adapter_timeout_ms = adapter_timeout_ms
        self.metrics = metrics
        self.tracer = tracer or SearchTracer("search-service")
        self.clock = clock
        self.aggregator = RankingAggregator()

    async def search(
        self,
        raw_query: Optional[str],
        entities: Optional[Iterable[Union[str, EntityKind]]] = None,
        filters: Union[SearchFilters, Mapping[str, Any], None] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
        context: Optional[PermissionContext] = None,
    ) -> SearchResponse:
        """Run one search.

        Returns
        - ``SearchResponse`` for the requested page; ``partial`` is set when
          some entity kinds were unavailable

        Raises
        - ``ValidationError`` for malformed input
        - ``AllAdaptersFailedError`` when no requested kind answered
        """
        started = time.perf_counter()
        context = context or PermissionContext.anonymous()
        config = self.config_holder.current

        try:
            query = QueryNormalizer(config).normalize(
                raw_query,
                entities=entities,
                filters=filters,
                page=page,
                page_size=page_size,
                sort_by=sort_by,
                sort_order=sort_order,
            )
        except ValidationError as e:
            self._record_metrics("invalid", "unknown", started)
            logger.info("Rejected search request", field=e.field, error=e.message)
            raise

        sort_mode = query.sort.field.value
        trace = self.tracer.trace_search_query(
            sort_mode, len(query.entities), query.page_size, config_version=config.version
        )
        with bind_request_context(user_id=context.user_id, session_id=context.session_id), trace:
            try:
                outcomes = await asyncio.gather(*(
                    self._call_adapter(kind, query, context, config.per_entity_cap)
                    for kind in query.entities
                ))
            except asyncio.CancelledError:
                duration_ms = _elapsed_ms(started)
                self.recorder.record_degraded(query, duration_ms, context)
                self._record_metrics("cancelled", sort_mode, started)
                logger.info("Search cancelled", query=query.normalized_text, duration_ms=duration_ms)
                raise

            failed = tuple(o.kind for o in outcomes if not o.succeeded)
            succeeded = [o for o in outcomes if o.succeeded]
            if not succeeded:
                self._record_metrics("failed", sort_mode, started)
                logger.error(
                    "All entity adapters failed",
                    query=query.normalized_text,
                    entities=[kind.value for kind in failed],
                )
                raise AllAdaptersFailedError(failed)

            reference_time = self.clock()
            scorer = RelevanceScorer(config, reference_time)
            per_kind = {o.kind: scorer.score_all(query, o.result.candidates) for o in succeeded}
            totals = {o.kind: o.result.total_count for o in succeeded}
            ranked = self.aggregator.aggregate(query, per_kind, totals, reference_time)

            duration_ms = _elapsed_ms(started)
            event_id = self.recorder.record(query, ranked.pagination.total, duration_ms, context)

        partial = bool(failed)
        self._record_metrics("ok", sort_mode, started, partial=partial)
        log_performance(
            "search",
            duration_ms,
            query=query.normalized_text,
            results=ranked.pagination.total,
            partial=partial,
            config_version=config.version,
        )

        return SearchResponse(
            results=ranked.results,
            pagination=ranked.pagination,
            facets=ranked.facets,
            query=query.text,
            execution_time_ms=duration_ms,
            partial=partial,
            unavailable_entities=failed,
            event_id=event_id,
            config_version=config.version,
        )

    async def attach_click(
        self,
        event_id: str,
        result_id: str,
        position: int,
        entity_kind: Union[str, EntityKind],
    ) -> None:
        """Attach click-through data to a prior search."""
        await self.recorder.attach_click(event_id, result_id, position, entity_kind)

    async def _call_adapter(
        self,
        kind: EntityKind,
        query: SearchQuery,
        context: PermissionContext,
        cap: int,
    ) -> AdapterOutcome:
        """Call one adapter, converting every failure into an outcome."""
        adapter = self.adapters.get(kind)
        if adapter is None:
            return AdapterOutcome(kind=kind, error=AdapterError(kind, "no adapter configured"))

        started = time.perf_counter()
        with self.tracer.trace_adapter_call(kind.value, cap) as span:
            try:
                result = await asyncio.wait_for(
                    adapter.search(query, context, cap),
                    timeout=self.adapter_timeout_ms / 1000.0,
                )
            except asyncio.TimeoutError:
                outcome = AdapterOutcome(kind=kind, error=AdapterTimeout(kind, self.adapter_timeout_ms))
            except AdapterError as e:
                outcome = AdapterOutcome(kind=kind, error=e)
            except Exception as e:
                outcome = AdapterOutcome(kind=kind, error=AdapterError(kind, str(e)))
            else:
                if len(result.candidates) > cap:
                    result = AdapterResult(candidates=result.candidates[:cap], total_count=result.total_count)
                outcome = AdapterOutcome(kind=kind, result=result)

            label = "ok" if outcome.succeeded else ("timeout" if isinstance(outcome.error, AdapterTimeout) else "error")
            span.set_attribute("outcome", label)

        if self.metrics is not None:
            self.metrics.record_adapter_call(kind.value, label, time.perf_counter() - started)
        if outcome.error is not None:
            logger.warning("Entity adapter unavailable", entity_kind=kind.value, outcome=label, error=str(outcome.error))
        return outcome

    def _record_metrics(self, outcome: str, sort_mode: str, started: float, partial: bool = False) -> None:
        if self.metrics is not None:
            self.metrics.record_search(sort_mode, time.perf_counter() - started, outcome=outcome, partial=partial)

    async def health_check(self) -> Dict[str, Any]:
        """Service readiness summary."""
        return {
            "adapters": sorted(kind.value for kind in self.adapters),
            "config_version": self.config_holder.current.version,
            "analytics_running": self.recorder.running,
            "analytics_queue_depth": self.recorder.queue_depth,
        }

    async def cleanup(self) -> None:
        """Close adapters."""
        for kind, adapter in self.adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning("Failed to close adapter", entity_kind=kind.value, error=str(e))
        logger.info("Search manager cleaned up")
