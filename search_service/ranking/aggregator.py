"""Merge, sort, paginate and facet scored search results."""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Mapping, Sequence, Tuple

import structlog

from ..models import (
    EntityKind,
    PaginationInfo,
    ScoredResult,
    SearchFacets,
    SearchQuery,
    SortDirective,
    SortField,
    SortOrder,
)
from .scoring import as_utc

logger = structlog.get_logger("search_aggregator")

# Cumulative windows; "older" counts what falls outside the widest one.
DATE_RANGE_WINDOWS: Tuple[Tuple[str, int], ...] = (
    ("last_7_days", 7),
    ("last_30_days", 30),
    ("last_90_days", 90),
)
OLDER_BUCKET = "older"


@dataclass(frozen=True)
class AggregatedPage:
    """One page of the merged ranking plus its pagination and facets."""
    results: List[ScoredResult]
    pagination: PaginationInfo
    facets: SearchFacets


def _timestamp(value: datetime) -> float:
    return as_utc(value).timestamp()


def relevance_key(result: ScoredResult) -> Tuple:
    """Composite desc, then newest first (undated last), then id asc."""
    created_at = result.candidate.created_at
    recency = (0, -_timestamp(created_at)) if created_at is not None else (1, 0.0)
    return (-result.composite, recency, result.entity_id, result.entity_kind.value)


def _secondary_key(result: ScoredResult) -> Tuple:
    return (-result.composite, result.entity_id, result.entity_kind.value)


_FIELD_VALUES: Dict[SortField, Callable[[ScoredResult], object]] = {
    SortField.CREATED_AT: lambda r: r.candidate.created_at,
    SortField.UPDATED_AT: lambda r: r.candidate.updated_at,
    SortField.TITLE: lambda r: (r.candidate.primary_text or "").casefold(),
    SortField.NAME: lambda r: (r.candidate.primary_text or "").casefold(),
}


def sort_results(results: Sequence[ScoredResult], sort: SortDirective) -> List[ScoredResult]:
    """Order merged results; deterministic for any input order.

    Field sorts order by the field in the requested direction and break ties
    by composite score desc then id; records missing the field sort last.
    """
    if sort.is_relevance:
        return sorted(results, key=relevance_key)

    value_of = _FIELD_VALUES[sort.field]
    # Stable sorts: secondary order first, then the field on top of it
    ordered = sorted(results, key=_secondary_key)
    present = [r for r in ordered if value_of(r) is not None]
    missing = [r for r in ordered if value_of(r) is None]

    def field_key(result: ScoredResult) -> object:
        value = value_of(result)
        return _timestamp(value) if isinstance(value, datetime) else value

    present.sort(key=field_key, reverse=sort.order is SortOrder.DESC)
    return present + missing


def paginate(results: Sequence[ScoredResult], page: int, page_size: int) -> Tuple[List[ScoredResult], PaginationInfo]:
    """Slice the full ranking into one page."""
    total = len(results)
    total_pages = math.ceil(total / page_size) if total else 0
    skip = (page - 1) * page_size
    window = list(results[skip:skip + page_size])
    info = PaginationInfo(
        page=page,
        page_size=page_size,
        total=total,
        total_pages=total_pages,
        has_next_page=page < total_pages,
        has_previous_page=page > 1,
    )
    return window, info


def date_range_counts(results: Sequence[ScoredResult], reference_time: datetime) -> Dict[str, int]:
    """Count collected candidates by creation age relative to ``reference_time``."""
    now = as_utc(reference_time)
    counts = {name: 0 for name, _ in DATE_RANGE_WINDOWS}
    counts[OLDER_BUCKET] = 0
    widest = max(days for _, days in DATE_RANGE_WINDOWS)

    for result in results:
        created_at = result.candidate.created_at
        if created_at is None:
            continue
        age = now - as_utc(created_at)
        for name, days in DATE_RANGE_WINDOWS:
            if age <= timedelta(days=days):
                counts[name] += 1
        if age > timedelta(days=widest):
            counts[OLDER_BUCKET] += 1
    return counts


class RankingAggregator:
    """Merges per-kind scored results into the final page.

    Sorting happens over everything collected (each kind bounded by its
    adapter cap) before pagination, so a result's page only depends on its
    overall rank.
    """

    def aggregate(
        self,
        query: SearchQuery,
        per_kind: Mapping[EntityKind, Sequence[ScoredResult]],
        entity_totals: Mapping[EntityKind, int],
        reference_time: datetime,
    ) -> AggregatedPage:
        """Build the response page.

        Parameters
        - query: The normalized query (sort and pagination)
        - per_kind: Scored results of each adapter that succeeded
        - entity_totals: Total matching count reported by each such adapter
        - reference_time: Reference for the date-range facets

        Returns
        - ``AggregatedPage``
        """
        merged: List[ScoredResult] = []
        for kind in query.entities:
            merged.extend(per_kind.get(kind, ()))

        ranked = sort_results(merged, query.sort)
        page_results, pagination = paginate(ranked, query.page, query.page_size)

        facets = SearchFacets(
            entity_counts={
                kind: entity_totals[kind] for kind in query.entities if kind in entity_totals
            },
            date_ranges=date_range_counts(merged, reference_time),
        )

        logger.debug(
            "Results aggregated",
            merged=len(merged),
            page=query.page,
            returned=len(page_results),
            sort=query.sort.field.value,
        )
        return AggregatedPage(results=page_results, pagination=pagination, facets=facets)
