"""Relevance scoring for unified search.

Scoring is a pure function of ``(query, candidate, config, reference_time)``:
the reference time is injected instead of read from the clock, and nothing
here logs, mutates or performs I/O. Every sub-score lies in ``[0, 1]``; the
composite is the weighted sum under normalized weights.

Sub-scores
- textual: exact title match 1.0, title contains query 0.7, otherwise half the
  fraction of query tokens found in the title; +0.3 when the secondary text
  contains the query, capped at 1.0
- recency: ``0.5 ** (age_days / half_life_days)``, 0 at or beyond
  ``max_age_days`` and for candidates without a timestamp
- popularity: ``log1p(count) / log1p(saturation)`` per count, capped at 1.0,
  combined with the popularity sub-weights
- quality: additive bonuses for verified, active and approved flags, capped
  at 1.0
"""

import math
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from ..models import Candidate, PopularityVector, QualityFlags, ScoreBreakdown, ScoredResult, SearchQuery
from .config import SearchConfig
from .highlights import generate_highlights

EXACT_MATCH_SCORE = 1.0
CONTAINS_MATCH_SCORE = 0.7
TOKEN_MATCH_FACTOR = 0.5
SECONDARY_MATCH_BONUS = 0.3

_SECONDS_PER_DAY = 86400.0


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def as_utc(moment: datetime) -> datetime:
    """Interpret naive datetimes as UTC so mixed inputs compare safely."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def textual_score(query: SearchQuery, primary_text: str, secondary_text: Optional[str] = None) -> float:
    """Tiered text match: exact > contains > per-token, plus a secondary bonus."""
    needle = query.normalized_text
    primary = (primary_text or "").strip().lower()

    if primary == needle:
        score = EXACT_MATCH_SCORE
    elif needle and needle in primary:
        score = CONTAINS_MATCH_SCORE
    elif query.tokens:
        matched = sum(1 for token in query.tokens if token in primary)
        score = (matched / len(query.tokens)) * TOKEN_MATCH_FACTOR
    else:
        score = 0.0

    if secondary_text and needle and needle in secondary_text.lower():
        score += SECONDARY_MATCH_BONUS

    return _clamp(score)


def recency_score(created_at: Optional[datetime], config: SearchConfig, reference_time: datetime) -> float:
    """Exponential half-life decay with a hard age cutoff."""
    if created_at is None:
        return 0.0

    age_days = (as_utc(reference_time) - as_utc(created_at)).total_seconds() / _SECONDS_PER_DAY
    # Clock skew can put a timestamp slightly in the future
    age_days = max(age_days, 0.0)
    if age_days >= config.recency_max_age_days:
        return 0.0
    return _clamp(0.5 ** (age_days / config.recency_half_life_days))


def _saturating(count: int, saturation: int) -> float:
    return min(math.log1p(count) / math.log1p(saturation), 1.0)


def popularity_score(popularity: PopularityVector, config: SearchConfig) -> float:
    """Weighted, log-scaled engagement; monotonic in each count."""
    weights = config.popularity_weights
    score = (
        weights.views * _saturating(popularity.views, config.view_saturation)
        + weights.usage * _saturating(popularity.usage, config.usage_saturation)
        + weights.favorites * _saturating(popularity.favorites, config.favorite_saturation)
    )
    return _clamp(score)


def quality_score(quality: QualityFlags, config: SearchConfig) -> float:
    """Additive flag bonuses, capped at 1.0."""
    score = 0.0
    if quality.verified:
        score += config.verified_bonus
    if quality.active:
        score += config.active_bonus
    if quality.approved:
        score += config.approved_bonus
    return _clamp(score)


def composite_score(textual: float, recency: float, popularity: float, quality: float, config: SearchConfig) -> float:
    """Weighted sum of the four sub-scores."""
    weights = config.weights
    return _clamp(
        weights.textual * textual
        + weights.recency * recency
        + weights.popularity * popularity
        + weights.quality * quality
    )


def score_candidate(
    query: SearchQuery,
    candidate: Candidate,
    config: SearchConfig,
    reference_time: datetime,
) -> ScoredResult:
    """Score one candidate.

    Parameters
    - query: Normalized search query
    - candidate: Adapter projection of one record
    - config: The tuning version captured for this request
    - reference_time: "Now" for recency, fixed per request

    Returns
    - ``ScoredResult`` with the breakdown and highlights
    """
    textual = textual_score(query, candidate.primary_text, candidate.secondary_text)
    recency = recency_score(candidate.created_at, config, reference_time)
    popularity = popularity_score(candidate.popularity, config)
    quality = quality_score(candidate.quality, config)

    scores = ScoreBreakdown(
        textual=textual,
        recency=recency,
        popularity=popularity,
        quality=quality,
        composite=composite_score(textual, recency, popularity, quality, config),
    )
    return ScoredResult(
        candidate=candidate,
        scores=scores,
        highlights=generate_highlights(query.text, candidate.primary_text, candidate.secondary_text),
    )


class RelevanceScorer:
    """Scores candidates against one query under one config version."""

    def __init__(self, config: SearchConfig, reference_time: datetime):
        self.config = config
        self.reference_time = reference_time

    def score(self, query: SearchQuery, candidate: Candidate) -> ScoredResult:
        return score_candidate(query, candidate, self.config, self.reference_time)

    def score_all(self, query: SearchQuery, candidates: Iterable[Candidate]) -> List[ScoredResult]:
        return [self.score(query, candidate) for candidate in candidates]
