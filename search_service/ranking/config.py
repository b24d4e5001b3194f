"""Relevance tuning for the search service.

``SearchConfig`` is an immutable, versioned value. It is never edited in
place: a reload builds a new value and ``ConfigHolder`` swaps its reference,
so a request that captured ``holder.current`` keeps one consistent set of
weights for its whole evaluation.

Tuning payloads (JSON file, admin API, config-reload events) share one
schema, ``SearchTuning``:

    {
      "weights": {"textual": 0.5, "recency": 0.2, "popularity": 0.2, "quality": 0.1},
      "recency": {"half_life_days": 90, "max_age_days": 730},
      "popularity": {"view_weight": 0.5, "usage_weight": 0.3, "favorite_weight": 0.2,
                     "view_saturation": 10000, "usage_saturation": 1000,
                     "favorite_saturation": 500},
      "quality": {"verified_bonus": 0.5, "active_bonus": 0.3, "approved_bonus": 0.2},
      "parsing": {"min_query_length": 2, "max_query_length": 200, "stop_words": [...]},
      "limits": {"per_entity_cap": 100, "default_page_size": 20, "max_page_size": 100}
    }

Every section and key is optional; omitted values take the defaults.
"""

import dataclasses
import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field
import structlog

from libs.common.metrics import measure_time
from ..errors import ConfigurationError

logger = structlog.get_logger("search_service.ranking.config")

DEFAULT_STOP_WORDS: FrozenSet[str] = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
})


def normalize_weights(values: Tuple[float, ...]) -> Tuple[float, ...]:
    """Scale non-negative weights so they sum to 1.0.

    An all-zero group falls back to equal weights.
    """
    if any(value < 0 for value in values):
        raise ConfigurationError("weights must be non-negative")
    total = sum(values)
    if total == 0:
        return tuple(1.0 / len(values) for _ in values)
    return tuple(value / total for value in values)


@dataclass(frozen=True)
class ScoringWeights:
    """Composite weights; normalized on construction."""
    textual: float = 0.5
    recency: float = 0.2
    popularity: float = 0.2
    quality: float = 0.1

    def __post_init__(self):
        names = ("textual", "recency", "popularity", "quality")
        normalized = normalize_weights(tuple(getattr(self, name) for name in names))
        for name, value in zip(names, normalized):
            object.__setattr__(self, name, value)


@dataclass(frozen=True)
class PopularityWeights:
    """Popularity sub-weights; normalized on construction."""
    views: float = 0.5
    usage: float = 0.3
    favorites: float = 0.2

    def __post_init__(self):
        names = ("views", "usage", "favorites")
        normalized = normalize_weights(tuple(getattr(self, name) for name in names))
        for name, value in zip(names, normalized):
            object.__setattr__(self, name, value)


@dataclass(frozen=True)
class SearchConfig:
    """Process-wide relevance tuning, replaced wholesale on reload."""
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    popularity_weights: PopularityWeights = field(default_factory=PopularityWeights)

    recency_half_life_days: float = 90.0
    recency_max_age_days: float = 730.0

    # Counts at which a popularity component saturates at 1.0
    view_saturation: int = 10_000
    usage_saturation: int = 1_000
    favorite_saturation: int = 500

    verified_bonus: float = 0.5
    active_bonus: float = 0.3
    approved_bonus: float = 0.2

    min_query_length: int = 2
    max_query_length: int = 200
    stop_words: FrozenSet[str] = DEFAULT_STOP_WORDS

    per_entity_cap: int = 100
    default_page_size: int = 20
    max_page_size: int = 100

    version: int = 1

    def __post_init__(self):
        if self.recency_half_life_days <= 0:
            raise ConfigurationError("recency half-life must be positive")
        if self.recency_max_age_days <= 0:
            raise ConfigurationError("recency max age must be positive")
        if min(self.view_saturation, self.usage_saturation, self.favorite_saturation) <= 0:
            raise ConfigurationError("popularity saturation points must be positive")
        if min(self.verified_bonus, self.active_bonus, self.approved_bonus) < 0:
            raise ConfigurationError("quality bonuses must be non-negative")
        if not 1 <= self.min_query_length <= self.max_query_length:
            raise ConfigurationError("query length bounds are inconsistent")
        if self.per_entity_cap < 1:
            raise ConfigurationError("per-entity cap must be at least 1")
        if not 1 <= self.default_page_size <= self.max_page_size:
            raise ConfigurationError("page size bounds are inconsistent")
        object.__setattr__(self, "stop_words", frozenset(word.lower() for word in self.stop_words))

    def to_tuning(self) -> Dict[str, Any]:
        """Serialize to the ``SearchTuning`` payload shape."""
        return {
            "weights": dataclasses.asdict(self.weights),
            "recency": {
                "half_life_days": self.recency_half_life_days,
                "max_age_days": self.recency_max_age_days,
            },
            "popularity": {
                "view_weight": self.popularity_weights.views,
                "usage_weight": self.popularity_weights.usage,
                "favorite_weight": self.popularity_weights.favorites,
                "view_saturation": self.view_saturation,
                "usage_saturation": self.usage_saturation,
                "favorite_saturation": self.favorite_saturation,
            },
            "quality": {
                "verified_bonus": self.verified_bonus,
                "active_bonus": self.active_bonus,
                "approved_bonus": self.approved_bonus,
            },
            "parsing": {
                "min_query_length": self.min_query_length,
                "max_query_length": self.max_query_length,
                "stop_words": sorted(self.stop_words),
            },
            "limits": {
                "per_entity_cap": self.per_entity_cap,
                "default_page_size": self.default_page_size,
                "max_page_size": self.max_page_size,
            },
        }


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class WeightsSection(_Section):
    textual: float = Field(default=0.5, ge=0)
    recency: float = Field(default=0.2, ge=0)
    popularity: float = Field(default=0.2, ge=0)
    quality: float = Field(default=0.1, ge=0)


class RecencySection(_Section):
    half_life_days: float = Field(default=90.0, gt=0)
    max_age_days: float = Field(default=730.0, gt=0)


class PopularitySection(_Section):
    view_weight: float = Field(default=0.5, ge=0)
    usage_weight: float = Field(default=0.3, ge=0)
    favorite_weight: float = Field(default=0.2, ge=0)
    view_saturation: int = Field(default=10_000, gt=0)
    usage_saturation: int = Field(default=1_000, gt=0)
    favorite_saturation: int = Field(default=500, gt=0)


class QualitySection(_Section):
    verified_bonus: float = Field(default=0.5, ge=0)
    active_bonus: float = Field(default=0.3, ge=0)
    approved_bonus: float = Field(default=0.2, ge=0)


class ParsingSection(_Section):
    min_query_length: int = Field(default=2, ge=1)
    max_query_length: int = Field(default=200, ge=1)
    stop_words: Tuple[str, ...] = tuple(sorted(DEFAULT_STOP_WORDS))


class LimitsSection(_Section):
    per_entity_cap: int = Field(default=100, ge=1)
    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=100, ge=1)


class SearchTuning(_Section):
    """Validated tuning payload."""
    weights: WeightsSection = Field(default_factory=WeightsSection)
    recency: RecencySection = Field(default_factory=RecencySection)
    popularity: PopularitySection = Field(default_factory=PopularitySection)
    quality: QualitySection = Field(default_factory=QualitySection)
    parsing: ParsingSection = Field(default_factory=ParsingSection)
    limits: LimitsSection = Field(default_factory=LimitsSection)

    def to_config(self, version: int = 1) -> SearchConfig:
        return SearchConfig(
            weights=ScoringWeights(
                textual=self.weights.textual,
                recency=self.weights.recency,
                popularity=self.weights.popularity,
                quality=self.weights.quality,
            ),
            popularity_weights=PopularityWeights(
                views=self.popularity.view_weight,
                usage=self.popularity.usage_weight,
                favorites=self.popularity.favorite_weight,
            ),
            recency_half_life_days=self.recency.half_life_days,
            recency_max_age_days=self.recency.max_age_days,
            view_saturation=self.popularity.view_saturation,
            usage_saturation=self.popularity.usage_saturation,
            favorite_saturation=self.popularity.favorite_saturation,
            verified_bonus=self.quality.verified_bonus,
            active_bonus=self.quality.active_bonus,
            approved_bonus=self.quality.approved_bonus,
            min_query_length=self.parsing.min_query_length,
            max_query_length=self.parsing.max_query_length,
            stop_words=frozenset(self.parsing.stop_words),
            per_entity_cap=self.limits.per_entity_cap,
            default_page_size=self.limits.default_page_size,
            max_page_size=self.limits.max_page_size,
            version=version,
        )


def config_from_tuning(payload: Mapping[str, Any], version: int = 1) -> SearchConfig:
    """Validate a raw tuning payload and build a ``SearchConfig``."""
    try:
        tuning = SearchTuning.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ConfigurationError(f"invalid tuning: {e.error_count()} problem(s): {e.errors()[0]['msg']}") from e
    return tuning.to_config(version=version)


class ConfigHolder:
    """Holds the current ``SearchConfig`` and swaps it atomically.

    Readers take ``holder.current`` once and keep that value; writers build a
    complete new value before the reference changes. The lock only
    serializes writers so versions stay monotonic.
    """

    def __init__(self, initial: Optional[SearchConfig] = None):
        self._current = initial or SearchConfig()
        self._lock = threading.Lock()

    @property
    def current(self) -> SearchConfig:
        return self._current

    def replace(self, config: SearchConfig) -> SearchConfig:
        """Install ``config`` as the next version and return it."""
        with self._lock:
            installed = dataclasses.replace(config, version=self._current.version + 1)
            self._current = installed
        logger.info("Search config replaced", version=installed.version)
        return installed

    def apply_tuning(self, payload: Mapping[str, Any]) -> SearchConfig:
        """Validate ``payload`` and install it; the old config stays on error."""
        return self.replace(config_from_tuning(payload))

    @measure_time("search.config.reload", source="file")
    def reload_from_file(self, path: Union[str, Path]) -> SearchConfig:
        """Read a JSON tuning file and install it."""
        try:
            with open(path, "r") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"cannot read tuning file {path}: {e}") from e
        return self.apply_tuning(payload)
