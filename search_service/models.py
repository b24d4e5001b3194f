"""Domain value types for unified search.

Everything here is an immutable value: a ``SearchQuery`` is built once per
request by the query normalizer, adapters emit ``Candidate`` projections,
the scorer turns them into ``ScoredResult`` values and the aggregator wraps
a page of those into a ``SearchResponse``. ``AnalyticsEvent`` is the one
record that outlives a request; it changes at most once afterwards, by
``with_click`` producing a new value.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class EntityKind(str, Enum):
    """Searchable record types. Closed set; adding one needs an adapter."""
    ASSETS = "assets"
    CREATORS = "creators"
    PROJECTS = "projects"
    LICENSES = "licenses"


ALL_ENTITY_KINDS: Tuple[EntityKind, ...] = tuple(EntityKind)


class Role(str, Enum):
    """Caller roles understood by adapter visibility rules."""
    ADMIN = "ADMIN"
    CREATOR = "CREATOR"
    BRAND = "BRAND"
    VIEWER = "VIEWER"


@dataclass(frozen=True)
class PermissionContext:
    """Who is searching. Adapters derive record visibility from this."""
    user_id: Optional[str] = None
    role: Role = Role.VIEWER
    creator_id: Optional[str] = None
    brand_id: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @classmethod
    def anonymous(cls, session_id: Optional[str] = None) -> "PermissionContext":
        return cls(session_id=session_id)


class SortField(str, Enum):
    RELEVANCE = "relevance"
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    TITLE = "title"
    NAME = "name"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class SortDirective:
    """Ordering requested by the caller; ``relevance`` means composite score."""
    field: SortField = SortField.RELEVANCE
    order: SortOrder = SortOrder.DESC

    @property
    def is_relevance(self) -> bool:
        return self.field is SortField.RELEVANCE


class SearchFilters(BaseModel):
    """Structured, kind-specific constraints.

    Unknown keys are rejected. A filter only narrows the entity kinds it
    applies to; ``brand_id`` applies to projects and licenses, the common
    filters apply to every kind.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    # Assets
    asset_type: Optional[Tuple[str, ...]] = None
    asset_status: Optional[Tuple[str, ...]] = None
    project_id: Optional[str] = None
    creator_id: Optional[str] = None

    # Creators
    verification_status: Optional[Tuple[str, ...]] = None
    specialties: Optional[Tuple[str, ...]] = None
    country: Optional[str] = None
    availability_status: Optional[str] = None

    # Projects / licenses
    project_type: Optional[Tuple[str, ...]] = None
    project_status: Optional[Tuple[str, ...]] = None
    brand_id: Optional[str] = None
    license_type: Optional[Tuple[str, ...]] = None
    license_status: Optional[Tuple[str, ...]] = None

    # Common
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    created_by: Optional[str] = None
    tags: Optional[Tuple[str, ...]] = None

    @field_validator("date_from", "date_to")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Naive bounds are read as UTC
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _check_date_range(self) -> "SearchFilters":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    def applied(self) -> Dict[str, Any]:
        """JSON-ready view of the filters that were actually set."""
        return self.model_dump(mode="json", exclude_none=True)


@dataclass(frozen=True)
class SearchQuery:
    """A validated request. Never mutated after the normalizer builds it.

    ``text`` keeps the sanitized caller text (case preserved) for exact and
    substring matching; ``tokens`` are lowercase words with stop words
    removed and drive only the per-word scoring path.
    """
    text: str
    normalized_text: str
    tokens: Tuple[str, ...]
    entities: Tuple[EntityKind, ...]
    filters: SearchFilters = field(default_factory=SearchFilters)
    page: int = 1
    page_size: int = 20
    sort: SortDirective = field(default_factory=SortDirective)

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True)
class PopularityVector:
    """Raw engagement counts; zero when unknown."""
    views: int = 0
    usage: int = 0
    favorites: int = 0

    def __post_init__(self):
        for name in ("views", "usage", "favorites"):
            if getattr(self, name) < 0:
                raise ValueError(f"popularity count '{name}' must be non-negative")


@dataclass(frozen=True)
class QualityFlags:
    verified: bool = False
    active: bool = False
    approved: bool = False


@dataclass(frozen=True)
class Candidate:
    """Entity-agnostic projection of one record, ready for scoring."""
    entity_kind: EntityKind
    entity_id: str
    primary_text: str
    secondary_text: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    popularity: PopularityVector = field(default_factory=PopularityVector)
    quality: QualityFlags = field(default_factory=QualityFlags)
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class ScoreBreakdown:
    textual: float
    recency: float
    popularity: float
    quality: float
    composite: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "textualRelevance": self.textual,
            "recencyScore": self.recency,
            "popularityScore": self.popularity,
            "qualityScore": self.quality,
            "finalScore": self.composite,
        }


@dataclass(frozen=True)
class ScoredResult:
    candidate: Candidate
    scores: ScoreBreakdown
    highlights: Mapping[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def entity_kind(self) -> EntityKind:
        return self.candidate.entity_kind

    @property
    def entity_id(self) -> str:
        return self.candidate.entity_id

    @property
    def composite(self) -> float:
        return self.scores.composite

    def to_dict(self) -> Dict[str, Any]:
        candidate = self.candidate
        return {
            "id": candidate.entity_id,
            "entityType": candidate.entity_kind.value,
            "title": candidate.primary_text,
            "description": candidate.secondary_text,
            "relevanceScore": self.scores.composite,
            "scoreBreakdown": self.scores.to_dict(),
            "highlights": dict(self.highlights),
            "metadata": dict(candidate.metadata),
            "createdAt": candidate.created_at.isoformat() if candidate.created_at else None,
            "updatedAt": candidate.updated_at.isoformat() if candidate.updated_at else None,
        }


@dataclass(frozen=True)
class PaginationInfo:
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "pageSize": self.page_size,
            "total": self.total,
            "totalPages": self.total_pages,
            "hasNextPage": self.has_next_page,
            "hasPreviousPage": self.has_previous_page,
        }


@dataclass(frozen=True)
class SearchFacets:
    entity_counts: Mapping[EntityKind, int]
    date_ranges: Mapping[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entityCounts": {kind.value: count for kind, count in self.entity_counts.items()},
            "dateRanges": dict(self.date_ranges),
        }


@dataclass(frozen=True)
class SearchResponse:
    results: List[ScoredResult]
    pagination: PaginationInfo
    facets: SearchFacets
    query: str
    execution_time_ms: int
    partial: bool = False
    unavailable_entities: Tuple[EntityKind, ...] = ()
    event_id: Optional[str] = None
    config_version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [result.to_dict() for result in self.results],
            "pagination": self.pagination.to_dict(),
            "facets": self.facets.to_dict(),
            "query": self.query,
            "executionTimeMs": self.execution_time_ms,
            "partial": self.partial,
            "unavailableEntities": [kind.value for kind in self.unavailable_entities],
            "eventId": self.event_id,
            "configVersion": self.config_version,
        }


@dataclass(frozen=True)
class ClickInfo:
    result_id: str
    position: int
    entity_kind: EntityKind


@dataclass(frozen=True)
class AnalyticsEvent:
    """Append-only record of one completed (or degraded) search."""
    event_id: str
    query: str
    entities: Tuple[EntityKind, ...]
    filters: Mapping[str, Any]
    result_count: int
    execution_time_ms: int
    created_at: datetime
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    degraded: bool = False
    click: Optional[ClickInfo] = None

    def with_click(self, click: ClickInfo) -> "AnalyticsEvent":
        return replace(self, click=click)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["entities"] = [kind.value for kind in self.entities]
        data["filters"] = dict(self.filters)
        data["created_at"] = self.created_at.isoformat()
        if self.click is not None:
            data["click"]["entity_kind"] = self.click.entity_kind.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalyticsEvent":
        click = data.get("click")
        return cls(
            event_id=data["event_id"],
            query=data["query"],
            entities=tuple(EntityKind(kind) for kind in data.get("entities", ())),
            filters=dict(data.get("filters") or {}),
            result_count=int(data["result_count"]),
            execution_time_ms=int(data["execution_time_ms"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            user_id=data.get("user_id"),
            session_id=data.get("session_id"),
            degraded=bool(data.get("degraded", False)),
            click=ClickInfo(
                result_id=click["result_id"],
                position=int(click["position"]),
                entity_kind=EntityKind(click["entity_kind"]),
            ) if click else None,
        )
