"""In-process entity adapters.

Hold records in memory (seeded from a JSON fixtures file or by tests) and
apply the same visibility and filter rules as the PostgreSQL adapters.
Useful for local development and as the default backend.

Fixture file layout::

    {"assets": [...], "creators": [...], "projects": [...], "licenses": [...]}
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import structlog

from ..models import Candidate, EntityKind, PermissionContext, Role, SearchFilters, SearchQuery
from .base import AdapterResult, EntityAdapter
from .projections import PROJECTIONS, parse_datetime
from ..ranking.scoring import as_utc

logger = structlog.get_logger("retrievers.memory")

Record = Dict[str, Any]


def _one_of(allowed: Optional[Sequence[str]], actual: Any) -> bool:
    """True when no constraint is set or ``actual`` is among ``allowed``."""
    if not allowed:
        return True
    if actual is None:
        return False
    return str(actual).casefold() in {value.casefold() for value in allowed}


def _equals(expected: Optional[str], actual: Any) -> bool:
    return expected is None or (actual is not None and str(actual) == expected)


def _newest_first(candidate: Candidate):
    created_at = candidate.created_at
    if created_at is None:
        return (1, 0.0, candidate.entity_id)
    return (0, -as_utc(created_at).timestamp(), candidate.entity_id)


class InMemoryEntityAdapter(EntityAdapter):
    """Base in-memory adapter; subclasses set ``kind`` and the rules."""

    def __init__(self, records: Iterable[Mapping[str, Any]] = ()):
        self._records: List[Record] = [dict(record) for record in records]

    @property
    def records(self) -> List[Record]:
        return list(self._records)

    def add(self, record: Mapping[str, Any]) -> None:
        self._records.append(dict(record))

    def project_to_candidate(self, record: Mapping[str, Any]) -> Candidate:
        return PROJECTIONS[self.kind](record)

    async def search(self, query: SearchQuery, context: PermissionContext, cap: int) -> AdapterResult:
        now = datetime.now(timezone.utc)
        matches: List[Candidate] = []
        for record in self._records:
            if record.get("deleted_at"):
                continue
            if not self.is_visible(record, context, now):
                continue
            if not self._matches_common(record, query.filters) or not self.matches_filters(record, query.filters):
                continue
            candidate = self.project_to_candidate(record)
            if self.matches_text(candidate, query):
                matches.append(candidate)

        # Newest first so the cap keeps the most recent matches
        matches.sort(key=_newest_first)
        return AdapterResult(candidates=tuple(matches[:cap]), total_count=len(matches))

    def matches_text(self, candidate: Candidate, query: SearchQuery) -> bool:
        """Query (or any of its tokens) occurs in the primary or secondary text."""
        haystacks = [candidate.primary_text.lower()]
        if candidate.secondary_text:
            haystacks.append(candidate.secondary_text.lower())
        needles = [query.normalized_text, *query.tokens]
        return any(needle and needle in haystack for needle in needles for haystack in haystacks)

    def is_visible(self, record: Record, context: PermissionContext, now: datetime) -> bool:
        return True

    def matches_filters(self, record: Record, filters: SearchFilters) -> bool:
        return True

    def _matches_common(self, record: Record, filters: SearchFilters) -> bool:
        if filters.date_from or filters.date_to:
            created_at = parse_datetime(record.get("created_at"))
            if created_at is None:
                return False
            if filters.date_from and as_utc(created_at) < as_utc(filters.date_from):
                return False
            if filters.date_to and as_utc(created_at) > as_utc(filters.date_to):
                return False
        return True


class InMemoryAssetAdapter(InMemoryEntityAdapter):
    """Assets: creators see what they own; brands see their projects' assets
    and assets they hold an active, unexpired license for."""

    kind = EntityKind.ASSETS

    def is_visible(self, record: Record, context: PermissionContext, now: datetime) -> bool:
        if context.role is Role.CREATOR:
            return context.creator_id is not None and record.get("creator_id") == context.creator_id
        if context.role is Role.BRAND:
            if context.brand_id is None:
                return False
            if record.get("project_brand_id") == context.brand_id:
                return True
            return any(self._licensed_to(license, context.brand_id, now) for license in record.get("licenses") or ())
        return True

    @staticmethod
    def _licensed_to(license: Mapping[str, Any], brand_id: str, now: datetime) -> bool:
        if license.get("brand_id") != brand_id or str(license.get("status") or "").upper() != "ACTIVE":
            return False
        end_date = parse_datetime(license.get("end_date"))
        return end_date is None or as_utc(end_date) >= now

    def matches_filters(self, record: Record, filters: SearchFilters) -> bool:
        if not _one_of(filters.asset_type, record.get("type")):
            return False
        if not _one_of(filters.asset_status, record.get("status")):
            return False
        if not _equals(filters.project_id, record.get("project_id")):
            return False
        if not _equals(filters.creator_id, record.get("creator_id")):
            return False
        if not _equals(filters.created_by, record.get("created_by")):
            return False
        if filters.tags:
            tags = {str(tag).casefold() for tag in record.get("tags") or ()}
            if not tags.intersection(tag.casefold() for tag in filters.tags):
                return False
        return True


class InMemoryCreatorAdapter(InMemoryEntityAdapter):
    """Creators: non-admins see approved profiles and their own."""

    kind = EntityKind.CREATORS

    def is_visible(self, record: Record, context: PermissionContext, now: datetime) -> bool:
        if context.is_admin:
            return True
        if str(record.get("verification_status") or "").lower() == "approved":
            return True
        return context.user_id is not None and record.get("user_id") == context.user_id

    def matches_filters(self, record: Record, filters: SearchFilters) -> bool:
        if not _one_of(filters.verification_status, record.get("verification_status")):
            return False
        if filters.specialties:
            specialties = {str(s).casefold() for s in record.get("specialties") or ()}
            if not specialties.intersection(s.casefold() for s in filters.specialties):
                return False
        if filters.country and str(record.get("country") or "").casefold() != filters.country.casefold():
            return False
        availability = filters.availability_status
        if availability and str(record.get("availability_status") or "").casefold() != availability.casefold():
            return False
        return True


class InMemoryProjectAdapter(InMemoryEntityAdapter):
    """Projects: brands see only their own."""

    kind = EntityKind.PROJECTS

    def is_visible(self, record: Record, context: PermissionContext, now: datetime) -> bool:
        if context.role is Role.BRAND:
            return context.brand_id is not None and record.get("brand_id") == context.brand_id
        return True

    def matches_filters(self, record: Record, filters: SearchFilters) -> bool:
        return (
            _one_of(filters.project_type, record.get("project_type"))
            and _one_of(filters.project_status, record.get("status"))
            and _equals(filters.brand_id, record.get("brand_id"))
            and _equals(filters.created_by, record.get("created_by"))
        )


class InMemoryLicenseAdapter(InMemoryEntityAdapter):
    """Licenses: brands see theirs, creators those on assets they own."""

    kind = EntityKind.LICENSES

    def is_visible(self, record: Record, context: PermissionContext, now: datetime) -> bool:
        if context.is_admin:
            return True
        if context.role is Role.BRAND:
            return context.brand_id is not None and record.get("brand_id") == context.brand_id
        if context.role is Role.CREATOR:
            return context.creator_id is not None and record.get("asset_creator_id") == context.creator_id
        return False

    def matches_filters(self, record: Record, filters: SearchFilters) -> bool:
        return (
            _one_of(filters.license_type, record.get("license_type"))
            and _one_of(filters.license_status, record.get("status"))
            and _equals(filters.brand_id, record.get("brand_id"))
        )


MEMORY_ADAPTERS = {
    EntityKind.ASSETS: InMemoryAssetAdapter,
    EntityKind.CREATORS: InMemoryCreatorAdapter,
    EntityKind.PROJECTS: InMemoryProjectAdapter,
    EntityKind.LICENSES: InMemoryLicenseAdapter,
}


def load_fixtures(path: Union[str, Path]) -> Dict[EntityKind, List[Record]]:
    """Read a fixtures file; unknown top-level keys are ignored with a warning."""
    with open(path, "r") as f:
        payload = json.load(f)

    fixtures: Dict[EntityKind, List[Record]] = {}
    for key, records in payload.items():
        try:
            kind = EntityKind(key)
        except ValueError:
            logger.warning("Ignoring unknown fixture section", section=key)
            continue
        fixtures[kind] = list(records)
    logger.info(
        "Loaded search fixtures",
        path=str(path),
        counts={kind.value: len(records) for kind, records in fixtures.items()},
    )
    return fixtures


def create_memory_adapters(
    fixtures: Optional[Mapping[EntityKind, Iterable[Mapping[str, Any]]]] = None,
) -> Dict[EntityKind, InMemoryEntityAdapter]:
    """One in-memory adapter per entity kind, seeded from ``fixtures``."""
    fixtures = fixtures or {}
    return {kind: adapter_class(fixtures.get(kind, ())) for kind, adapter_class in MEMORY_ADAPTERS.items()}
