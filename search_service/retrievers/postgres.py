"""PostgreSQL entity adapters.

Each entity kind is described by a ``TableSpec``: the FROM clause, the
selected columns (aliased to the keys ``projections`` expects), the text
columns to match, the filter columns and a visibility rule. ``build_search_sql``
turns a spec plus a query into a parameterized search statement and a count
statement that share one WHERE clause and parameter list.

Connection management
- One lazily created asyncpg pool is shared by all four adapters
- Driver errors are wrapped in ``AdapterError`` for the engine to isolate
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import asyncpg
from asyncpg import Pool
import structlog

from ..errors import AdapterError
from ..models import Candidate, EntityKind, PermissionContext, Role, SearchQuery
from .base import AdapterResult, EntityAdapter
from .projections import PROJECTIONS

logger = structlog.get_logger("retrievers.postgres")


class SqlParams:
    """Collects positional parameters and hands out ``$n`` placeholders."""

    def __init__(self):
        self.values: List[Any] = []

    def add(self, value: Any) -> str:
        self.values.append(value)
        return f"${len(self.values)}"


Visibility = Callable[[PermissionContext, SqlParams, datetime], Optional[str]]


@dataclass(frozen=True)
class TableSpec:
    """How one entity kind is stored and filtered.

    ``filters`` maps a ``SearchFilters`` attribute to ``(column, op)`` where
    op is ``any`` (value list), ``eq`` (single value) or ``overlap`` (array
    column shares an element with the value list).
    """
    kind: EntityKind
    from_clause: str
    columns: Tuple[str, ...]
    primary_column: str
    secondary_column: str
    created_column: str
    deleted_column: str
    visibility: Visibility
    filters: Dict[str, Tuple[str, str]] = field(default_factory=dict)


def like_pattern(text: str) -> str:
    """Substring ILIKE pattern with LIKE metacharacters escaped."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _asset_visibility(context: PermissionContext, params: SqlParams, now: datetime) -> Optional[str]:
    if context.role is Role.CREATOR:
        if context.creator_id is None:
            return "FALSE"
        return f"a.creator_id = {params.add(context.creator_id)}"
    if context.role is Role.BRAND:
        if context.brand_id is None:
            return "FALSE"
        brand = params.add(context.brand_id)
        moment = params.add(now)
        return (
            f"(p.brand_id = {brand} OR EXISTS ("
            f"SELECT 1 FROM licenses l WHERE l.ip_asset_id = a.id AND l.brand_id = {brand} "
            f"AND l.status = 'ACTIVE' AND l.deleted_at IS NULL "
            f"AND (l.end_date IS NULL OR l.end_date >= {moment})))"
        )
    return None


def _creator_visibility(context: PermissionContext, params: SqlParams, now: datetime) -> Optional[str]:
    if context.is_admin:
        return None
    if context.user_id is None:
        return "c.verification_status = 'approved'"
    return f"(c.verification_status = 'approved' OR c.user_id = {params.add(context.user_id)})"


def _project_visibility(context: PermissionContext, params: SqlParams, now: datetime) -> Optional[str]:
    if context.role is Role.BRAND:
        if context.brand_id is None:
            return "FALSE"
        return f"p.brand_id = {params.add(context.brand_id)}"
    return None


def _license_visibility(context: PermissionContext, params: SqlParams, now: datetime) -> Optional[str]:
    if context.is_admin:
        return None
    if context.role is Role.BRAND and context.brand_id is not None:
        return f"l.brand_id = {params.add(context.brand_id)}"
    if context.role is Role.CREATOR and context.creator_id is not None:
        return f"a.creator_id = {params.add(context.creator_id)}"
    return "FALSE"


TABLE_SPECS: Dict[EntityKind, TableSpec] = {
    EntityKind.ASSETS: TableSpec(
        kind=EntityKind.ASSETS,
        from_clause=(
            "ip_assets a "
            "LEFT JOIN projects p ON p.id = a.project_id "
            "LEFT JOIN creators c ON c.id = a.creator_id"
        ),
        columns=(
            "a.id", "a.title", "a.description", "a.type", "a.status", "a.project_id",
            "a.creator_id", "a.created_by", "a.tags", "a.file_size", "a.mime_type",
            "a.thumbnail_url", "a.view_count", "a.usage_count", "a.favorite_count",
            "a.created_at", "a.updated_at",
            "(c.verification_status = 'approved') AS creator_verified",
            "p.brand_id AS project_brand_id",
        ),
        primary_column="a.title",
        secondary_column="a.description",
        created_column="a.created_at",
        deleted_column="a.deleted_at",
        visibility=_asset_visibility,
        filters={
            "asset_type": ("a.type", "any"),
            "asset_status": ("a.status", "any"),
            "project_id": ("a.project_id", "eq"),
            "creator_id": ("a.creator_id", "eq"),
            "created_by": ("a.created_by", "eq"),
            "tags": ("a.tags", "overlap"),
        },
    ),
    EntityKind.CREATORS: TableSpec(
        kind=EntityKind.CREATORS,
        from_clause="creators c",
        columns=(
            "c.id", "c.user_id", "c.stage_name", "c.bio", "c.verification_status",
            "c.specialties", "c.country", "c.availability_status", "c.portfolio_url",
            "c.view_count", "c.usage_count", "c.favorite_count",
            "c.created_at", "c.updated_at",
        ),
        primary_column="c.stage_name",
        secondary_column="c.bio",
        created_column="c.created_at",
        deleted_column="c.deleted_at",
        visibility=_creator_visibility,
        filters={
            "verification_status": ("c.verification_status", "any"),
            "specialties": ("c.specialties", "overlap"),
            "country": ("c.country", "eq"),
            "availability_status": ("c.availability_status", "eq"),
        },
    ),
    EntityKind.PROJECTS: TableSpec(
        kind=EntityKind.PROJECTS,
        from_clause="projects p LEFT JOIN brands b ON b.id = p.brand_id",
        columns=(
            "p.id", "p.name", "p.description", "p.status", "p.project_type", "p.brand_id",
            "b.company_name AS brand_name", "b.verified AS brand_verified", "p.budget_cents",
            "p.created_by", "p.view_count", "p.usage_count", "p.favorite_count",
            "p.created_at", "p.updated_at",
        ),
        primary_column="p.name",
        secondary_column="p.description",
        created_column="p.created_at",
        deleted_column="p.deleted_at",
        visibility=_project_visibility,
        filters={
            "project_type": ("p.project_type", "any"),
            "project_status": ("p.status", "any"),
            "brand_id": ("p.brand_id", "eq"),
            "created_by": ("p.created_by", "eq"),
        },
    ),
    EntityKind.LICENSES: TableSpec(
        kind=EntityKind.LICENSES,
        from_clause=(
            "licenses l "
            "JOIN ip_assets a ON a.id = l.ip_asset_id "
            "JOIN brands b ON b.id = l.brand_id"
        ),
        columns=(
            "l.id", "l.license_type", "l.status", "l.ip_asset_id AS asset_id",
            "a.title AS asset_title", "a.creator_id AS asset_creator_id", "l.brand_id",
            "b.company_name AS brand_name", "b.verified AS brand_verified", "l.fee_cents",
            "l.end_date", "l.signed_at", "l.created_at", "l.updated_at",
        ),
        primary_column="a.title",
        secondary_column="b.company_name",
        created_column="l.created_at",
        deleted_column="l.deleted_at",
        visibility=_license_visibility,
        filters={
            "license_type": ("l.license_type", "any"),
            "license_status": ("l.status", "any"),
            "brand_id": ("l.brand_id", "eq"),
        },
    ),
}


def _text_clause(spec: TableSpec, query: SearchQuery, params: SqlParams) -> str:
    needles = [query.normalized_text, *(t for t in query.tokens if t != query.normalized_text)]
    parts = []
    for needle in needles:
        placeholder = params.add(like_pattern(needle))
        parts.append(f"{spec.primary_column} ILIKE {placeholder}")
        parts.append(f"{spec.secondary_column} ILIKE {placeholder}")
    return "(" + " OR ".join(parts) + ")"


def _filter_clauses(spec: TableSpec, query: SearchQuery, params: SqlParams) -> List[str]:
    clauses = []
    filters = query.filters
    for name, (column, op) in spec.filters.items():
        value = getattr(filters, name)
        if value is None or (isinstance(value, tuple) and not value):
            continue
        if op == "any":
            clauses.append(f"{column} = ANY({params.add(list(value))}::text[])")
        elif op == "overlap":
            clauses.append(f"{column} && {params.add(list(value))}::text[]")
        else:
            clauses.append(f"{column} = {params.add(value)}")
    if filters.date_from is not None:
        clauses.append(f"{spec.created_column} >= {params.add(filters.date_from)}")
    if filters.date_to is not None:
        clauses.append(f"{spec.created_column} <= {params.add(filters.date_to)}")
    return clauses


def build_search_sql(
    spec: TableSpec,
    query: SearchQuery,
    context: PermissionContext,
    cap: int,
    now: Optional[datetime] = None,
) -> Tuple[str, str, List[Any]]:
    """Build ``(search_sql, count_sql, params)`` for one entity kind.

    Both statements take the same parameters. Candidates come back newest
    first so the cap keeps the most recent matches.
    """
    params = SqlParams()
    where = [f"{spec.deleted_column} IS NULL"]
    visibility = spec.visibility(context, params, now or datetime.now(timezone.utc))
    if visibility:
        where.append(visibility)
    where.append(_text_clause(spec, query, params))
    where.extend(_filter_clauses(spec, query, params))

    where_sql = " AND ".join(where)
    search_sql = (
        f"SELECT {', '.join(spec.columns)} FROM {spec.from_clause} "
        f"WHERE {where_sql} "
        f"ORDER BY {spec.created_column} DESC NULLS LAST, {spec.columns[0]} ASC "
        f"LIMIT {int(cap)}"
    )
    count_sql = f"SELECT COUNT(*) FROM {spec.from_clause} WHERE {where_sql}"
    return search_sql, count_sql, params.values


class PostgresConnectionManager:
    """Lazily creates and shares one asyncpg pool.

    Adapters call ``get_pool`` concurrently on the first search; creation is
    serialized so exactly one pool exists.
    """

    def __init__(self, dsn: str, pool_size: int = 10, command_timeout: int = 30):
        self.dsn = dsn
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self._pool: Optional[Pool] = None
        self._lock = asyncio.Lock()

    async def get_pool(self) -> Pool:
        if self._pool is not None:
            return self._pool
        async with self._lock:
            if self._pool is None:
                try:
                    self._pool = await asyncpg.create_pool(
                        self.dsn,
                        min_size=1,
                        max_size=self.pool_size,
                        command_timeout=self.command_timeout,
                    )
                    logger.info("Created search connection pool", pool_size=self.pool_size)
                except Exception as e:
                    logger.error("Failed to create search connection pool", error=str(e))
                    raise
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Closed search connection pool")


class PostgresEntityAdapter(EntityAdapter):
    """Entity adapter backed by one ``TableSpec``."""

    def __init__(self, spec: TableSpec, connections: PostgresConnectionManager):
        self.spec = spec
        self.kind = spec.kind
        self.connections = connections

    def project_to_candidate(self, record: Mapping[str, Any]) -> Candidate:
        return PROJECTIONS[self.kind](record)

    async def search(self, query: SearchQuery, context: PermissionContext, cap: int) -> AdapterResult:
        search_sql, count_sql, params = build_search_sql(self.spec, query, context, cap)
        try:
            pool = await self.connections.get_pool()
            async with pool.acquire() as conn:
                rows = await conn.fetch(search_sql, *params)
                total = await conn.fetchval(count_sql, *params)
        except (asyncpg.PostgresError, OSError) as e:
            logger.warning("Entity query failed", entity_kind=self.kind.value, error=str(e))
            raise AdapterError(self.kind, "query failed") from e

        candidates = tuple(self.project_to_candidate(dict(row)) for row in rows)
        return AdapterResult(candidates=candidates, total_count=int(total or 0))


def create_postgres_adapters(connections: PostgresConnectionManager) -> Dict[EntityKind, PostgresEntityAdapter]:
    """One PostgreSQL adapter per entity kind sharing ``connections``."""
    return {kind: PostgresEntityAdapter(spec, connections) for kind, spec in TABLE_SPECS.items()}
