"""API routes for the unified search service."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
import structlog

from libs.common.auth import AuthManager
from ..analytics.reports import AnalyticsReports
from ..engine.search_manager import SearchManager
from ..models import PermissionContext, Role
from ..ranking.sync import ConfigSync

logger = structlog.get_logger("search_service.api")

router = APIRouter()


class SearchRequest(BaseModel):
    """Request model for the search endpoint."""
    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = Field(None, description="Search text")
    entities: Optional[List[str]] = Field(None, description="Entity kinds to search; all when empty")
    filters: Optional[Dict[str, Any]] = Field(None, description="Kind-specific filters")
    page: int = Field(1, description="1-based page number")
    page_size: Optional[int] = Field(None, alias="pageSize", description="Results per page")
    sort_by: Optional[str] = Field(None, alias="sortBy", description="relevance, created_at, updated_at, title or name")
    sort_order: Optional[str] = Field(None, alias="sortOrder", description="asc or desc")


class ClickRequest(BaseModel):
    """Request model for click feedback."""
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(..., alias="eventId", description="Analytics event id returned by search")
    result_id: str = Field(..., alias="resultId", description="Clicked result id")
    result_position: int = Field(..., alias="resultPosition", description="0-based position in the page")
    result_entity_kind: str = Field(..., alias="resultEntityKind", description="Entity kind of the clicked result")


def get_search_manager(request: Request) -> SearchManager:
    """Get search manager from application state."""
    return request.app.state.search_manager


def get_reports(request: Request) -> AnalyticsReports:
    """Get analytics reports from application state."""
    return request.app.state.analytics_reports


def get_config_sync(request: Request) -> ConfigSync:
    """Get the tuning synchronizer from application state."""
    return request.app.state.config_sync


def get_auth_manager(request: Request) -> AuthManager:
    """Get auth manager from application state."""
    return request.app.state.auth_manager


def get_caller_context(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    auth_manager: AuthManager = Depends(get_auth_manager),
) -> PermissionContext:
    """Build the permission context from the optional bearer token."""
    claims = auth_manager.claims_from_header(authorization)
    if claims is None:
        return PermissionContext.anonymous(session_id=session_id)

    try:
        role = Role(str(claims.get("role", Role.VIEWER.value)).upper())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown role in token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return PermissionContext(
        user_id=claims.get("sub"),
        role=role,
        creator_id=claims.get("creator_id"),
        brand_id=claims.get("brand_id"),
        session_id=session_id,
    )


def require_admin(context: PermissionContext = Depends(get_caller_context)) -> PermissionContext:
    """Reject non-admin callers with 403."""
    if not context.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return context


@router.post("/search")
async def search(
    request: SearchRequest,
    context: PermissionContext = Depends(get_caller_context),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Perform unified search across entity kinds."""
    response = await search_manager.search(
        request.query,
        entities=request.entities,
        filters=request.filters,
        page=request.page,
        page_size=request.page_size,
        sort_by=request.sort_by,
        sort_order=request.sort_order,
        context=context,
    )

    logger.info(
        "Search completed",
        query=response.query,
        total=response.pagination.total,
        partial=response.partial,
        latency_ms=response.execution_time_ms,
    )
    return response.to_dict()


@router.post("/search/click")
async def track_click(
    request: ClickRequest,
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Attach click-through data to a previous search."""
    await search_manager.attach_click(
        request.event_id,
        request.result_id,
        request.result_position,
        request.result_entity_kind,
    )
    return {"status": "ok"}


@router.get("/search/analytics/summary")
async def analytics_summary(
    start: Optional[datetime] = Query(None, description="Window start (default: 30 days ago)"),
    end: Optional[datetime] = Query(None, description="Window end (default: now)"),
    _: PermissionContext = Depends(require_admin),
    reports: AnalyticsReports = Depends(get_reports),
):
    """Aggregate search analytics for a time window."""
    return await reports.summary(start, end)


@router.get("/search/analytics/zero-results")
async def analytics_zero_results(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    _: PermissionContext = Depends(require_admin),
    reports: AnalyticsReports = Depends(get_reports),
):
    """Most frequent queries without results."""
    return {"queries": await reports.zero_results(start, end, limit)}


@router.get("/search/analytics/performance")
async def analytics_performance(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    _: PermissionContext = Depends(require_admin),
    reports: AnalyticsReports = Depends(get_reports),
):
    """Latency percentiles and slowest queries."""
    return await reports.performance(start, end)


@router.get("/search/analytics/trending")
async def analytics_trending(
    hours: int = Query(24, ge=1, le=24 * 30),
    limit: int = Query(10, ge=1, le=100),
    _: PermissionContext = Depends(require_admin),
    reports: AnalyticsReports = Depends(get_reports),
):
    """Queries gaining volume against the previous window."""
    return {"trending": await reports.trending(hours, limit)}


@router.get("/search/recent")
async def recent_searches(
    limit: int = Query(10, ge=1, le=50),
    context: PermissionContext = Depends(get_caller_context),
    reports: AnalyticsReports = Depends(get_reports),
):
    """The caller's recent distinct searches."""
    if context.user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return {"searches": await reports.recent(context.user_id, limit)}


@router.get("/search/config")
async def get_search_config(
    _: PermissionContext = Depends(require_admin),
    config_sync: ConfigSync = Depends(get_config_sync),
):
    """Current relevance tuning."""
    config = config_sync.holder.current
    return {"version": config.version, "tuning": config.to_tuning()}


@router.put("/search/config")
async def update_search_config(
    tuning: Dict[str, Any],
    context: PermissionContext = Depends(require_admin),
    config_sync: ConfigSync = Depends(get_config_sync),
):
    """Validate and install new relevance tuning."""
    config = await config_sync.apply(tuning)
    logger.info("Search tuning updated", version=config.version, user_id=context.user_id)
    return {"version": config.version, "tuning": config.to_tuning()}
