"""Shared fixtures for the search service tests."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from search_service.analytics.recorder import AnalyticsRecorder
from search_service.analytics.sinks import InMemoryAnalyticsSink
from search_service.engine.search_manager import SearchManager
from search_service.intelligence.query_normalizer import QueryNormalizer
from search_service.models import EntityKind
from search_service.ranking.config import ConfigHolder, SearchConfig
from search_service.retrievers.memory import create_memory_adapters

REFERENCE_TIME = datetime(2024, 6, 1, tzinfo=timezone.utc)


def sample_records():
    """A small catalogue where "logo" matches something of every kind."""
    return {
        EntityKind.ASSETS: [
            {
                "id": "a1",
                "title": "Logo Design Package",
                "description": "Complete logo kit",
                "type": "IMAGE",
                "status": "APPROVED",
                "creator_id": "c1",
                "project_id": "p1",
                "project_brand_id": "b1",
                "creator_verified": True,
                "view_count": 500,
                "tags": ["branding", "logo"],
                "created_at": "2024-05-25T00:00:00Z",
            },
            {
                "id": "a2",
                "title": "Logo",
                "description": "Minimal mark",
                "type": "IMAGE",
                "status": "DRAFT",
                "creator_id": "c2",
                "tags": ["mark"],
                "licenses": [{"brand_id": "b2", "status": "ACTIVE", "end_date": None}],
                "created_at": "2024-01-01T00:00:00Z",
            },
            {
                "id": "a3",
                "title": "Product Video",
                "description": "Launch video with logo reveal",
                "type": "VIDEO",
                "status": "PUBLISHED",
                "creator_id": "c1",
                "created_at": "2023-06-01T00:00:00Z",
            },
            {
                "id": "a4",
                "title": "Old Logo",
                "type": "IMAGE",
                "status": "APPROVED",
                "creator_id": "c1",
                "created_at": "2022-01-01T00:00:00Z",
                "deleted_at": "2023-01-01T00:00:00Z",
            },
        ],
        EntityKind.CREATORS: [
            {
                "id": "cr1",
                "user_id": "u1",
                "stage_name": "Logo Studio",
                "bio": "We craft logos",
                "verification_status": "approved",
                "availability_status": "available",
                "specialties": ["branding"],
                "country": "US",
                "created_at": "2024-03-01T00:00:00Z",
            },
            {
                "id": "cr2",
                "user_id": "u2",
                "stage_name": "Pending Logo Maker",
                "verification_status": "pending",
                "availability_status": "unavailable",
                "country": "DE",
                "created_at": "2024-04-01T00:00:00Z",
            },
        ],
        EntityKind.PROJECTS: [
            {
                "id": "p1",
                "name": "Logo Refresh",
                "description": "Rebrand project",
                "brand_id": "b1",
                "brand_verified": True,
                "status": "ACTIVE",
                "project_type": "CAMPAIGN",
                "created_at": "2024-05-01T00:00:00Z",
            },
            {
                "id": "p2",
                "name": "Summer Campaign",
                "description": "Logo not needed",
                "brand_id": "b2",
                "status": "DRAFT",
                "project_type": "CONTENT",
                "created_at": "2024-04-01T00:00:00Z",
            },
        ],
        EntityKind.LICENSES: [
            {
                "id": "l1",
                "license_type": "EXCLUSIVE",
                "asset_id": "a2",
                "asset_title": "Logo",
                "asset_creator_id": "c2",
                "brand_id": "b2",
                "brand_name": "Acme",
                "status": "ACTIVE",
                "signed_at": "2024-02-02T00:00:00Z",
                "created_at": "2024-02-01T00:00:00Z",
            },
        ],
    }


@pytest.fixture
def records():
    return sample_records()


@pytest.fixture
def adapters(records):
    return create_memory_adapters(records)


@pytest.fixture
def config():
    return SearchConfig()


@pytest.fixture
def normalize(config):
    """Build a ``SearchQuery`` with the default tuning."""
    return QueryNormalizer(config).normalize


@pytest.fixture
def holder():
    return ConfigHolder()


@pytest.fixture
def sink():
    return InMemoryAnalyticsSink()


@pytest_asyncio.fixture
async def recorder(sink):
    recorder = AnalyticsRecorder(sink, queue_size=100, clock=lambda: REFERENCE_TIME)
    await recorder.start()
    yield recorder
    await recorder.stop()


@pytest_asyncio.fixture
async def manager(adapters, holder, recorder):
    manager = SearchManager(
        adapters,
        holder,
        recorder,
        adapter_timeout_ms=200,
        clock=lambda: REFERENCE_TIME,
    )
    yield manager
    await manager.cleanup()
