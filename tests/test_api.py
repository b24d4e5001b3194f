"""HTTP API tests using FastAPI's TestClient with injected components."""

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from libs.common.auth import AuthManager
from libs.common.metrics import MetricsCollector
from search_service.analytics.recorder import AnalyticsRecorder
from search_service.analytics.reports import AnalyticsReports
from search_service.analytics.sinks import InMemoryAnalyticsSink
from search_service.engine.search_manager import SearchManager
from search_service.errors import AnalyticsWriteError
from search_service.main import create_app
from search_service.models import AnalyticsEvent, EntityKind
from search_service.ranking.sync import ConfigSync

from .conftest import REFERENCE_TIME
from .test_search_manager import BrokenAdapter

SECRET = "test-secret"
AUTH = AuthManager(SECRET)


def bearer(**claims):
    return {"Authorization": f"Bearer {AUTH.create_access_token(claims)}"}


ADMIN_HEADERS = bearer(sub="admin-1", role="ADMIN")


def build_app(adapters, holder, sink):
    app = create_app()
    recorder = AnalyticsRecorder(sink, clock=lambda: REFERENCE_TIME)
    app.state.search_manager = SearchManager(
        adapters, holder, recorder, adapter_timeout_ms=500, clock=lambda: REFERENCE_TIME
    )
    app.state.analytics_reports = AnalyticsReports(sink, clock=lambda: REFERENCE_TIME)
    app.state.auth_manager = AuthManager(SECRET)
    app.state.config_sync = ConfigSync(holder)
    app.state.metrics_collector = MetricsCollector("search-service-test")
    return app


@pytest.fixture
def client(adapters, holder, sink):
    return TestClient(build_app(adapters, holder, sink))


def seed(sink, *events):
    for event in events:
        asyncio.run(sink.append(event))


def analytics_event(event_id, query, user_id=None, age=timedelta(hours=1)):
    return AnalyticsEvent(
        event_id=event_id,
        query=query,
        entities=(EntityKind.ASSETS,),
        filters={},
        result_count=0 if query == "nothing" else 2,
        execution_time_ms=15,
        created_at=REFERENCE_TIME - age,
        user_id=user_id,
    )


class TestSearchEndpoint:
    def test_anonymous_search(self, client):
        response = client.post("/api/v1/search", json={"query": "logo"})
        assert response.status_code == 200
        body = response.json()
        assert body["pagination"]["total"] == 6
        assert body["results"][0]["id"] == "a1"
        assert body["results"][0]["highlights"]["title"] == "<mark>Logo</mark> Design Package"
        assert body["facets"]["entityCounts"]["licenses"] == 0
        assert body["partial"] is False
        assert body["eventId"]
        assert "X-Process-Time" in response.headers

    def test_camel_case_parameters(self, client):
        response = client.post("/api/v1/search", json={
            "query": "logo",
            "entities": ["assets"],
            "pageSize": 2,
            "sortBy": "title",
        })
        body = response.json()
        assert [r["title"] for r in body["results"]] == ["Logo", "Logo Design Package"]
        assert body["pagination"]["totalPages"] == 2

    @pytest.mark.parametrize("payload, field", [
        ({"query": "x"}, "query"),
        ({}, "query"),
        ({"query": "logo", "page": 0}, "page"),
        ({"query": "logo", "page": "first"}, "page"),
        ({"query": "logo", "entities": ["brands"]}, "entities"),
        ({"query": "logo", "filters": {"colour": "red"}}, "filters.colour"),
        ({"query": "logo", "sortBy": "popularity"}, "sortBy"),
    ])
    def test_validation_errors(self, client, payload, field):
        response = client.post("/api/v1/search", json=payload)
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"
        assert response.json()["field"] == field

    def test_invalid_token(self, client):
        response = client.post("/api/v1/search", json={"query": "logo"}, headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_brand_token_sees_licenses(self, client):
        headers = bearer(sub="u7", role="BRAND", brand_id="b2")
        body = client.post("/api/v1/search", json={"query": "logo", "entities": ["licenses"]}, headers=headers).json()
        assert [r["id"] for r in body["results"]] == ["l1"]

    def test_all_adapters_down(self, holder, sink):
        adapters = {kind: BrokenAdapter(kind) for kind in EntityKind}
        client = TestClient(build_app(adapters, holder, sink))
        response = client.post("/api/v1/search", json={"query": "logo", "entities": ["assets"]})
        assert response.status_code == 503
        assert response.json() == {"error": "search_unavailable", "unavailableEntities": ["assets"]}


class TestClickEndpoint:
    def test_click(self, client):
        event_id = client.post("/api/v1/search", json={"query": "logo"}).json()["eventId"]
        response = client.post("/api/v1/search/click", json={
            "eventId": event_id,
            "resultId": "a1",
            "resultPosition": 0,
            "resultEntityKind": "assets",
        })
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_unknown_event(self, client):
        response = client.post("/api/v1/search/click", json={
            "eventId": "missing",
            "resultId": "a1",
            "resultPosition": 0,
            "resultEntityKind": "assets",
        })
        assert response.status_code == 404

    def test_analytics_store_down(self, adapters, holder):
        class DownSink(InMemoryAnalyticsSink):
            async def attach_click(self, event_id, click):
                raise AnalyticsWriteError("connection refused")

        client = TestClient(build_app(adapters, holder, DownSink()))
        response = client.post("/api/v1/search/click", json={
            "eventId": "written-earlier",
            "resultId": "a1",
            "resultPosition": 0,
            "resultEntityKind": "assets",
        })
        assert response.status_code == 503
        assert response.json()["error"] == "analytics_unavailable"

    def test_negative_position(self, client):
        event_id = client.post("/api/v1/search", json={"query": "logo"}).json()["eventId"]
        response = client.post("/api/v1/search/click", json={
            "eventId": event_id,
            "resultId": "a1",
            "resultPosition": -1,
            "resultEntityKind": "assets",
        })
        assert response.status_code == 422
        assert response.json()["field"] == "resultPosition"


class TestAdminEndpoints:
    @pytest.mark.parametrize("path", [
        "/api/v1/search/analytics/summary",
        "/api/v1/search/analytics/zero-results",
        "/api/v1/search/analytics/performance",
        "/api/v1/search/analytics/trending",
        "/api/v1/search/config",
    ])
    def test_admin_only(self, client, path):
        assert client.get(path).status_code == 403
        assert client.get(path, headers=bearer(sub="u1", role="CREATOR")).status_code == 403
        assert client.get(path, headers=ADMIN_HEADERS).status_code == 200

    def test_summary(self, client, sink):
        seed(sink, analytics_event("e1", "logo"), analytics_event("e2", "nothing"))
        body = client.get("/api/v1/search/analytics/summary", headers=ADMIN_HEADERS).json()
        assert body["totalSearches"] == 2
        assert body["zeroResultsRate"] == pytest.approx(0.5)

        zero = client.get("/api/v1/search/analytics/zero-results", headers=ADMIN_HEADERS).json()
        assert zero == {"queries": [{"query": "nothing", "count": 1}]}

    def test_config_round_trip(self, client, holder):
        current = client.get("/api/v1/search/config", headers=ADMIN_HEADERS).json()
        assert current["version"] == 1
        assert current["tuning"]["recency"]["half_life_days"] == 90

        tuning = current["tuning"]
        tuning["recency"]["half_life_days"] = 30
        response = client.put("/api/v1/search/config", json=tuning, headers=ADMIN_HEADERS)
        assert response.status_code == 200
        assert response.json()["version"] == 2
        assert holder.current.recency_half_life_days == 30

    def test_invalid_config(self, client, holder):
        response = client.put(
            "/api/v1/search/config",
            json={"weights": {"textual": -1}},
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 422
        assert response.json()["error"] == "configuration_error"
        assert holder.current.version == 1

    def test_config_update_requires_admin(self, client):
        response = client.put("/api/v1/search/config", json={}, headers=bearer(sub="u1", role="BRAND"))
        assert response.status_code == 403


class TestRecentSearches:
    def test_requires_authentication(self, client):
        assert client.get("/api/v1/search/recent").status_code == 401

    def test_lists_own_searches(self, client, sink):
        seed(
            sink,
            analytics_event("e1", "logo", user_id="u1", age=timedelta(hours=2)),
            analytics_event("e2", "video", user_id="u1"),
            analytics_event("e3", "brand", user_id="u2"),
        )
        body = client.get("/api/v1/search/recent", headers=bearer(sub="u1", role="VIEWER")).json()
        assert [s["query"] for s in body["searches"]] == ["video", "logo"]


class TestServiceEndpoints:
    def test_root(self, client):
        assert client.get("/").json()["service"] == "search-service"

    def test_metrics(self, client):
        client.post("/api/v1/search", json={"query": "logo"})
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_health_reports_stopped_analytics(self, client):
        response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["adapters"] == ["assets", "creators", "licenses", "projects"]
