"""Tests for the search manager fan-out and aggregation."""

import asyncio

import pytest

from search_service.engine.search_manager import SearchManager
from search_service.errors import AdapterError, AllAdaptersFailedError, ValidationError
from search_service.models import EntityKind, PermissionContext, Role
from search_service.retrievers.base import EntityAdapter
from search_service.retrievers.projections import PROJECTIONS

from .conftest import REFERENCE_TIME


class SlowAdapter(EntityAdapter):
    """Never answers within any reasonable timeout."""

    def __init__(self, kind, delay=5.0):
        self.kind = kind
        self.delay = delay
        self.cancelled = False

    def project_to_candidate(self, record):
        return PROJECTIONS[self.kind](record)

    async def search(self, query, context, cap):
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class BrokenAdapter(EntityAdapter):
    def __init__(self, kind, error=None):
        self.kind = kind
        self.error = error or RuntimeError("connection reset")

    def project_to_candidate(self, record):
        return PROJECTIONS[self.kind](record)

    async def search(self, query, context, cap):
        raise self.error


def build_manager(adapters, holder, recorder, timeout_ms=100):
    return SearchManager(adapters, holder, recorder, adapter_timeout_ms=timeout_ms, clock=lambda: REFERENCE_TIME)


@pytest.mark.asyncio
async def test_search_across_all_kinds(manager, recorder, sink):
    response = await manager.search("logo")

    assert not response.partial
    assert response.unavailable_entities == ()
    # Anonymous callers: three assets, one approved creator, two projects, no licenses
    assert response.pagination.total == 6
    assert response.facets.entity_counts == {
        EntityKind.ASSETS: 3,
        EntityKind.CREATORS: 1,
        EntityKind.PROJECTS: 2,
        EntityKind.LICENSES: 0,
    }
    scores = [r.composite for r in response.results]
    assert scores == sorted(scores, reverse=True)
    assert response.results[0].entity_id == "a1"
    assert response.config_version == 1

    await recorder.drain()
    event = await sink.get(response.event_id)
    assert event.result_count == 6
    assert event.query == "logo"


@pytest.mark.asyncio
async def test_requested_entities_only(manager):
    response = await manager.search("logo", entities=["projects"])
    assert {r.entity_kind for r in response.results} == {EntityKind.PROJECTS}
    assert set(response.facets.entity_counts) == {EntityKind.PROJECTS}


@pytest.mark.asyncio
async def test_pagination_is_applied_after_merge(manager):
    first = await manager.search("logo", page=1, page_size=4)
    second = await manager.search("logo", page=2, page_size=4)
    everything = await manager.search("logo", page_size=100)

    assert first.pagination.total_pages == 2
    assert len(first.results) == 4 and len(second.results) == 2
    paged = [r.entity_id for r in first.results + second.results]
    assert paged == [r.entity_id for r in everything.results]


@pytest.mark.asyncio
async def test_timeout_produces_partial_response(adapters, holder, recorder):
    adapters = dict(adapters)
    slow = SlowAdapter(EntityKind.CREATORS)
    adapters[EntityKind.CREATORS] = slow
    manager = build_manager(adapters, holder, recorder)

    response = await manager.search("logo")

    assert response.partial
    assert response.unavailable_entities == (EntityKind.CREATORS,)
    assert EntityKind.CREATORS not in response.facets.entity_counts
    assert all(r.entity_kind is not EntityKind.CREATORS for r in response.results)
    assert response.pagination.total == 5
    assert slow.cancelled


@pytest.mark.asyncio
async def test_adapter_exception_is_isolated(adapters, holder, recorder):
    adapters = dict(adapters)
    adapters[EntityKind.PROJECTS] = BrokenAdapter(EntityKind.PROJECTS)
    adapters[EntityKind.ASSETS] = BrokenAdapter(EntityKind.ASSETS, AdapterError(EntityKind.ASSETS, "query failed"))
    manager = build_manager(adapters, holder, recorder)

    response = await manager.search("logo")

    assert response.partial
    assert set(response.unavailable_entities) == {EntityKind.PROJECTS, EntityKind.ASSETS}
    assert {r.entity_id for r in response.results} == {"cr1"}


@pytest.mark.asyncio
async def test_all_adapters_failing_raises(holder, recorder):
    adapters = {kind: BrokenAdapter(kind) for kind in EntityKind}
    manager = build_manager(adapters, holder, recorder)

    with pytest.raises(AllAdaptersFailedError) as exc:
        await manager.search("logo", entities=["assets", "licenses"])
    assert exc.value.failed == (EntityKind.ASSETS, EntityKind.LICENSES)
    assert recorder.queue_depth == 0


@pytest.mark.asyncio
async def test_invalid_query_is_rejected_before_fan_out(manager):
    with pytest.raises(ValidationError):
        await manager.search("x")


@pytest.mark.asyncio
async def test_cancellation_records_degraded_event(adapters, holder, recorder, sink):
    adapters = {kind: SlowAdapter(kind) for kind in EntityKind}
    manager = build_manager(adapters, holder, recorder, timeout_ms=10_000)

    task = asyncio.create_task(manager.search("logo"))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert all(adapter.cancelled for adapter in adapters.values())
    await recorder.drain()
    events = await sink.events_between(REFERENCE_TIME, REFERENCE_TIME.replace(year=2025))
    assert len(events) == 1
    assert events[0].degraded
    assert events[0].result_count == 0


@pytest.mark.asyncio
async def test_config_swap_applies_to_next_request(manager, holder):
    before = await manager.search("logo")
    holder.apply_tuning({"weights": {"textual": 0, "recency": 1, "popularity": 0, "quality": 0}})
    after = await manager.search("logo")

    assert after.config_version == before.config_version + 1
    # Recency only: newest first
    assert [r.entity_id for r in after.results] == ["a1", "p1", "p2", "cr1", "a2", "a3"]


@pytest.mark.asyncio
async def test_visibility_follows_caller(manager):
    brand = PermissionContext(user_id="u9", role=Role.BRAND, brand_id="b2")
    response = await manager.search("logo", context=brand)
    found = {(r.entity_kind, r.entity_id) for r in response.results}
    assert (EntityKind.LICENSES, "l1") in found
    assert (EntityKind.ASSETS, "a2") in found
    assert (EntityKind.ASSETS, "a1") not in found
    assert (EntityKind.PROJECTS, "p1") not in found


@pytest.mark.asyncio
async def test_click_round_trip(manager, recorder, sink):
    response = await manager.search("logo")
    await manager.attach_click(response.event_id, "a2", 0, "assets")
    await recorder.drain()
    event = await sink.get(response.event_id)
    assert event.click.result_id == "a2"


@pytest.mark.asyncio
async def test_health_check(manager):
    health = await manager.health_check()
    assert health["adapters"] == ["assets", "creators", "licenses", "projects"]
    assert health["analytics_running"]
