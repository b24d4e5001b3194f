"""Tests for analytics recording and reports."""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from search_service.analytics.recorder import AnalyticsRecorder
from search_service.analytics.reports import (
    AnalyticsReports,
    performance_metrics,
    recent_searches,
    summarize,
    trending_searches,
)
from search_service.analytics.sinks import InMemoryAnalyticsSink
from search_service.errors import AnalyticsWriteError, UnknownEventError, ValidationError
from search_service.models import AnalyticsEvent, ClickInfo, EntityKind, PermissionContext

from .conftest import REFERENCE_TIME


class FailingSink(InMemoryAnalyticsSink):
    async def append(self, event):
        raise AnalyticsWriteError("disk full")


class SlowClickSink(InMemoryAnalyticsSink):
    """Holds the first click write until released."""

    def __init__(self):
        super().__init__()
        self.clicks = []
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def attach_click(self, event_id, click):
        self.clicks.append(click.result_id)
        if len(self.clicks) == 1:
            self.entered.set()
            await self.release.wait()
        return await super().attach_click(event_id, click)


def event(event_id, query="logo", result_count=3, duration=10, age=timedelta(0), user_id=None, click=None):
    return AnalyticsEvent(
        event_id=event_id,
        query=query,
        entities=(EntityKind.ASSETS,),
        filters={},
        result_count=result_count,
        execution_time_ms=duration,
        created_at=REFERENCE_TIME - age,
        user_id=user_id,
        click=click,
    )


class TestRecorder:
    @pytest.mark.asyncio
    async def test_record_is_written_in_background(self, recorder, sink, normalize):
        context = PermissionContext(user_id="u1", session_id="s1")
        event_id = recorder.record(normalize("Logo"), result_count=4, duration_ms=12, context=context)

        assert event_id is not None
        await recorder.drain()
        stored = await sink.get(event_id)
        assert stored.query == "logo"
        assert stored.user_id == "u1" and stored.session_id == "s1"
        assert stored.result_count == 4
        assert not stored.degraded

    @pytest.mark.asyncio
    async def test_attach_click_after_write(self, recorder, sink, normalize):
        event_id = recorder.record(normalize("logo"), 2, 5)
        await recorder.drain()

        await recorder.attach_click(event_id, "a1", 1, "assets")
        await recorder.attach_click(event_id, "a2", 0, EntityKind.ASSETS)

        stored = await sink.get(event_id)
        assert stored.click == ClickInfo("a2", 0, EntityKind.ASSETS)

    @pytest.mark.asyncio
    async def test_click_before_write_is_kept(self, sink, normalize):
        recorder = AnalyticsRecorder(sink, clock=lambda: REFERENCE_TIME)
        event_id = recorder.record(normalize("logo"), 2, 5)

        # Worker not started yet: the event is still pending
        await recorder.attach_click(event_id, "a1", 0, "assets")
        await recorder.start()
        await recorder.drain()
        await recorder.stop()

        assert (await sink.get(event_id)).click.result_id == "a1"

    @pytest.mark.asyncio
    async def test_click_during_early_click_write_wins(self, normalize):
        sink = SlowClickSink()
        recorder = AnalyticsRecorder(sink, clock=lambda: REFERENCE_TIME)
        event_id = recorder.record(normalize("logo"), 2, 5)
        await recorder.attach_click(event_id, "a1", 0, "assets")

        await recorder.start()
        await asyncio.wait_for(sink.entered.wait(), timeout=1)
        await recorder.attach_click(event_id, "a2", 1, "assets")
        sink.release.set()
        await recorder.drain()
        await recorder.stop()

        assert sink.clicks == ["a1", "a2"]
        assert (await sink.get(event_id)).click == ClickInfo("a2", 1, EntityKind.ASSETS)

    @pytest.mark.asyncio
    async def test_unknown_event_has_no_side_effects(self, recorder, sink, normalize):
        event_id = recorder.record(normalize("logo"), 2, 5)
        await recorder.drain()
        before = await sink.get(event_id)

        with pytest.raises(UnknownEventError):
            await recorder.attach_click("missing", "a1", 0, "assets")

        assert await sink.get(event_id) == before
        assert len(sink) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("position, kind, field", [(-1, "assets", "resultPosition"), (0, "brands", "resultEntityKind")])
    async def test_invalid_click(self, recorder, normalize, position, kind, field):
        event_id = recorder.record(normalize("logo"), 2, 5)
        with pytest.raises(ValidationError) as exc:
            await recorder.attach_click(event_id, "a1", position, kind)
        assert exc.value.field == field

    @pytest.mark.asyncio
    async def test_overflow_drops_without_blocking(self, sink, normalize):
        metrics = MagicMock()
        recorder = AnalyticsRecorder(sink, queue_size=2, metrics=metrics)
        query = normalize("logo")

        ids = [recorder.record(query, 1, 1) for _ in range(3)]

        assert ids[0] is not None and ids[1] is not None
        assert ids[2] is None
        metrics.record_analytics.assert_any_call("dropped")
        assert recorder.queue_depth == 2

    @pytest.mark.asyncio
    async def test_sink_failure_is_absorbed(self, normalize):
        metrics = MagicMock()
        recorder = AnalyticsRecorder(FailingSink(), metrics=metrics)
        await recorder.start()

        event_id = recorder.record(normalize("logo"), 1, 1)
        await recorder.drain()

        assert event_id is not None
        assert recorder.running
        metrics.record_analytics.assert_any_call("failed")
        await recorder.stop()

    @pytest.mark.asyncio
    async def test_publishes_events(self, sink, normalize):
        publisher = MagicMock()
        recorder = AnalyticsRecorder(sink, publisher=publisher)
        await recorder.start()

        event_id = recorder.record(normalize("logo"), 1, 1)
        await recorder.drain()
        await recorder.attach_click(event_id, "a1", 0, "assets")
        await recorder.stop()

        published = [call[0][0] for call in publisher.publish.call_args_list]
        assert [e.event_type for e in published] == ["search.query.performed.v1", "search.result.clicked.v1"]
        assert published[0].event_id == event_id

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self, sink, normalize):
        recorder = AnalyticsRecorder(sink)
        await recorder.start()
        for _ in range(5):
            recorder.record(normalize("logo"), 1, 1)
        await recorder.stop()
        assert len(sink) == 5
        assert not recorder.running


class TestReports:
    def test_summary(self):
        events = [
            event("e1", "logo", 3, 10, click=ClickInfo("a1", 0, EntityKind.ASSETS)),
            event("e2", "logo", 0, 30),
            event("e3", "video", 0, 20),
            event("e4", "brand", 5, 40),
        ]
        summary = summarize(events)
        assert summary["totalSearches"] == 4
        assert summary["averageExecutionTimeMs"] == pytest.approx(25.0)
        assert summary["averageResultsCount"] == pytest.approx(2.0)
        assert summary["zeroResultsRate"] == pytest.approx(0.5)
        assert summary["clickThroughRate"] == pytest.approx(0.25)
        assert summary["topQueries"][0] == {"query": "logo", "count": 2}
        assert summary["topEntities"] == [{"entity": "assets", "searchCount": 4}]
        assert summary["zeroResultQueries"] == [{"query": "logo", "count": 1}, {"query": "video", "count": 1}]

    def test_empty_summary(self):
        assert summarize([])["totalSearches"] == 0
        assert performance_metrics([])["p95ExecutionTimeMs"] == 0

    def test_performance(self):
        events = [event(f"e{i}", f"q{i}", duration=i) for i in range(1, 101)]
        metrics = performance_metrics(events)
        assert metrics["p50ExecutionTimeMs"] == 51
        assert metrics["p99ExecutionTimeMs"] == 100
        assert metrics["slowestQueries"][0] == {"query": "q100", "executionTimeMs": 100}
        assert len(metrics["slowestQueries"]) == 10

    def test_trending(self):
        recent = [event(f"r{i}", "logo") for i in range(6)] + [event(f"v{i}", "video") for i in range(3)]
        previous = [event(f"p{i}", "logo") for i in range(3)] + [event("pb", "brand")]
        trending = trending_searches(recent, previous)
        assert trending == [
            {"query": "logo", "count": 6, "growth": 100.0},
            {"query": "video", "count": 3, "growth": 100.0},
        ]

    def test_recent_searches(self):
        events = [
            event("e1", "logo", age=timedelta(hours=3), user_id="u1"),
            event("e2", "video", age=timedelta(hours=2), user_id="u1"),
            event("e3", "logo", age=timedelta(hours=1), user_id="u1"),
            event("e4", "brand", user_id="u2"),
        ]
        assert [s["query"] for s in recent_searches(events, "u1")] == ["logo", "video"]

    @pytest.mark.asyncio
    async def test_windowed_reports(self):
        sink = InMemoryAnalyticsSink()
        for e in [
            event("now", "logo"),
            event("hour", "logo", age=timedelta(hours=1)),
            event("old", "logo", age=timedelta(days=40)),
        ]:
            await sink.append(e)
        reports = AnalyticsReports(sink, clock=lambda: REFERENCE_TIME)

        assert (await reports.summary())["totalSearches"] == 2
        all_time = await reports.summary(start=REFERENCE_TIME - timedelta(days=90))
        assert all_time["totalSearches"] == 3
        assert (await reports.performance())["p50ExecutionTimeMs"] == 10


@pytest.mark.asyncio
async def test_sink_window_is_end_exclusive():
    sink = InMemoryAnalyticsSink()
    await sink.append(event("a", age=timedelta(hours=2)))
    await sink.append(event("b"))
    events = await sink.events_between(REFERENCE_TIME - timedelta(days=1), REFERENCE_TIME)
    assert [e.event_id for e in events] == ["a"]
