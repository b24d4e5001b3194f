"""Fire-and-forget search analytics.

``record`` is synchronous and never blocks: it builds the event, parks it in
``_pending`` and enqueues its id on a bounded ``asyncio.Queue``. A background
worker writes queued events to the sink. When the queue is full the event is
dropped (counted and logged) and ``record`` returns ``None``.

A click may arrive before its event has been written. Such clicks update the
pending event in place. The event stays pending until the worker has
forwarded its latest click to the sink, so the last click always wins.

Sink and publisher failures are logged and counted, never raised to the
search path.
"""

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Union

import redis
import structlog

from libs.common.events import BaseEvent, EventPublisher, SearchPerformedEvent, SearchResultClickedEvent
from libs.common.metrics import MetricsCollector
from ..errors import ValidationError
from ..models import AnalyticsEvent, ClickInfo, EntityKind, PermissionContext, SearchQuery
from .sinks import AnalyticsSink

logger = structlog.get_logger("analytics.recorder")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalyticsRecorder:
    """Buffers analytics events and writes them in the background."""

    def __init__(
        self,
        sink: AnalyticsSink,
        queue_size: int = 1000,
        metrics: Optional[MetricsCollector] = None,
        publisher: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Configure the recorder.

        Parameters
        - sink: Where events are persisted
        - queue_size: Events buffered before new ones are dropped
        - metrics: Optional collector for pipeline counters
        - publisher: Optional Redis publisher for search events
        - clock: Source of event timestamps
        """
        self.sink = sink
        self.metrics = metrics
        self.publisher = publisher
        self.clock = clock
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._pending: Dict[str, AnalyticsEvent] = {}
        self._worker: Optional[asyncio.Task] = None

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        """Start the background writer."""
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="analytics-writer")
        logger.info("Analytics recorder started", queue_size=self._queue.maxsize)

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        """Drain within ``timeout`` seconds, then stop the writer."""
        if self.running:
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Analytics drain timed out", pending=self.queue_depth)
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        logger.info("Analytics recorder stopped")

    def record(
        self,
        query: SearchQuery,
        result_count: int,
        duration_ms: int,
        context: Optional[PermissionContext] = None,
        degraded: bool = False,
    ) -> Optional[str]:
        """Enqueue an analytics event for a search.

        Returns
        - The new event id, or ``None`` when the buffer was full
        """
        context = context or PermissionContext.anonymous()
        event = AnalyticsEvent(
            event_id=str(uuid.uuid4()),
            query=query.normalized_text,
            entities=query.entities,
            filters=query.filters.applied(),
            result_count=result_count,
            execution_time_ms=duration_ms,
            created_at=self.clock(),
            user_id=context.user_id,
            session_id=context.session_id,
            degraded=degraded,
        )

        try:
            self._queue.put_nowait(event.event_id)
        except asyncio.QueueFull:
            self._count("dropped")
            logger.warning("Analytics buffer full, dropping event", query=event.query)
            return None

        self._pending[event.event_id] = event
        self._count("enqueued")
        self._report_depth()
        return event.event_id

    def record_degraded(
        self,
        query: SearchQuery,
        duration_ms: int,
        context: Optional[PermissionContext] = None,
    ) -> Optional[str]:
        """Record a search that was cancelled before it produced results."""
        return self.record(query, result_count=0, duration_ms=duration_ms, context=context, degraded=True)

    async def attach_click(
        self,
        event_id: str,
        result_id: str,
        position: int,
        entity_kind: Union[str, EntityKind],
    ) -> None:
        """Attach click-through data to a recorded event; last click wins.

        Raises
        - ``ValidationError`` for a negative position or unknown entity kind
        - ``UnknownEventError`` when the event does not exist
        """
        if position < 0:
            raise ValidationError("result position must be >= 0", field="resultPosition")
        try:
            kind = EntityKind(entity_kind)
        except ValueError:
            raise ValidationError(f"unknown entity kind: {entity_kind}", field="resultEntityKind")

        click = ClickInfo(result_id=result_id, position=position, entity_kind=kind)
        pending = self._pending.get(event_id)
        if pending is not None:
            self._pending[event_id] = pending.with_click(click)
        else:
            await self.sink.attach_click(event_id, click)

        self._count("clicked")
        logger.info("Search click attached", event_id=event_id, result_id=result_id, position=position)
        await self._publish(SearchResultClickedEvent(
            timestamp=int(time.time() * 1000),
            event_id=event_id,
            result_id=result_id,
            position=position,
            entity_kind=kind.value,
        ))

    async def _run(self) -> None:
        while True:
            event_id = await self._queue.get()
            try:
                await self._write(event_id)
            finally:
                self._queue.task_done()
                self._report_depth()

    async def _write(self, event_id: str) -> None:
        event = self._pending.get(event_id)
        if event is None:
            return

        try:
            await self.sink.append(event)
        except Exception as e:
            self._pending.pop(event_id, None)
            self._count("failed")
            logger.error("Failed to write analytics event", event_id=event_id, error=str(e))
            return

        self._count("written")
        await self._forward_early_clicks(event_id, event.click)

        await self._publish(SearchPerformedEvent(
            timestamp=int(time.time() * 1000),
            event_id=event.event_id,
            query=event.query,
            entities=[kind.value for kind in event.entities],
            result_count=event.result_count,
            execution_time_ms=event.execution_time_ms,
            user_id=event.user_id,
            degraded=event.degraded,
        ))

    async def _forward_early_clicks(self, event_id: str, written: Optional[ClickInfo]) -> None:
        # The event stays pending until the sink holds its latest click
        while True:
            latest = self._pending.get(event_id)
            if latest is None or latest.click is None or latest.click == written:
                self._pending.pop(event_id, None)
                return
            try:
                await self.sink.attach_click(event_id, latest.click)
            except Exception as e:
                self._pending.pop(event_id, None)
                self._count("failed")
                logger.error("Failed to write early click", event_id=event_id, error=str(e))
                return
            written = latest.click

    async def _publish(self, event: BaseEvent) -> None:
        if self.publisher is None:
            return
        try:
            await asyncio.to_thread(self.publisher.publish, event)
        except redis.RedisError as e:
            logger.warning("Failed to publish search event", event_type=event.event_type, error=str(e))

    def _count(self, stage: str) -> None:
        if self.metrics is not None:
            self.metrics.record_analytics(stage)

    def _report_depth(self) -> None:
        if self.metrics is not None:
            self.metrics.set_analytics_queue_depth(self._queue.qsize())
