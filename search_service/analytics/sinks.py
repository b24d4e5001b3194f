"""Analytics sinks: where search analytics events are persisted.

A sink accepts append-only event writes and late click attachments keyed by
event id. Retention and cleanup are the storage owner's concern.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

import redis.asyncio as redis
import structlog

from ..errors import AnalyticsWriteError, ConfigurationError, UnknownEventError
from ..models import AnalyticsEvent, ClickInfo
from ..ranking.scoring import as_utc

logger = structlog.get_logger("analytics.sinks")


class AnalyticsSink(ABC):
    """Abstract analytics storage."""

    @abstractmethod
    async def append(self, event: AnalyticsEvent) -> None:
        """Persist a new event. Raises ``AnalyticsWriteError`` on failure."""
        pass

    @abstractmethod
    async def attach_click(self, event_id: str, click: ClickInfo) -> AnalyticsEvent:
        """Attach (or overwrite) click data on a stored event.

        Raises ``UnknownEventError`` when no such event was stored.
        """
        pass

    @abstractmethod
    async def get(self, event_id: str) -> Optional[AnalyticsEvent]:
        pass

    @abstractmethod
    async def events_between(self, start: datetime, end: datetime) -> List[AnalyticsEvent]:
        """Events with ``start <= created_at < end``, oldest first."""
        pass

    async def close(self) -> None:
        return None


class InMemoryAnalyticsSink(AnalyticsSink):
    """Process-local sink; the default backend and the test double."""

    def __init__(self):
        self._events: Dict[str, AnalyticsEvent] = {}

    def __len__(self) -> int:
        return len(self._events)

    async def append(self, event: AnalyticsEvent) -> None:
        self._events[event.event_id] = event

    async def attach_click(self, event_id: str, click: ClickInfo) -> AnalyticsEvent:
        event = self._events.get(event_id)
        if event is None:
            raise UnknownEventError(event_id)
        updated = event.with_click(click)
        self._events[event_id] = updated
        return updated

    async def get(self, event_id: str) -> Optional[AnalyticsEvent]:
        return self._events.get(event_id)

    async def events_between(self, start: datetime, end: datetime) -> List[AnalyticsEvent]:
        lower, upper = as_utc(start), as_utc(end)
        selected = [e for e in self._events.values() if lower <= as_utc(e.created_at) < upper]
        return sorted(selected, key=lambda e: as_utc(e.created_at))


class RedisAnalyticsSink(AnalyticsSink):
    """Redis-backed sink.

    Each event is a JSON string under ``{prefix}:event:{id}``; a sorted set
    ``{prefix}:events`` indexes ids by creation timestamp for window reads.
    """

    def __init__(self, redis_url: str, key_prefix: str = "search:analytics"):
        self.redis_client = redis.from_url(redis_url)
        self.key_prefix = key_prefix
        self.index_key = f"{key_prefix}:events"

    def _event_key(self, event_id: str) -> str:
        return f"{self.key_prefix}:event:{event_id}"

    async def append(self, event: AnalyticsEvent) -> None:
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.set(self._event_key(event.event_id), json.dumps(event.to_dict()))
                pipe.zadd(self.index_key, {event.event_id: as_utc(event.created_at).timestamp()})
                await pipe.execute()
        except redis.RedisError as e:
            raise AnalyticsWriteError(f"failed to store analytics event: {e}") from e

    async def attach_click(self, event_id: str, click: ClickInfo) -> AnalyticsEvent:
        try:
            raw = await self.redis_client.get(self._event_key(event_id))
            if raw is None:
                raise UnknownEventError(event_id)
            updated = AnalyticsEvent.from_dict(json.loads(raw)).with_click(click)
            await self.redis_client.set(self._event_key(event_id), json.dumps(updated.to_dict()))
        except redis.RedisError as e:
            raise AnalyticsWriteError(f"failed to attach click: {e}") from e
        return updated

    async def get(self, event_id: str) -> Optional[AnalyticsEvent]:
        raw = await self.redis_client.get(self._event_key(event_id))
        return AnalyticsEvent.from_dict(json.loads(raw)) if raw is not None else None

    async def events_between(self, start: datetime, end: datetime) -> List[AnalyticsEvent]:
        ids = await self.redis_client.zrangebyscore(
            self.index_key,
            as_utc(start).timestamp(),
            f"({as_utc(end).timestamp()}",
        )
        if not ids:
            return []
        raws = await self.redis_client.mget([self._event_key(i.decode() if isinstance(i, bytes) else i) for i in ids])
        return [AnalyticsEvent.from_dict(json.loads(raw)) for raw in raws if raw is not None]

    async def close(self) -> None:
        await self.redis_client.aclose()
        logger.info("Analytics sink closed")


def create_analytics_sink(backend: str, redis_url: str, key_prefix: str = "search:analytics") -> AnalyticsSink:
    """Create the analytics sink for ``backend`` (``memory`` or ``redis``)."""
    backend = backend.lower()
    if backend == "redis":
        logger.info("Using Redis analytics sink", key_prefix=key_prefix)
        return RedisAnalyticsSink(redis_url, key_prefix=key_prefix)
    if backend == "memory":
        logger.info("Using in-memory analytics sink")
        return InMemoryAnalyticsSink()
    raise ConfigurationError(f"unknown analytics backend: {backend}")
