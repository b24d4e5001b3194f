"""Event system for inter-service communication.

This module defines a compact eventing contract across services using Redis
pub/sub. Producers publish JSON payloads on namespaced channels derived from
``EventType``; consumers subscribe and register Python callbacks.

Key concepts
- "EventType" stable identifiers are versioned (``.v1`` suffix)
- ``EventPublisher`` composes channel names as ``{prefix}:{event_type}``
- ``EventSubscriber`` manages a map of event handlers and message dispatch

The goal is to keep event shapes explicit and easy to evolve.
"""

import asyncio
import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import redis
import redis.asyncio as redis_async
import structlog

logger = structlog.get_logger("events")


class EventType(Enum):
    """Event types for the search platform."""
    SEARCH_PERFORMED = "search.query.performed.v1"
    SEARCH_RESULT_CLICKED = "search.result.clicked.v1"
    SEARCH_CONFIG_RELOADED = "search.config.reloaded.v1"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class BaseEvent:
    """Base event class.

    Child events should set their ``event_type`` in ``__post_init__`` and can
    extend the payload with any additional fields relevant to the domain.
    """
    timestamp: int
    event_type: str = field(init=False, default="")

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return asdict(self)

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


@dataclass
class SearchPerformedEvent(BaseEvent):
    """Event emitted once a search has been recorded by analytics."""
    event_id: str
    query: str
    entities: List[str]
    result_count: int
    execution_time_ms: int
    user_id: Optional[str] = None
    degraded: bool = False

    def __post_init__(self):
        self.event_type = EventType.SEARCH_PERFORMED.value
        if not self.timestamp:
            self.timestamp = _now_ms()


@dataclass
class SearchResultClickedEvent(BaseEvent):
    """Event emitted when click-through data is attached to a search."""
    event_id: str
    result_id: str
    position: int
    entity_kind: str

    def __post_init__(self):
        self.event_type = EventType.SEARCH_RESULT_CLICKED.value
        if not self.timestamp:
            self.timestamp = _now_ms()


@dataclass
class SearchConfigReloadedEvent(BaseEvent):
    """Event emitted when an instance swaps its relevance tuning.

    ``origin`` identifies the emitting instance so it can ignore its own
    broadcast; ``tuning`` is the full tuning payload.
    """
    origin: str
    version: int
    tuning: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.event_type = EventType.SEARCH_CONFIG_RELOADED.value
        if not self.timestamp:
            self.timestamp = _now_ms()


class EventPublisher:
    """Publishes events to Redis.

    Notes
    - Publishing retries with backoff; the final failure is logged and
      re-raised so callers decide whether it matters.
    - Messages are serialized as JSON to keep consumers language-agnostic.
    - The client is synchronous; async callers should hop to a thread.
    """

    def __init__(self, redis_url: str, channel_prefix: str = "search_events"):
        self.redis_client = redis.from_url(redis_url)
        self.channel_prefix = channel_prefix

    def channel_for(self, event_type: str) -> str:
        """Channel name carrying events of ``event_type``."""
        return f"{self.channel_prefix}:{event_type}"

    def publish(self, event: BaseEvent, max_retries: int = 3, base_delay: float = 0.5) -> None:
        """Publish an event with retry logic.

        The channel is derived from the event's type to allow subscribers to
        filter efficiently without payload inspection.
        """
        channel = self.channel_for(event.event_type)
        message = event.to_json()

        for attempt in range(max_retries):
            try:
                self.redis_client.publish(channel, message)
                logger.debug(
                    "Event published",
                    event_type=event.event_type,
                    channel=channel
                )
                return
            except redis.RedisError as e:
                if attempt == max_retries - 1:
                    logger.error(
                        "Failed to publish event after all retries",
                        event_type=event.event_type,
                        error=str(e)
                    )
                    raise

                delay = base_delay * (2 ** attempt)
                logger.warning(
                    "Event publish failed, retrying",
                    event_type=event.event_type,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay=delay,
                    error=str(e)
                )
                time.sleep(delay)

    def close(self) -> None:
        """Release the underlying connection pool."""
        self.redis_client.close()


class EventSubscriber:
    """Subscribes to events from Redis.

    Maintains a mapping of ``event_type -> List[callables]``. When a message
    arrives, ``_handle_message`` decodes JSON and invokes each registered
    handler with the raw dictionary payload.
    """

    def __init__(self, redis_url: str, channel_prefix: str = "search_events"):
        self.redis_client = redis_async.from_url(redis_url, decode_responses=False)
        self.channel_prefix = channel_prefix
        self.handlers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = {}

    def subscribe(self, event_type: EventType, handler: Callable[[Dict[str, Any]], None]) -> None:
        """Subscribe to an event type."""
        self.handlers.setdefault(event_type.value, []).append(handler)
        logger.info(
            "Subscribed to event",
            event_type=event_type.value,
            handler=getattr(handler, "__name__", repr(handler))
        )

    async def start_listening(self) -> None:
        """Listen for events until cancelled.

        This is a non-blocking async loop meant to run as a background task.
        Transient errors inside the loop are logged and the loop continues.
        """
        pubsub = self.redis_client.pubsub()

        try:
            channels = [f"{self.channel_prefix}:{event_type}" for event_type in self.handlers]
            if not channels:
                logger.info("No event handlers registered, listener idle")
                return
            await pubsub.subscribe(*channels)

            logger.info("Started listening for events", channels=channels)

            while True:
                try:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True,
                        timeout=1.0
                    )
                    if message and message.get("type") == "message":
                        self._handle_message(message)

                    # Yield control to the event loop
                    await asyncio.sleep(0.01)

                except asyncio.CancelledError:
                    raise
                except redis.RedisError as e:
                    logger.error("Error in event listener loop", error=str(e))
                    await asyncio.sleep(1.0)

        except asyncio.CancelledError:
            logger.info("Event listener cancelled")
            raise
        finally:
            try:
                await pubsub.aclose()
                logger.info("Event listener stopped")
            except redis.RedisError as e:
                logger.warning("Error closing pubsub", error=str(e))

    def _handle_message(self, message: Dict[str, Any]) -> None:
        """Handle incoming event message.

        Dispatch errors from individual handlers are logged and do not prevent
        other handlers from executing.
        """
        channel_raw = message.get('channel')
        data_raw = message.get('data')

        if isinstance(channel_raw, (bytes, bytearray)):
            channel = channel_raw.decode('utf-8')
        else:
            channel = str(channel_raw)

        try:
            if isinstance(data_raw, (bytes, bytearray)):
                payload = json.loads(data_raw.decode('utf-8'))
            else:
                payload = json.loads(data_raw)
        except (TypeError, ValueError) as e:
            logger.error("Error decoding event message", channel=channel, error=str(e))
            return

        # Extract event type from channel
        event_type = channel.split(':')[-1]

        handlers = self.handlers.get(event_type)
        if not handlers:
            logger.warning("No handlers for event type", event_type=event_type)
            return

        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error(
                    "Error handling event",
                    event_type=event_type,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e)
                )

    async def close(self) -> None:
        """Close the Redis client used by the subscriber."""
        try:
            await self.redis_client.aclose()
        except redis.RedisError as e:
            logger.warning("Error closing redis client", error=str(e))


def create_event_publisher(redis_url: str) -> EventPublisher:
    """Create an event publisher."""
    return EventPublisher(redis_url)


def create_event_subscriber(redis_url: str) -> EventSubscriber:
    """Create an event subscriber."""
    return EventSubscriber(redis_url)
