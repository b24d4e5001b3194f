"""Relevance tuning propagation between service instances.

An instance that swaps its tuning through the admin API announces the new
payload as a ``SEARCH_CONFIG_RELOADED`` event; peers apply it to their own
``ConfigHolder``. Each instance ignores its own announcements.
"""

import asyncio
import time
import uuid
from typing import Any, Dict, Optional

import redis
import structlog

from libs.common.events import EventPublisher, EventSubscriber, EventType, SearchConfigReloadedEvent
from libs.common.metrics import MetricsCollector
from ..errors import ConfigurationError
from .config import ConfigHolder, SearchConfig

logger = structlog.get_logger("search_service.config_sync")


class ConfigSync:
    """Applies and broadcasts tuning changes for one ``ConfigHolder``."""

    def __init__(
        self,
        holder: ConfigHolder,
        publisher: Optional[EventPublisher] = None,
        metrics: Optional[MetricsCollector] = None,
        origin: Optional[str] = None,
    ):
        self.holder = holder
        self.publisher = publisher
        self.metrics = metrics
        self.origin = origin or str(uuid.uuid4())
        self._report_version(holder.current)

    def attach(self, subscriber: EventSubscriber) -> None:
        """Register for reload events from peers."""
        subscriber.subscribe(EventType.SEARCH_CONFIG_RELOADED, self.handle_event)

    async def apply(self, tuning: Dict[str, Any]) -> SearchConfig:
        """Install a validated tuning payload locally, then announce it.

        Raises ``ConfigurationError`` and leaves the current config in place
        when the payload is invalid.
        """
        installed = self.holder.apply_tuning(tuning)
        self._report_version(installed)
        if self.publisher is not None:
            event = SearchConfigReloadedEvent(
                timestamp=int(time.time() * 1000),
                origin=self.origin,
                version=installed.version,
                tuning=installed.to_tuning(),
            )
            try:
                await asyncio.to_thread(self.publisher.publish, event)
            except redis.RedisError as e:
                logger.warning("Failed to announce config reload", version=installed.version, error=str(e))
        return installed

    def handle_event(self, payload: Dict[str, Any]) -> Optional[SearchConfig]:
        """Apply a peer's reload event; returns the installed config, if any."""
        if payload.get("origin") == self.origin:
            return None
        try:
            installed = self.holder.apply_tuning(payload.get("tuning") or {})
        except ConfigurationError as e:
            logger.error("Ignoring invalid tuning from peer", origin=payload.get("origin"), error=str(e))
            return None
        self._report_version(installed)
        logger.info("Applied tuning from peer", origin=payload.get("origin"), version=installed.version)
        return installed

    def _report_version(self, config: SearchConfig) -> None:
        if self.metrics is not None:
            self.metrics.set_config_version(config.version)
