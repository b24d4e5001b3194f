"""Metrics collection for platform services.

Provides a thin convenience wrapper around ``prometheus_client`` so services
can consistently record HTTP, search, adapter and analytics metrics.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- A single registry is kept per collector (can be injected if needed)
- A decorator is provided for quick timing instrumentation
"""

import inspect
import time
from functools import wraps
from typing import Any, Callable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for platform services.

    Parameters
    - service_name: Logical name used for scoping/labels if desired
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)

    Exposes typed helpers for common events to keep label sets consistent.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        # Common metrics
        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        # Search metrics
        self.search_requests = Counter(
            'search_requests_total',
            'Total search requests',
            ['sort_mode', 'outcome'],
            registry=self.registry
        )

        self.search_duration = Histogram(
            'search_duration_seconds',
            'End-to-end search duration',
            ['sort_mode'],
            registry=self.registry
        )

        self.partial_responses = Counter(
            'search_partial_responses_total',
            'Searches answered with at least one entity kind unavailable',
            registry=self.registry
        )

        self.adapter_calls = Counter(
            'search_adapter_calls_total',
            'Entity adapter calls partitioned by outcome',
            ['entity_kind', 'outcome'],
            registry=self.registry
        )

        self.adapter_duration = Histogram(
            'search_adapter_duration_seconds',
            'Entity adapter call duration',
            ['entity_kind'],
            registry=self.registry
        )

        # Analytics pipeline metrics
        self.analytics_events = Counter(
            'search_analytics_events_total',
            'Analytics events partitioned by pipeline stage',
            ['stage'],
            registry=self.registry
        )

        self.analytics_queue_depth = Gauge(
            'search_analytics_queue_depth',
            'Analytics events waiting to be written',
            registry=self.registry
        )

        self.config_version = Gauge(
            'search_config_version',
            'Version of the relevance tuning currently in use',
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_search(
        self,
        sort_mode: str,
        duration: float,
        outcome: str = "ok",
        partial: bool = False
    ) -> None:
        """Record search metrics."""
        self.search_requests.labels(sort_mode=sort_mode, outcome=outcome).inc()
        self.search_duration.labels(sort_mode=sort_mode).observe(duration)
        if partial:
            self.partial_responses.inc()

    def record_adapter_call(
        self,
        entity_kind: str,
        outcome: str,
        duration: float
    ) -> None:
        """Record one entity adapter call (``ok``, ``timeout`` or ``error``)."""
        self.adapter_calls.labels(entity_kind=entity_kind, outcome=outcome).inc()
        self.adapter_duration.labels(entity_kind=entity_kind).observe(duration)

    def record_analytics(self, stage: str) -> None:
        """Record an analytics pipeline transition.

        Stages: ``enqueued``, ``dropped``, ``written``, ``failed``, ``clicked``.
        """
        self.analytics_events.labels(stage=stage).inc()

    def set_analytics_queue_depth(self, depth: int) -> None:
        """Set the number of analytics events waiting to be written."""
        self.analytics_queue_depth.set(depth)

    def set_config_version(self, version: int) -> None:
        """Set the active relevance tuning version."""
        self.config_version.set(version)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Get or create metrics collector for a service.

    Returns a process-wide singleton to avoid duplicate collectors/labels.
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
    return _metrics_collector


def measure_time(operation: str, **labels: Any) -> Callable:
    """Decorator to measure function execution time.

    Works for plain and ``async`` functions.

    Example
    >>> @measure_time("config.reload", source="file")
    ... def reload():
    ...     ...
    """
    def decorator(func: Callable) -> Callable:
        def _log(start_time: float, error: Optional[Exception] = None) -> None:
            duration_ms = (time.time() - start_time) * 1000
            if error is None:
                logger.info(
                    f"Operation {operation} completed",
                    operation=operation,
                    duration_ms=duration_ms,
                    **labels
                )
            else:
                logger.error(
                    f"Operation {operation} failed",
                    operation=operation,
                    duration_ms=duration_ms,
                    error=str(error),
                    **labels
                )

        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start_time = time.time()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _log(start_time, e)
                    raise
                _log(start_time)
                return result
            return async_wrapper

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.time()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _log(start_time, e)
                raise
            _log(start_time)
            return result
        return wrapper
    return decorator
