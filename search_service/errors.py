"""Exceptions raised by the search service.

Callers see ``ValidationError`` and ``AllAdaptersFailedError``; adapter and
analytics failures are isolated inside the service and only surface as a
partial-results flag or a log line.
"""

from typing import Iterable, Optional, Tuple

from .models import EntityKind


class SearchError(Exception):
    """Base exception for search operations."""
    pass


class ValidationError(SearchError):
    """Malformed or out-of-range query input. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ConfigurationError(SearchError):
    """Relevance tuning that cannot be used (negative weights, bad decay)."""
    pass


class AdapterError(SearchError):
    """An entity adapter could not produce candidates."""

    def __init__(self, entity_kind: EntityKind, message: str):
        super().__init__(f"{entity_kind.value}: {message}")
        self.entity_kind = entity_kind


class AdapterTimeout(AdapterError):
    """An entity adapter did not answer within its budget."""

    def __init__(self, entity_kind: EntityKind, timeout_ms: int):
        super().__init__(entity_kind, f"timed out after {timeout_ms} ms")
        self.timeout_ms = timeout_ms


class AllAdaptersFailedError(SearchError):
    """Every requested entity kind failed; there is nothing to rank."""

    def __init__(self, failed: Iterable[EntityKind]):
        self.failed: Tuple[EntityKind, ...] = tuple(failed)
        kinds = ", ".join(kind.value for kind in self.failed)
        super().__init__(f"no entity source available ({kinds})")


class AnalyticsWriteError(SearchError):
    """An analytics sink rejected a write."""
    pass


class UnknownEventError(SearchError):
    """``attach_click`` referenced an analytics event that does not exist."""

    def __init__(self, event_id: str):
        super().__init__(f"unknown analytics event: {event_id}")
        self.event_id = event_id
