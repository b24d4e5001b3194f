"""Base entity adapter interface.

Defines the contract the search engine depends on, independent of where
records live (in-process fixtures, PostgreSQL, ...). One adapter serves one
``EntityKind``.

All searches are asynchronous; the engine runs one per requested kind
concurrently and bounds each with its own timeout.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Tuple

from ..models import Candidate, EntityKind, PermissionContext, SearchQuery


@dataclass(frozen=True)
class AdapterResult:
    """Candidates for one entity kind plus the total matching count.

    ``total_count`` counts every visible match and may exceed
    ``len(candidates)`` when the cap truncated the list.
    """
    candidates: Tuple[Candidate, ...] = field(default_factory=tuple)
    total_count: int = 0


class EntityAdapter(ABC):
    """Abstract base class for entity adapters.

    Implementations must apply the caller's visibility rules and the query's
    structural filters before returning; the engine never re-derives
    permissions. Failures should surface as exceptions, which the engine
    isolates to this adapter's entity kind.
    """

    kind: EntityKind

    @abstractmethod
    async def search(self, query: SearchQuery, context: PermissionContext, cap: int) -> AdapterResult:
        """Fetch up to ``cap`` visible, filtered candidates matching ``query``.

        Returns
        - ``AdapterResult`` with at most ``cap`` candidates
        """
        pass

    @abstractmethod
    def project_to_candidate(self, record: Mapping[str, Any]) -> Candidate:
        """Project one backend record into the scoring shape."""
        pass

    async def close(self) -> None:
        """Release backend resources. Default: nothing to release."""
        return None
