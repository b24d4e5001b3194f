"""Query validation and normalization for unified search."""

import re
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

import pydantic
import structlog

from ..errors import ValidationError
from ..models import (
    ALL_ENTITY_KINDS,
    EntityKind,
    SearchFilters,
    SearchQuery,
    SortDirective,
    SortField,
    SortOrder,
)
from ..ranking.config import SearchConfig

logger = structlog.get_logger("query_normalizer")

# Word characters, whitespace and a few punctuation marks that occur in
# titles; anything else is removed before the text reaches an adapter.
_DISALLOWED_CHARS = re.compile(r"[^\w\s\-'.,&:/#@+]")
_WHITESPACE = re.compile(r"\s+")
_TOKEN = re.compile(r"\w+")

_ASCENDING_BY_DEFAULT = (SortField.TITLE, SortField.NAME)


class QueryNormalizer:
    """Builds ``SearchQuery`` values from raw request input.

    Bound to one ``SearchConfig`` so a request validates against the same
    tuning version it is later scored with.
    """

    def __init__(self, config: SearchConfig):
        self.config = config

    def normalize(
        self,
        raw_text: Optional[str],
        entities: Optional[Iterable[Union[str, EntityKind]]] = None,
        filters: Union[SearchFilters, Mapping[str, Any], None] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
    ) -> SearchQuery:
        """Validate and normalize one search request.

        Parameters
        - raw_text: Caller query text
        - entities: Entity kinds to search; all kinds when omitted or empty
        - filters: Structured filters (mapping or ``SearchFilters``)
        - page: 1-based page number
        - page_size: Requested page size, clamped to ``[1, max_page_size]``
        - sort_by: ``relevance`` or a field name
        - sort_order: ``asc`` or ``desc``

        Returns
        - An immutable ``SearchQuery``

        Raises
        - ``ValidationError`` for malformed or out-of-range input
        """
        text = self.sanitize(raw_text)
        tokens = self.tokenize(text)

        query = SearchQuery(
            text=text,
            normalized_text=text.lower(),
            tokens=tokens,
            entities=self._parse_entities(entities),
            filters=self._parse_filters(filters),
            page=self._parse_page(page),
            page_size=self._clamp_page_size(page_size),
            sort=self._parse_sort(sort_by, sort_order),
        )
        logger.debug(
            "Query normalized",
            query=query.normalized_text,
            tokens=list(query.tokens),
            entities=[kind.value for kind in query.entities],
        )
        return query

    def sanitize(self, raw_text: Optional[str]) -> str:
        """Trim, check length bounds and strip disallowed characters."""
        if raw_text is None:
            raise ValidationError("query is required", field="query")
        text = raw_text.strip()
        self._check_length(text)

        cleaned = _WHITESPACE.sub(" ", _DISALLOWED_CHARS.sub(" ", text)).strip()
        # Stripping can shorten the text below the minimum again
        self._check_length(cleaned)
        return cleaned

    def tokenize(self, text: str) -> Tuple[str, ...]:
        """Lowercase word tokens, de-duplicated in order, stop words removed."""
        seen: List[str] = []
        for token in _TOKEN.findall(text.lower()):
            if token in self.config.stop_words or token in seen:
                continue
            seen.append(token)
        return tuple(seen)

    def _check_length(self, text: str) -> None:
        if len(text) < self.config.min_query_length:
            raise ValidationError(
                f"query must be at least {self.config.min_query_length} characters",
                field="query",
            )
        if len(text) > self.config.max_query_length:
            raise ValidationError(
                f"query must be at most {self.config.max_query_length} characters",
                field="query",
            )

    def _parse_entities(
        self, entities: Optional[Iterable[Union[str, EntityKind]]]
    ) -> Tuple[EntityKind, ...]:
        if not entities:
            return ALL_ENTITY_KINDS

        requested: List[EntityKind] = []
        for raw in entities:
            try:
                kind = EntityKind(raw)
            except ValueError:
                raise ValidationError(f"unknown entity kind: {raw}", field="entities")
            if kind not in requested:
                requested.append(kind)
        return tuple(requested)

    def _parse_filters(
        self, filters: Union[SearchFilters, Mapping[str, Any], None]
    ) -> SearchFilters:
        if filters is None:
            return SearchFilters()
        if isinstance(filters, SearchFilters):
            return filters
        try:
            return SearchFilters.model_validate(dict(filters))
        except pydantic.ValidationError as e:
            error = e.errors()[0]
            location = ".".join(str(part) for part in error.get("loc", ()))
            field = f"filters.{location}" if location else "filters"
            raise ValidationError(f"invalid filter: {error['msg']}", field=field) from e

    def _parse_page(self, page: Any) -> int:
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError("page must be an integer >= 1", field="page")
        return page

    def _clamp_page_size(self, page_size: Optional[int]) -> int:
        if page_size is None:
            return self.config.default_page_size
        return max(1, min(int(page_size), self.config.max_page_size))

    def _parse_sort(self, sort_by: Optional[str], sort_order: Optional[str]) -> SortDirective:
        try:
            sort_field = SortField(sort_by) if sort_by else SortField.RELEVANCE
        except ValueError:
            raise ValidationError(f"unsupported sort field: {sort_by}", field="sortBy")

        if sort_field is SortField.RELEVANCE:
            return SortDirective()

        if sort_order is None:
            order = SortOrder.ASC if sort_field in _ASCENDING_BY_DEFAULT else SortOrder.DESC
        else:
            try:
                order = SortOrder(sort_order.lower())
            except ValueError:
                raise ValidationError(f"unsupported sort order: {sort_order}", field="sortOrder")
        return SortDirective(field=sort_field, order=order)
