"""Tests for query normalization."""

from datetime import datetime, timezone

import pytest

from search_service.errors import ValidationError
from search_service.intelligence.query_normalizer import QueryNormalizer
from search_service.models import ALL_ENTITY_KINDS, EntityKind, SearchFilters, SortField, SortOrder
from search_service.ranking.config import SearchConfig


def test_trims_and_tokenizes(normalize):
    query = normalize("  The Logo and   Brand  ")
    assert query.text == "The Logo and Brand"
    assert query.normalized_text == "the logo and brand"
    assert query.tokens == ("logo", "brand")


def test_tokens_are_deduplicated(normalize):
    assert normalize("logo LOGO design").tokens == ("logo", "design")


def test_disallowed_characters_are_stripped(normalize):
    query = normalize("logo<script>alert</script>")
    assert "<" not in query.text and ">" not in query.text
    assert query.tokens[0] == "logo"


@pytest.mark.parametrize("raw", [None, "", " a ", "x" * 201])
def test_length_bounds(normalize, raw):
    with pytest.raises(ValidationError) as exc:
        normalize(raw)
    assert exc.value.field == "query"


def test_query_too_short_after_stripping(normalize):
    with pytest.raises(ValidationError):
        normalize("a<>")


def test_length_bounds_follow_config():
    normalizer = QueryNormalizer(SearchConfig(min_query_length=4))
    with pytest.raises(ValidationError):
        normalizer.normalize("abc")
    assert normalizer.normalize("abcd").text == "abcd"


def test_entities_default_to_all_kinds(normalize):
    assert normalize("logo").entities == ALL_ENTITY_KINDS
    assert normalize("logo", entities=[]).entities == ALL_ENTITY_KINDS


def test_entities_keep_request_order(normalize):
    query = normalize("logo", entities=["projects", "assets", "projects"])
    assert query.entities == (EntityKind.PROJECTS, EntityKind.ASSETS)


def test_unknown_entity_kind(normalize):
    with pytest.raises(ValidationError) as exc:
        normalize("logo", entities=["assets", "brands"])
    assert exc.value.field == "entities"


def test_filters_are_parsed(normalize):
    query = normalize("logo", filters={"asset_type": ["IMAGE"], "date_from": "2024-01-01T00:00:00Z"})
    assert query.filters.asset_type == ("IMAGE",)
    assert isinstance(query.filters.date_from, datetime)
    assert query.filters.applied()["asset_type"] == ["IMAGE"]


def test_unknown_filter_is_rejected(normalize):
    with pytest.raises(ValidationError) as exc:
        normalize("logo", filters={"colour": "red"})
    assert exc.value.field == "filters.colour"


def test_inverted_date_range_is_rejected(normalize):
    with pytest.raises(ValidationError) as exc:
        normalize("logo", filters={"date_from": "2024-02-01T00:00:00", "date_to": "2024-01-01T00:00:00"})
    assert exc.value.field == "filters"


def test_mixed_timezone_dates_compare_as_utc(normalize):
    query = normalize("logo", filters={"date_from": "2024-01-01T00:00:00Z", "date_to": "2024-02-01T00:00:00"})
    assert query.filters.date_to == datetime(2024, 2, 1, tzinfo=timezone.utc)

    with pytest.raises(ValidationError) as exc:
        normalize("logo", filters={"date_from": "2024-02-01T05:00:00+05:00", "date_to": "2024-01-31T23:00:00"})
    assert exc.value.field == "filters"


def test_filters_instance_passes_through(normalize):
    filters = SearchFilters(country="US")
    assert normalize("logo", filters=filters).filters is filters


@pytest.mark.parametrize("page", [0, -1, True, "2"])
def test_invalid_page(normalize, page):
    with pytest.raises(ValidationError) as exc:
        normalize("logo", page=page)
    assert exc.value.field == "page"


def test_page_size_is_clamped(normalize):
    assert normalize("logo").page_size == 20
    assert normalize("logo", page_size=0).page_size == 1
    assert normalize("logo", page_size=500).page_size == 100


def test_default_sort_is_relevance(normalize):
    sort = normalize("logo").sort
    assert sort.is_relevance
    # Relevance ignores the requested order
    assert normalize("logo", sort_by="relevance", sort_order="asc").sort.order is SortOrder.DESC


def test_field_sort_defaults(normalize):
    assert normalize("logo", sort_by="created_at").sort.order is SortOrder.DESC
    assert normalize("logo", sort_by="title").sort.order is SortOrder.ASC
    assert normalize("logo", sort_by="name").sort.field is SortField.NAME
    assert normalize("logo", sort_by="updated_at", sort_order="ASC").sort.order is SortOrder.ASC


def test_invalid_sort(normalize):
    with pytest.raises(ValidationError) as exc:
        normalize("logo", sort_by="popularity")
    assert exc.value.field == "sortBy"
    with pytest.raises(ValidationError) as exc:
        normalize("logo", sort_by="title", sort_order="sideways")
    assert exc.value.field == "sortOrder"
