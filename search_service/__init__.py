"""Unified search service package.

Layout:
- ``api``: HTTP endpoints for search, click feedback, analytics and tuning.
- ``engine``: ``SearchManager`` fan-out, scoring and aggregation orchestration.
- ``intelligence``: query validation and normalization.
- ``retrievers``: per-entity-kind adapters that fetch scoring candidates.
- ``ranking``: relevance tuning, scoring and result aggregation.
- ``analytics``: fire-and-forget search analytics and admin reports.
- ``runtime``: service-local metrics and runtime helpers.
"""
