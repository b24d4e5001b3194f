"""Tests for the unified search service.

Adapters run against in-memory fixtures; PostgreSQL statements are checked
as generated SQL without a database.
"""
