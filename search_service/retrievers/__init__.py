"""Entity adapters for unified search.

One adapter per entity kind fetches a permission-filtered, structurally
filtered candidate set and projects each record into a ``Candidate``.
Splitting retrieval from ranking keeps the scorer backend-agnostic.
"""
