"""API subpackage for the search service.

Routers expose endpoints for search, click feedback, analytics reports and
relevance tuning. Transport layer remains thin and delegates to
``SearchManager``.
"""
