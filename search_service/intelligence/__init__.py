"""Query understanding for unified search.

The ``QueryNormalizer`` turns raw request input into a validated, immutable
``SearchQuery`` before any adapter is called.
"""
