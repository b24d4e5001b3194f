"""Search orchestration.

Includes the ``SearchManager`` which normalizes a query, fans it out to the
entity adapters, scores and aggregates candidates, and hands the outcome to
analytics.
"""
