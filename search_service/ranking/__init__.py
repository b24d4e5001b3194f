"""Relevance ranking components.

Contents
- ``config``: immutable ``SearchConfig`` tuning and the ``ConfigHolder`` swap point
- ``scoring``: the pure relevance scorer (textual, recency, popularity, quality)
- ``highlights``: ``<mark>`` highlighting of query matches
- ``aggregator``: merge, sort, paginate and facet scored results
"""
