"""Shared libraries for the search platform.

Subpackages:
- ``libs.common``: configuration, logging, authentication, metrics, events and tracing.

Notes:
- Avoid service-specific logic; keep modules cohesive and broadly useful.
"""
