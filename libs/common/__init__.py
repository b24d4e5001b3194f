"""Common utilities shared across services.

Includes:
- ``config``: Pydantic-based service configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers and decorators.
- ``events``: Redis pub/sub event models, publisher, and subscriber.
- ``tracing``: OpenTelemetry setup and span helpers.

Import pattern:
- from libs.common.config import SearchServiceConfig
- from libs.common.logging import configure_logging
"""
