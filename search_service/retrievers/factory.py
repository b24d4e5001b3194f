"""Entity adapter factory.

Centralizes creation of the per-kind adapters so the application entrypoint
does not depend on backend details. New backends can be added without
changing call sites.
"""

from enum import Enum
from typing import Dict, Optional, Tuple

import structlog

from libs.common.config import SearchServiceConfig
from ..errors import ConfigurationError
from ..models import EntityKind
from .base import EntityAdapter
from .memory import create_memory_adapters, load_fixtures
from .postgres import PostgresConnectionManager, create_postgres_adapters

logger = structlog.get_logger("retrievers.factory")


class AdapterBackend(Enum):
    """Supported adapter backends."""
    MEMORY = "memory"
    POSTGRES = "postgres"


def create_adapters(
    config: SearchServiceConfig,
) -> Tuple[Dict[EntityKind, EntityAdapter], Optional[PostgresConnectionManager]]:
    """Create one adapter per entity kind for the configured backend.

    Parameters
    - config: Service settings (backend, DSN, fixtures path)

    Returns
    - ``(adapters, connections)``; ``connections`` is the shared pool manager
      for the PostgreSQL backend (to be closed on shutdown), else ``None``
    """
    try:
        backend = AdapterBackend(config.ml_search_adapter_backend.lower())
    except ValueError:
        raise ConfigurationError(f"unknown adapter backend: {config.ml_search_adapter_backend}")

    if backend is AdapterBackend.POSTGRES:
        connections = PostgresConnectionManager(
            dsn=config.ml_vector_db_dsn,
            pool_size=config.ml_search_db_pool_size,
        )
        logger.info("Using PostgreSQL entity adapters")
        return dict(create_postgres_adapters(connections)), connections

    fixtures = load_fixtures(config.ml_search_fixtures_path) if config.ml_search_fixtures_path else None
    logger.info("Using in-memory entity adapters", fixtures=config.ml_search_fixtures_path)
    return dict(create_memory_adapters(fixtures)), None
