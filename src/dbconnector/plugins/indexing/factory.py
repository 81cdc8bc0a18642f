# src/dbconnector/plugins/indexing/factory.py
"""Factory for the configured indexing service.

Usage:
    from dbconnector.plugins.indexing.factory import create_indexing_service

    index = create_indexing_service(settings.indexing)
"""

from __future__ import annotations

import structlog

from dbconnector.contracts import ConfigurationError, IndexingBackend
from dbconnector.core.config import IndexingSettings
from dbconnector.plugins.indexing.http import HttpIndexingService
from dbconnector.plugins.indexing.memory import MemoryIndex
from dbconnector.plugins.protocols import IndexingService

logger = structlog.get_logger(__name__)


def create_indexing_service(settings: IndexingSettings) -> IndexingService:
    """Build the backend selected by indexing.backend.

    Raises:
        ConfigurationError: If the http backend has no base_url
    """
    if settings.backend is IndexingBackend.MEMORY:
        logger.info("indexing_backend_selected", backend=settings.backend.value)
        return MemoryIndex()

    if not settings.base_url:
        raise ConfigurationError("indexing.base_url is required for the http backend")
    logger.info("indexing_backend_selected", backend=settings.backend.value, base_url=settings.base_url)
    return HttpIndexingService(
        settings.base_url,
        api_key=settings.api_key,
        timeout=settings.timeout_seconds,
    )
