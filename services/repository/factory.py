"""Factory selecting the repository backend from configuration."""

import logging

from services.repository.base import Repository
from services.repository.memory import InMemoryRepository
from services.repository.redis_store import RedisRepository
from services.shared.config import Settings

logger = logging.getLogger(__name__)


def create_repository(settings: Settings) -> Repository:
    """Create the configured repository backend.

    Args:
        settings: Application settings with repository_backend field

    Returns:
        Repository implementation

    Raises:
        ValueError: If the backend is unknown
    """
    if settings.repository_backend == "memory":
        logger.info("Using in-memory repository")
        return InMemoryRepository()
    if settings.repository_backend == "redis":
        logger.info(f"Using Redis repository at {settings.redis_url}")
        return RedisRepository(settings)
    raise ValueError(f"Unknown repository backend: '{settings.repository_backend}'")
