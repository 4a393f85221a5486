"""Publishing store factory.

Centralizes creation of concrete ``PublishingStore`` backends so callers
don't depend on implementation details.
"""

from enum import Enum
from typing import Any, Dict

import structlog

from .base import PublishingStore
from .memory import InMemoryPublishingStore
from .redis_store import RedisPublishingStore

logger = structlog.get_logger("publishing_store.factory")


class PublishingStoreType(Enum):
    """Supported publishing store types."""
    MEMORY = "memory"
    REDIS = "redis"


class PublishingStoreFactory:
    """Factory for creating publishing store instances."""

    @staticmethod
    def create(store_type: PublishingStoreType, config: Dict[str, Any]) -> PublishingStore:
        """Create a publishing store instance.

        Parameters
        - store_type: A ``PublishingStoreType`` enum value
        - config: Backend-specific parameters (e.g., ``redis_url``)
        """
        if store_type == PublishingStoreType.MEMORY:
            logger.warning("Using in-memory publishing store - records do not survive restarts")
            return InMemoryPublishingStore()

        elif store_type == PublishingStoreType.REDIS:
            redis_url = config.get("redis_url")
            if not redis_url:
                raise ValueError("Redis publishing store requires 'redis_url' in config")

            return RedisPublishingStore(
                redis_url=redis_url,
                prefix=config.get("prefix", "publishing"),
                socket_timeout=config.get("socket_timeout", 5.0),
            )

        else:
            raise ValueError(f"Unsupported publishing store type: {store_type}")


def create_publishing_store(store_type: str, config: Dict[str, Any]) -> PublishingStore:
    """Convenience function to create a publishing store."""
    try:
        store_type_enum = PublishingStoreType(store_type)
    except ValueError:
        raise ValueError(f"Unsupported publishing store type: {store_type}")
    return PublishingStoreFactory.create(store_type_enum, config)


def create_publishing_store_from_config(config) -> PublishingStore:
    """Create the store selected by ``PublishingConfig``."""
    return create_publishing_store(
        config.ml_publishing_store_backend,
        {
            "redis_url": config.ml_redis_url,
            "prefix": config.ml_publishing_store_prefix,
        },
    )
