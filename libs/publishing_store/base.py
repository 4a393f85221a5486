"""Base publishing store interface.

Defines the abstract contract the publishing service depends on, independent
of the backing implementation (in-memory, Redis, etc.).

Two tables live behind the interface:
- publication records, one per ``(tenant_id, model_name)``
- credentials (API key digests), one per ``(tenant_id, model_name)``

All methods are asynchronous. Implementations must make each single-key
write atomic: a reader sees either the previous or the next document, never
a mix.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class PublishingStore(ABC):
    """Abstract base class for publishing stores."""

    @abstractmethod
    async def get_record(self, tenant_id: str, model_name: str) -> Optional[Dict[str, Any]]:
        """Get a publication record.

        Returns
        - The stored document when found, else ``None``
        """
        pass

    @abstractmethod
    async def put_record(self, tenant_id: str, model_name: str, record: Dict[str, Any]) -> None:
        """Create or replace a publication record."""
        pass

    @abstractmethod
    async def delete_record(self, tenant_id: str, model_name: str) -> bool:
        """Delete a publication record.

        Returns ``True`` if an item was deleted, else ``False``.
        """
        pass

    @abstractmethod
    async def list_records(self, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """List publication records, optionally restricted to one tenant.

        Results are ordered by ``(tenant_id, model_name)``.
        """
        pass

    @abstractmethod
    async def get_credential(self, tenant_id: str, model_name: str) -> Optional[Dict[str, Any]]:
        """Get the active credential document for a publication."""
        pass

    @abstractmethod
    async def put_credential(self, tenant_id: str, model_name: str, credential: Dict[str, Any]) -> None:
        """Replace the active credential document in a single write."""
        pass

    @abstractmethod
    async def find_credential(self, key_id: str) -> Optional[Dict[str, Any]]:
        """Find the active credential document by its key id.

        Only the current credential of a publication is findable; a key id
        replaced by rotation resolves to ``None``.
        """
        pass

    @abstractmethod
    async def delete_credential(self, tenant_id: str, model_name: str) -> bool:
        """Delete the credential document for a publication."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the store is healthy."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None


class PublishingStoreError(Exception):
    """Base exception for publishing store operations."""
    pass


class PublishingStoreConnectionError(PublishingStoreError):
    """Connection error to the publishing store."""
    pass


class PublishingStoreCorruptionError(PublishingStoreError):
    """A stored document could not be decoded."""
    pass
