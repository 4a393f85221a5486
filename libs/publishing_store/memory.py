"""In-memory publishing store.

Keeps deep copies of documents so callers can never mutate stored state
through a returned reference. Suitable for tests and single-process
development; contents are lost on restart.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

import structlog

from .base import PublishingStore

logger = structlog.get_logger("publishing_store.memory")

Key = Tuple[str, str]


class InMemoryPublishingStore(PublishingStore):
    """Dictionary-backed implementation of ``PublishingStore``."""

    def __init__(self):
        self._records: Dict[Key, Dict[str, Any]] = {}
        self._credentials: Dict[Key, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get_record(self, tenant_id: str, model_name: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._records.get((tenant_id, model_name))
            return copy.deepcopy(record) if record is not None else None

    async def put_record(self, tenant_id: str, model_name: str, record: Dict[str, Any]) -> None:
        async with self._lock:
            self._records[(tenant_id, model_name)] = copy.deepcopy(record)

    async def delete_record(self, tenant_id: str, model_name: str) -> bool:
        async with self._lock:
            return self._records.pop((tenant_id, model_name), None) is not None

    async def list_records(self, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            return [
                copy.deepcopy(self._records[key])
                for key in sorted(self._records)
                if tenant_id is None or key[0] == tenant_id
            ]

    async def get_credential(self, tenant_id: str, model_name: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            credential = self._credentials.get((tenant_id, model_name))
            return dict(credential) if credential is not None else None

    async def put_credential(self, tenant_id: str, model_name: str, credential: Dict[str, Any]) -> None:
        async with self._lock:
            self._credentials[(tenant_id, model_name)] = dict(credential)

    async def find_credential(self, key_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for credential in self._credentials.values():
                if credential.get("key_id") == key_id:
                    return dict(credential)
            return None

    async def delete_credential(self, tenant_id: str, model_name: str) -> bool:
        async with self._lock:
            return self._credentials.pop((tenant_id, model_name), None) is not None

    async def health_check(self) -> bool:
        return True
