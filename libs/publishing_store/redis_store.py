"""Redis implementation of the publishing store.

Documents are stored as JSON strings. Small indexes make listing and key
lookups cheap without ``SCAN``:

- ``{prefix}:tenants``: tenants with at least one record
- ``{prefix}:records:{tenant}``: model names published in a tenant
- ``{prefix}:credential-id:{key_id}``: credential key owning a key id, used
  by the gateway validation hook which only sees the presented key

Record writes and their index updates go through a ``MULTI`` pipeline so a
reader never observes a record missing from its index or vice versa.

Connection management
- A single ``redis.asyncio`` client is created on demand and reused
- Commands are funneled through ``_execute`` for uniform error handling
"""

import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis_async
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .base import (
    PublishingStore,
    PublishingStoreConnectionError,
    PublishingStoreCorruptionError,
    PublishingStoreError,
)

logger = structlog.get_logger("publishing_store.redis")


class RedisPublishingStore(PublishingStore):
    """Redis-backed implementation of ``PublishingStore``."""

    def __init__(
        self,
        redis_url: str,
        prefix: str = "publishing",
        socket_timeout: float = 5.0,
        client: Optional[Any] = None,
    ):
        """Configure a Redis-backed publishing store.

        Parameters
        - redis_url: Redis connection URL
        - prefix: Key namespace, allowing several deployments per database
        - socket_timeout: Seconds to allow per command
        - client: Pre-built ``redis.asyncio`` client (mainly for tests)
        """
        self.redis_url = redis_url
        self.prefix = prefix
        self.socket_timeout = socket_timeout
        self._client = client

    def _get_client(self):
        """Get or create the Redis client."""
        if self._client is None:
            self._client = redis_async.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
            )
            logger.info("Created Redis publishing store client", prefix=self.prefix)
        return self._client

    def _record_key(self, tenant_id: str, model_name: str) -> str:
        return f"{self.prefix}:record:{tenant_id}:{model_name}"

    def _credential_key(self, tenant_id: str, model_name: str) -> str:
        return f"{self.prefix}:credential:{tenant_id}:{model_name}"

    def _credential_id_key(self, key_id: str) -> str:
        return f"{self.prefix}:credential-id:{key_id}"

    def _tenant_index_key(self, tenant_id: str) -> str:
        return f"{self.prefix}:records:{tenant_id}"

    @property
    def _tenants_key(self) -> str:
        return f"{self.prefix}:tenants"

    async def _execute(self, operation: str, func: Callable[[Any], Awaitable[Any]]) -> Any:
        """Run a command against the client with error handling.

        Connectivity failures become ``PublishingStoreConnectionError`` so the
        caller can retry them; everything else is ``PublishingStoreError``.
        """
        try:
            return await func(self._get_client())
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error("Redis connection failed", operation=operation, error=str(e))
            raise PublishingStoreConnectionError(f"{operation} failed: {e}") from e
        except RedisError as e:
            logger.error("Redis command failed", operation=operation, error=str(e))
            raise PublishingStoreError(f"{operation} failed: {e}") from e

    @staticmethod
    def _decode(raw: Optional[str], key: str) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise PublishingStoreCorruptionError(f"Corrupt document at {key}: {e}") from e

    async def get_record(self, tenant_id: str, model_name: str) -> Optional[Dict[str, Any]]:
        key = self._record_key(tenant_id, model_name)
        raw = await self._execute("get_record", lambda client: client.get(key))
        return self._decode(raw, key)

    async def put_record(self, tenant_id: str, model_name: str, record: Dict[str, Any]) -> None:
        payload = json.dumps(record, sort_keys=True)

        async def _write(client):
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._record_key(tenant_id, model_name), payload)
                pipe.sadd(self._tenant_index_key(tenant_id), model_name)
                pipe.sadd(self._tenants_key, tenant_id)
                return await pipe.execute()

        await self._execute("put_record", _write)

    async def delete_record(self, tenant_id: str, model_name: str) -> bool:
        async def _delete(client):
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(self._record_key(tenant_id, model_name))
                pipe.srem(self._tenant_index_key(tenant_id), model_name)
                return await pipe.execute()

        deleted, _ = await self._execute("delete_record", _delete)
        return bool(deleted)

    async def list_records(self, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if tenant_id is None:
            tenants = await self._execute("list_tenants", lambda client: client.smembers(self._tenants_key))
        else:
            tenants = {tenant_id}

        records: List[Dict[str, Any]] = []
        for tenant in sorted(tenants):
            names = await self._execute(
                "list_records",
                lambda client, tenant=tenant: client.smembers(self._tenant_index_key(tenant)),
            )
            if not names:
                continue
            keys = [self._record_key(tenant, name) for name in sorted(names)]
            raws = await self._execute("list_records", lambda client, keys=keys: client.mget(keys))
            for key, raw in zip(keys, raws):
                # Index entries may briefly outlive a record during deletion
                record = self._decode(raw, key)
                if record is not None:
                    records.append(record)
        return records

    async def get_credential(self, tenant_id: str, model_name: str) -> Optional[Dict[str, Any]]:
        key = self._credential_key(tenant_id, model_name)
        raw = await self._execute("get_credential", lambda client: client.get(key))
        return self._decode(raw, key)

    async def put_credential(self, tenant_id: str, model_name: str, credential: Dict[str, Any]) -> None:
        key = self._credential_key(tenant_id, model_name)
        payload = json.dumps(credential, sort_keys=True)
        key_id = credential.get("key_id")

        async def _write(client):
            previous = self._decode(await client.get(key), key)
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(key, payload)
                if previous and previous.get("key_id") and previous["key_id"] != key_id:
                    pipe.delete(self._credential_id_key(previous["key_id"]))
                if key_id:
                    pipe.set(self._credential_id_key(key_id), key)
                return await pipe.execute()

        await self._execute("put_credential", _write)

    async def find_credential(self, key_id: str) -> Optional[Dict[str, Any]]:
        owner = await self._execute("find_credential", lambda client: client.get(self._credential_id_key(key_id)))
        if owner is None:
            return None
        raw = await self._execute("find_credential", lambda client: client.get(owner))
        credential = self._decode(raw, owner)
        # The id index is advisory; the credential document is authoritative
        if credential is None or credential.get("key_id") != key_id:
            return None
        return credential

    async def delete_credential(self, tenant_id: str, model_name: str) -> bool:
        key = self._credential_key(tenant_id, model_name)

        async def _delete(client):
            previous = self._decode(await client.get(key), key)
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if previous and previous.get("key_id"):
                    pipe.delete(self._credential_id_key(previous["key_id"]))
                return await pipe.execute()

        results = await self._execute("delete_credential", _delete)
        return bool(results[0])

    async def health_check(self) -> bool:
        try:
            return bool(await self._execute("ping", lambda client: client.ping()))
        except PublishingStoreError:
            return False

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except RedisError as e:
            logger.warning("Error closing redis client", error=str(e))
