"""API key lifecycle for published models.

Only a salted hash of each key is stored, next to a short key id that is
safe to log. The plaintext leaves this module exactly twice: as the return
value of ``issue`` and of ``rotate``.

Rotation is a hard cutover. The new credential document replaces the old
one in a single store write, so the previous key stops validating the
moment the new one is persisted.
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import structlog

from libs.common.security import CredentialHasher, generate_api_key, key_id_for
from libs.publishing_store.base import PublishingStore, PublishingStoreError

from .errors import CredentialError, NotFoundError, StoreError
from .models import utcnow

logger = structlog.get_logger("publishing.api_keys")


@dataclass(frozen=True)
class IssuedKey:
    """A freshly minted key. ``api_key`` is the only plaintext copy.

    ``replaced`` holds the credential document a rotation overwrote, so the
    caller can put it back if the rest of the rotation fails.
    """
    api_key: str
    key_id: str
    created_at: datetime
    replaced: Optional[Dict[str, Any]] = None


class ApiKeyManager:
    """Issues, rotates, validates and revokes per-publication API keys.

    Parameters
    - store: Publishing store holding the credential table
    - hasher: Salted hash used in place of the plaintext
    """

    def __init__(self, store: PublishingStore, hasher: CredentialHasher):
        self.store = store
        self.hasher = hasher

    def _mint(self) -> Tuple[str, str]:
        try:
            api_key = generate_api_key()
        except (OSError, NotImplementedError) as e:
            logger.critical("Entropy source failure while generating API key", error=str(e))
            raise CredentialError("Unable to generate a secure API key")
        return api_key, key_id_for(api_key)

    async def _store(self, tenant_id: str, model_name: str) -> IssuedKey:
        api_key, key_id = self._mint()
        digest = await asyncio.to_thread(self.hasher.digest, api_key)
        created_at = utcnow()
        await self.store.put_credential(
            tenant_id,
            model_name,
            {
                "tenant_id": tenant_id,
                "model_name": model_name,
                "key_id": key_id,
                "digest": digest,
                "created_at": created_at.isoformat(),
            },
        )
        return IssuedKey(api_key=api_key, key_id=key_id, created_at=created_at)

    async def issue(self, tenant_id: str, model_name: str) -> IssuedKey:
        """Mint the credential for a new publication."""
        issued = await self._store(tenant_id, model_name)
        logger.info("API key issued", tenant_id=tenant_id, model_name=model_name, key_id=issued.key_id)
        return issued

    async def rotate(self, tenant_id: str, model_name: str) -> IssuedKey:
        """Replace the active credential, invalidating the previous key."""
        previous = await self.store.get_credential(tenant_id, model_name)
        if previous is None:
            raise NotFoundError(f"Model {model_name} is not published in tenant {tenant_id}")
        issued = await self._store(tenant_id, model_name)
        logger.info(
            "API key rotated",
            tenant_id=tenant_id,
            model_name=model_name,
            previous_key_id=previous.get("key_id"),
            key_id=issued.key_id,
        )
        return replace(issued, replaced=previous)

    async def restore(self, tenant_id: str, model_name: str, credential: Dict[str, Any]) -> None:
        """Put back a credential a rotation replaced; its key validates again."""
        await self.store.put_credential(tenant_id, model_name, credential)
        logger.warning(
            "API key rotation reverted",
            tenant_id=tenant_id,
            model_name=model_name,
            key_id=credential.get("key_id"),
        )

    async def _find(self, presented_key: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.store.find_credential(key_id_for(presented_key))
        except PublishingStoreError as e:
            logger.error("Credential lookup failed", error=str(e))
            raise StoreError("Credential store unavailable")

    async def validate(self, tenant_id: str, model_name: str, presented_key: str) -> bool:
        """Check that a presented key is the active key of this publication.

        The credential is found through the key id, so a key minted for any
        other publication is rejected before its hash is checked. Read-only;
        nothing about the credential is updated.
        """
        if not presented_key:
            return False
        credential = await self._find(presented_key)
        if credential is None:
            return False
        if (credential.get("tenant_id"), credential.get("model_name")) != (tenant_id, model_name):
            logger.warning(
                "API key presented for another publication",
                tenant_id=tenant_id,
                model_name=model_name,
                key_id=credential.get("key_id"),
            )
            return False
        return await asyncio.to_thread(self.hasher.verify, presented_key, credential.get("digest", ""))

    async def revoke(self, tenant_id: str, model_name: str) -> bool:
        """Delete the credential. Returns ``False`` when none existed."""
        revoked = await self.store.delete_credential(tenant_id, model_name)
        if revoked:
            logger.info("API key revoked", tenant_id=tenant_id, model_name=model_name)
        return revoked
