"""Authentication utilities.

Central helpers for decoding caller identities from bearer tokens and for
simple service-to-service authentication.

Design
- "AuthManager" decodes end-user tenant tokens into a ``CallerIdentity``
- "InternalAuthManager" is for service tokens ("type=internal")
- ``security`` is the shared FastAPI bearer scheme

Token issuance for end users belongs to the identity server; the
``create_access_token`` helper exists for local development and tests.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import HTTPException, status
from fastapi.security import HTTPBearer

logger = structlog.get_logger("auth")

# JWT token scheme
security = HTTPBearer()

ADMIN_ROLES = frozenset({"admin", "platform-admin"})


@dataclass(frozen=True)
class CallerIdentity:
    """Decoded caller claims: the tenant and whether the caller is an admin."""
    tenant_id: str
    is_admin: bool = False
    subject: Optional[str] = None

    @property
    def actor(self) -> str:
        """Name used for audit and event attribution."""
        return "admin" if self.is_admin else self.tenant_id


class AuthManager:
    """Authentication manager for tenant tokens.

    Validates JWTs and maps their claims onto ``CallerIdentity``. A caller is
    an admin when the ``isAdmin`` claim is true or its ``role`` is one of
    ``ADMIN_ROLES``. Non-admin tokens must carry the tenant claim.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        tenant_claim: str = "tenant",
        access_token_expire_minutes: int = 30
    ):
        """Configure JWT settings for tenant tokens.

        Parameters
        - secret_key: Symmetric key for signing/verification
        - algorithm: JWT algorithm (default HS256)
        - tenant_claim: Claim holding the caller's tenant namespace
        - access_token_expire_minutes: Default TTL for development tokens
        """
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.tenant_claim = tenant_claim
        self.access_token_expire_minutes = access_token_expire_minutes

    def create_access_token(
        self,
        data: Dict[str, Any],
        expires_delta: Optional[timedelta] = None
    ) -> str:
        """Create a JWT access token."""
        to_encode = data.copy()
        if expires_delta:
            expire = datetime.now(timezone.utc) + expires_delta
        else:
            expire = datetime.now(timezone.utc) + timedelta(minutes=self.access_token_expire_minutes)

        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Dict[str, Any]:
        """Verify and decode a JWT token.

        Raises ``HTTPException`` with 401 on invalid/expired tokens.
        """
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired",
                headers={"WWW-Authenticate": "Bearer"},
            )
        except jwt.PyJWTError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )

    def identity_from_claims(self, payload: Dict[str, Any]) -> CallerIdentity:
        """Map decoded claims onto a caller identity."""
        is_admin = bool(payload.get("isAdmin")) or payload.get("role") in ADMIN_ROLES
        tenant_id = payload.get(self.tenant_claim) or ""
        if not tenant_id and not is_admin:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing tenant claim",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return CallerIdentity(
            tenant_id=tenant_id,
            is_admin=is_admin,
            subject=payload.get("sub"),
        )

    def identify(self, token: str) -> CallerIdentity:
        """Verify a token and return the caller identity."""
        return self.identity_from_claims(self.verify_token(token))


class InternalAuthManager:
    """Internal authentication manager for service-to-service communication.

    Encodes a ``type=internal`` claim so downstream checks can distinguish
    machine tokens from end-user tokens.
    """

    def __init__(self, secret_key: str):
        """Set up internal-token manager with a signing key."""
        self.secret_key = secret_key
        self.algorithm = "HS256"

    def create_internal_token(self, service_name: str) -> str:
        """Create an internal service token."""
        data = {
            "service": service_name,
            "type": "internal",
            "exp": datetime.now(timezone.utc) + timedelta(hours=24)
        }
        return jwt.encode(data, self.secret_key, algorithm=self.algorithm)

    def verify_internal_token(self, token: str) -> Dict[str, Any]:
        """Verify an internal service token."""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Internal token has expired"
            )
        except jwt.PyJWTError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid internal token"
            )
        if payload.get("type") != "internal":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token type"
            )
        return payload


def create_auth_manager_from_config(config) -> AuthManager:
    """Create auth manager from config."""
    return AuthManager(
        secret_key=config.ml_jwt_secret_key,
        algorithm=config.ml_jwt_algorithm,
        tenant_claim=config.ml_jwt_tenant_claim,
    )
