"""Security utilities for the publishing service."""

import hashlib
import re
import secrets
from typing import Dict, Sequence

import structlog
from passlib.context import CryptContext

logger = structlog.get_logger("security")

# RFC 1123 label: what Kubernetes accepts for namespace and most object names
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


def generate_api_key(num_bytes: int = 32) -> str:
    """Generate a high-entropy, URL-safe API key.

    Propagates whatever the OS entropy source raises; callers treat that as
    fatal.
    """
    return secrets.token_urlsafe(num_bytes)


def key_id_for(key: str) -> str:
    """Stable, non-reversible identifier for a key (safe to log and store)."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


class CredentialHasher:
    """Salted one-way hashes for API keys.

    Wraps a passlib ``CryptContext``. Stored hashes carry their own scheme
    and cost, so hashes made under an older cost still verify. Lookups go
    through the key id first, so at most one ``verify`` runs per request.

    Parameters
    - schemes: passlib schemes; the first one is used for new hashes
    - rounds: bcrypt cost factor (4-31)
    """

    def __init__(self, schemes: Sequence[str] = ("bcrypt",), rounds: int = 12):
        self.pwd_context = CryptContext(schemes=list(schemes), deprecated="auto", bcrypt__rounds=rounds)

    def digest(self, key: str) -> str:
        """Hash stored in place of the plaintext key."""
        return self.pwd_context.hash(key)

    def verify(self, key: str, digest: str) -> bool:
        """Check a presented key against a stored hash."""
        if not key or not digest:
            return False
        try:
            return self.pwd_context.verify(key, digest)
        except (ValueError, TypeError):
            logger.warning("Unrecognized credential hash format")
            return False


class InputSanitizer:
    """Sanitizes and validates user inputs."""

    def validate_resource_name(self, name: str, field: str = "name") -> str:
        """Validate a Kubernetes-style resource name (DNS label)."""
        if not isinstance(name, str) or not name:
            raise ValueError(f"{field} must be a non-empty string")

        if len(name) > 63:
            raise ValueError(f"{field} must be at most 63 characters")

        if not _DNS_LABEL.match(name):
            raise ValueError(
                f"{field} must consist of lower case alphanumeric characters or '-', "
                "and must start and end with an alphanumeric character"
            )

        return name

    def validate_tenant_id(self, tenant_id: str) -> str:
        """Validate tenant ID format (tenants are namespaces)."""
        return self.validate_resource_name(tenant_id, field="tenantId")

    def sanitize_metadata(self, metadata: Dict[str, str]) -> Dict[str, str]:
        """Bound a free-form string map before it is persisted."""
        if not isinstance(metadata, dict):
            raise ValueError("Metadata must be a dictionary")

        max_keys = 50
        max_value_length = 1000

        if len(metadata) > max_keys:
            logger.warning("Metadata has too many keys", count=len(metadata), max=max_keys)

        sanitized = {}
        for key in sorted(metadata)[:max_keys]:
            value = metadata[key]
            if not isinstance(key, str) or len(key) > 100:
                continue
            sanitized[key] = str(value).replace('\x00', '')[:max_value_length]

        return sanitized


class SecurityHeaders:
    """Security headers for HTTP responses."""

    @staticmethod
    def get_security_headers() -> Dict[str, str]:
        """Get recommended security headers."""
        return {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Cache-Control": "no-store",
        }


def create_input_sanitizer() -> InputSanitizer:
    """Create an input sanitizer."""
    return InputSanitizer()
