"""Tenant resolution for publishing calls."""

from typing import Iterable, Optional

from libs.common.auth import CallerIdentity
from libs.common.logging import log_audit

from .errors import AuthorizationError, NotFoundError, ValidationError


class TenantResolver:
    """Decides which tenant namespace a caller may act on.

    Parameters
    - known_tenants: Tenant namespaces that exist on the platform
    """

    def __init__(self, known_tenants: Iterable[str]):
        self.known_tenants = frozenset(known_tenants)

    def resolve_tenant(self, caller: CallerIdentity, requested_tenant_id: Optional[str]) -> str:
        """Return the tenant the call acts on, or raise.

        Regular callers may only name their own tenant (absence means their
        own). Admins must name a known tenant explicitly.
        """
        requested = (requested_tenant_id or "").strip() or None

        if caller.is_admin:
            if requested is None:
                raise ValidationError("tenantId is required for admin calls")
            if requested not in self.known_tenants:
                raise NotFoundError(f"Unknown tenant: {requested}")
            return requested

        if requested is not None and requested != caller.tenant_id:
            log_audit(
                "cross_tenant_access",
                "denied",
                caller_tenant=caller.tenant_id,
                requested_tenant=requested,
                subject=caller.subject,
            )
            raise AuthorizationError("Access denied: cannot act on another tenant")
        return caller.tenant_id

    def visible_tenant(self, caller: CallerIdentity) -> Optional[str]:
        """Tenant filter for list calls; ``None`` means every tenant."""
        return None if caller.is_admin else caller.tenant_id
