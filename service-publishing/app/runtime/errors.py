"""Error taxonomy for the publishing service.

Every error surfaced to API callers derives from ``PublishingError`` and
carries a stable ``kind`` plus the HTTP status it maps to. The message is
the human-readable reason returned to the caller; details about which
control-plane object failed belong in logs, not here.
"""


class PublishingError(Exception):
    """Base class for publishing errors."""

    kind = "internal"
    status_code = 500
    retryable = False

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_dict(self):
        return {"error": self.kind, "detail": self.reason}


class ValidationError(PublishingError):
    """Bad input shape or values; user-fixable."""
    kind = "validation"
    status_code = 400


class AuthorizationError(PublishingError):
    """Tenant boundary violation."""
    kind = "authorization"
    status_code = 403


class NotFoundError(PublishingError):
    """Unknown model, tenant or publication."""
    kind = "not_found"
    status_code = 404


class ConflictError(PublishingError):
    """Concurrent operation on the same key, or an incompatible republish."""
    kind = "conflict"
    status_code = 409


class ControlPlaneError(PublishingError):
    """Apply or delete against the control plane failed."""
    kind = "control_plane"
    status_code = 502
    retryable = True


class StoreError(PublishingError):
    """Publishing store failure."""
    kind = "store"
    status_code = 503
    retryable = True


class CredentialError(PublishingError):
    """Credential could not be generated (entropy source failure)."""
    kind = "credential"
    status_code = 500
