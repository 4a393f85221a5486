"""Domain models for model publishing.

Wire models use camelCase aliases (``tenantId``, ``rateLimiting``...) while
Python code uses snake_case attribute names. Records round-trip through the
publishing store as JSON documents produced by ``to_document``.

Design notes
- ``PublishConfig`` is the caller's intent; every field is optional except
  the nested defaults, so an update can carry only a delta
- ``PublishedModel`` is always fully resolved: ``model_type`` is never
  ``auto`` and ``external_path``/``backend_hostname`` are always set
- Semantic rules that need the resolved record (rpm <= rph, path and
  hostname shape) live in ``validate_resolved`` so they raise the service's
  own ``ValidationError`` rather than a request-parsing error
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModelType(str, Enum):
    """Requested or resolved protocol shape of a published model."""
    AUTO = "auto"
    TRADITIONAL = "traditional"
    OPENAI = "openai"


class PublicationStatus(str, Enum):
    """Lifecycle status of a publication record."""
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    UNPUBLISHED = "unpublished"


class ProtocolHint(str, Enum):
    """Protocol shape inferred from serving metadata."""
    TRADITIONAL = "traditional"
    OPENAI = "openai"
    UNKNOWN = "unknown"


class ModelFramework(str, Enum):
    """Closed set of serving frameworks understood by the publisher."""
    SKLEARN = "sklearn"
    XGBOOST = "xgboost"
    LIGHTGBM = "lightgbm"
    TENSORFLOW = "tensorflow"
    PYTORCH = "pytorch"
    ONNX = "onnx"
    TRITON = "triton"
    HUGGINGFACE = "huggingface"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, name: str) -> "ModelFramework":
        """Map a serving runtime's framework name onto the enum.

        Raises ``ValidationError`` for names outside the closed set so a new
        runtime surfaces loudly instead of being treated as some default.
        """
        normalized = (name or "").strip().lower()
        aliases = {"scikit-learn": "sklearn", "tf": "tensorflow", "torch": "pytorch", "tritonserver": "triton"}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise ValidationError(f"Unsupported model framework: {name!r}")


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


class RateLimitConfig(CamelModel):
    """Request and token throttling for a published model."""
    requests_per_minute: int = Field(60, ge=0, description="Requests allowed per minute")
    requests_per_hour: int = Field(1000, ge=0, description="Requests allowed per hour")
    tokens_per_hour: int = Field(0, ge=0, description="Token budget per hour (OpenAI models only, 0 = unlimited)")
    burst_limit: int = Field(10, ge=0, description="Requests allowed per second")


class AuthenticationConfig(CamelModel):
    """Access requirements for a published model."""
    require_api_key: bool = Field(True, description="Require the minted API key on every call")
    allowed_tenants: List[str] = Field(default_factory=list, description="Caller tenants allowed (empty = unrestricted)")

    @field_validator("allowed_tenants")
    @classmethod
    def _as_sorted_set(cls, value: List[str]) -> List[str]:
        return sorted({item.strip() for item in value if item and item.strip()})


class PublishConfig(CamelModel):
    """Caller-supplied publication intent."""
    tenant_id: Optional[str] = Field(None, description="Target tenant (defaults to the caller's own)")
    model_type: ModelType = Field(ModelType.AUTO, description="Protocol shape, or auto to detect")
    external_path: Optional[str] = Field(None, description="External path (derived when empty)")
    public_hostname: Optional[str] = Field(None, description="Externally routable host")
    rate_limiting: RateLimitConfig = Field(default_factory=RateLimitConfig)
    authentication: AuthenticationConfig = Field(default_factory=AuthenticationConfig)
    metadata: Dict[str, str] = Field(default_factory=dict, description="Free-form labels kept with the record")


class PublishRequest(CamelModel):
    """Body of publish and update calls."""
    config: PublishConfig = Field(default_factory=PublishConfig)


class UsageStats(CamelModel):
    """Point-in-time usage counters."""
    total_requests: int = 0
    total_tokens: int = 0
    errors: int = 0
    last_used: Optional[datetime] = None


@dataclass(frozen=True)
class ModelDescriptor:
    """What the serving runtime reports about a model."""
    ready: bool
    internal_url: Optional[str]
    declared_framework: ModelFramework
    protocol_hint: ProtocolHint


@dataclass(frozen=True)
class ObjectRef:
    """Identity of a control-plane object."""
    api_version: str
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "ObjectRef":
        return cls(
            api_version=data["apiVersion"],
            kind=data["kind"],
            namespace=data["namespace"],
            name=data["name"],
        )


class PublishedModel(CamelModel):
    """The durable, reconciled publication record."""
    tenant_id: str
    model_name: str
    model_type: ModelType
    external_path: str
    public_hostname: str
    external_url: str
    api_key_id: Optional[str] = None
    rate_limiting: RateLimitConfig = Field(default_factory=RateLimitConfig)
    authentication: AuthenticationConfig = Field(default_factory=AuthenticationConfig)
    metadata: Dict[str, str] = Field(default_factory=dict)
    status: PublicationStatus = PublicationStatus.PENDING
    usage: UsageStats = Field(default_factory=UsageStats)
    backend_hostname: str
    declared_framework: ModelFramework = ModelFramework.CUSTOM
    policy_objects: List[Dict[str, str]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    last_error: Optional[str] = None
    pending_unpublish: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self):
        return (self.tenant_id, self.model_name)

    def object_refs(self) -> List[ObjectRef]:
        """References to the policy objects last applied for this record."""
        return [ObjectRef.from_dict(item) for item in self.policy_objects]

    def resolved_config(self) -> Dict[str, Any]:
        """The configuration fields a republish compares against."""
        return self.model_dump(
            mode="json",
            include={
                "model_type",
                "external_path",
                "public_hostname",
                "rate_limiting",
                "authentication",
                "metadata",
            },
        )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "PublishedModel":
        return cls.model_validate(document)


def default_external_path(model_type: ModelType, model_name: str) -> str:
    """Path a model is exposed under when the caller gives none."""
    if model_type == ModelType.OPENAI:
        return f"/v1/models/{model_name}"
    return f"/published/models/{model_name}"


def external_url_for(public_hostname: str, external_path: str) -> str:
    return f"https://{public_hostname}{external_path}"


def validate_resolved(model: PublishedModel) -> None:
    """Check the rules that apply to a fully resolved record.

    Raises ``ValidationError`` with the first violated rule.
    """
    if model.model_type == ModelType.AUTO:
        raise ValidationError("modelType must be resolved before synthesis")

    if not model.external_path.startswith("/"):
        raise ValidationError("externalPath must start with '/'")
    if any(ch.isspace() for ch in model.external_path):
        raise ValidationError("externalPath must not contain whitespace")

    hostname = model.public_hostname
    if not hostname:
        raise ValidationError("publicHostname must not be empty")
    if "://" in hostname or "/" in hostname:
        raise ValidationError("publicHostname must be a bare hostname without scheme or path")

    limits = model.rate_limiting
    if limits.requests_per_minute <= 0:
        raise ValidationError("rateLimiting.requestsPerMinute must be greater than 0")
    if limits.requests_per_hour <= 0:
        raise ValidationError("rateLimiting.requestsPerHour must be greater than 0")
    if limits.requests_per_minute > limits.requests_per_hour:
        raise ValidationError("rateLimiting.requestsPerMinute cannot exceed requestsPerHour")
