"""Policy synthesis for published models.

Maps a resolved ``PublishedModel`` onto the Envoy Gateway / Envoy AI Gateway
objects that expose it externally. Synthesis is a pure function of its
inputs: the same record and descriptor always produce the same manifests,
with names derived only from ``(tenant_id, model_name)``. Reconciliation
relies on this to recompute desired state instead of mutating objects.

Object set, in apply order
- Route: ``HTTPRoute`` (traditional) or ``AIGatewayRoute`` (openai)
- Backend: Envoy ``Backend`` pointing at the model's predictor hostname,
  plus an ``AIServiceBackend`` wrapper for openai models
- SecurityPolicy: external API key check and optional tenant claim rule
- BackendTrafficPolicy: request (and token) rate limits per API key
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError
from .models import ModelDescriptor, ModelType, ObjectRef, PublishedModel

GATEWAY_API_GROUP = "gateway.networking.k8s.io"
ENVOY_GATEWAY_GROUP = "gateway.envoyproxy.io"
AI_GATEWAY_GROUP = "aigateway.envoyproxy.io"

OPENAI_SIBLING_PATHS = ("/v1/chat/completions", "/v1/completions", "/v1/embeddings")
AI_GATEWAY_MODEL_HEADER = "x-ai-eg-model"
API_KEY_HEADER = "x-api-key"
TOKEN_COST_METADATA_NAMESPACE = "io.envoy.ai_gateway"
TOKEN_COST_METADATA_KEY = "llm_total_token"


@dataclass(frozen=True)
class GatewaySettings:
    """Cluster topology the synthesized objects refer to."""
    gateway_name: str = "ai-inference-gateway"
    gateway_namespace: str = "envoy-gateway-system"
    ext_auth_service: str = "model-publishing"
    ext_auth_namespace: str = "platform-system"
    ext_auth_port: int = 9010
    ext_auth_path: str = "/api/validate-api-key"
    jwks_uri: str = "http://jwt-server.default.svc.cluster.local:8080/.well-known/jwks.json"
    jwt_issuer: str = "inference-in-a-box"
    tenant_claim: str = "tenant"
    backend_port: int = 80
    backend_request_timeout: str = "60s"

    @classmethod
    def from_config(cls, config) -> "GatewaySettings":
        return cls(
            gateway_name=config.ml_publishing_gateway_name,
            gateway_namespace=config.ml_publishing_gateway_namespace,
            ext_auth_service=config.ml_publishing_ext_auth_service,
            ext_auth_namespace=config.ml_publishing_ext_auth_namespace,
            ext_auth_port=config.ml_publishing_ext_auth_port,
            jwks_uri=config.ml_publishing_jwks_uri,
            tenant_claim=config.ml_jwt_tenant_claim,
        )

    def ext_auth_path_for(self, tenant_id: str, model_name: str) -> str:
        """Authorization path naming the publication a request is for.

        The gateway sends authorization checks to this prefix followed by
        the original request path and method.
        """
        return f"{self.ext_auth_path.rstrip('/')}/{tenant_id}/{model_name}"


@dataclass(frozen=True)
class PolicyObject:
    """One declarative object of a policy set."""
    role: str
    manifest: Dict[str, Any] = field(hash=False)

    @property
    def ref(self) -> ObjectRef:
        metadata = self.manifest["metadata"]
        return ObjectRef(
            api_version=self.manifest["apiVersion"],
            kind=self.manifest["kind"],
            namespace=metadata["namespace"],
            name=metadata["name"],
        )


@dataclass(frozen=True)
class ExternalPolicySet:
    """Ordered set of policy objects realizing one publication."""
    objects: Tuple[PolicyObject, ...]

    def refs(self) -> List[ObjectRef]:
        return [obj.ref for obj in self.objects]

    def canonical_json(self) -> str:
        return json.dumps([obj.manifest for obj in self.objects], sort_keys=True, separators=(",", ":"))

    def digest(self) -> str:
        """Stable content hash, equal for structurally equal sets."""
        return hashlib.sha256(self.canonical_json().encode()).hexdigest()

    def by_role(self, role: str) -> Optional[PolicyObject]:
        for obj in self.objects:
            if obj.role == role:
                return obj
        return None


def _client_selectors(require_api_key: bool) -> List[Dict[str, Any]]:
    # Without keys there is nothing to partition on; the limit is shared by all callers
    if not require_api_key:
        return []
    return [{"headers": [{"name": API_KEY_HEADER, "type": "Distinct"}]}]


def route_name(tenant_id: str, model_name: str) -> str:
    return f"published-model-{tenant_id}-{model_name}"


def backend_name(tenant_id: str, model_name: str) -> str:
    return f"published-model-{tenant_id}-{model_name}-backend"


def ai_backend_name(tenant_id: str, model_name: str) -> str:
    return f"{backend_name(tenant_id, model_name)}-ai"


def security_policy_name(tenant_id: str, model_name: str) -> str:
    return f"published-model-auth-{tenant_id}-{model_name}"


def rate_limit_policy_name(tenant_id: str, model_name: str) -> str:
    return f"published-model-rate-limit-{tenant_id}-{model_name}"


class PolicySynthesizer:
    """Builds the ``ExternalPolicySet`` for a published model.

    Parameters
    - settings: Gateway topology (namespaces, ext-auth service, JWKS)
    """

    def __init__(self, settings: Optional[GatewaySettings] = None):
        self.settings = settings or GatewaySettings()

    def synthesize(self, model: PublishedModel, descriptor: ModelDescriptor) -> ExternalPolicySet:
        """Produce the policy set for a resolved record.

        Raises ``ValidationError`` when the record is not resolved; that is a
        contract violation by the caller and is never retried.
        """
        if model.model_type == ModelType.TRADITIONAL:
            objects = [
                PolicyObject("route", self._http_route(model)),
                PolicyObject("backend", self._backend(model)),
            ]
        elif model.model_type == ModelType.OPENAI:
            objects = [
                PolicyObject("route", self._ai_gateway_route(model)),
                PolicyObject("backend", self._backend(model)),
                PolicyObject("ai-backend", self._ai_service_backend(model)),
            ]
        else:
            raise ValidationError(f"Cannot synthesize policies for modelType {model.model_type.value!r}")

        objects.append(PolicyObject("security", self._security_policy(model)))
        objects.append(PolicyObject("rate-limit", self._rate_limit_policy(model)))

        for obj in objects:
            obj.manifest["metadata"]["labels"]["framework"] = descriptor.declared_framework.value
        return ExternalPolicySet(tuple(objects))

    def _metadata(self, model: PublishedModel, name: str, **extra_labels: str) -> Dict[str, Any]:
        labels = {
            "app": "published-model",
            "app.kubernetes.io/managed-by": "model-publishing",
            "model-name": model.model_name,
            "tenant": model.tenant_id,
        }
        labels.update(extra_labels)
        return {
            "name": name,
            "namespace": self.settings.gateway_namespace,
            "labels": labels,
        }

    def _route_target(self, model: PublishedModel) -> Dict[str, Any]:
        # The AI gateway materializes an HTTPRoute with the AIGatewayRoute's
        # name, so both shapes are targeted the same way.
        return {
            "group": GATEWAY_API_GROUP,
            "kind": "HTTPRoute",
            "name": route_name(model.tenant_id, model.model_name),
        }

    def _http_route(self, model: PublishedModel) -> Dict[str, Any]:
        return {
            "apiVersion": f"{GATEWAY_API_GROUP}/v1",
            "kind": "HTTPRoute",
            "metadata": self._metadata(model, route_name(model.tenant_id, model.model_name), type="traditional"),
            "spec": {
                "parentRefs": [
                    {
                        "name": self.settings.gateway_name,
                        "namespace": self.settings.gateway_namespace,
                    }
                ],
                "hostnames": [model.public_hostname],
                "rules": [
                    {
                        "matches": [{"path": {"type": "PathPrefix", "value": model.external_path}}],
                        "filters": [
                            {
                                "type": "URLRewrite",
                                "urlRewrite": {
                                    "hostname": model.backend_hostname,
                                    "path": {
                                        "type": "ReplaceFullPath",
                                        "replaceFullPath": f"/v1/models/{model.model_name}:predict",
                                    },
                                },
                            },
                            {
                                "type": "RequestHeaderModifier",
                                "requestHeaderModifier": {
                                    "set": [
                                        {"name": "x-tenant", "value": model.tenant_id},
                                        {"name": "x-model-name", "value": model.model_name},
                                        {"name": "x-gateway", "value": "published-model"},
                                    ]
                                },
                            },
                        ],
                        "backendRefs": [
                            {
                                "group": ENVOY_GATEWAY_GROUP,
                                "kind": "Backend",
                                "name": backend_name(model.tenant_id, model.model_name),
                                "port": self.settings.backend_port,
                            }
                        ],
                    }
                ],
            },
        }

    def _ai_gateway_route(self, model: PublishedModel) -> Dict[str, Any]:
        model_header = {"type": "Exact", "name": AI_GATEWAY_MODEL_HEADER, "value": model.model_name}
        paths = [model.external_path] + [path for path in OPENAI_SIBLING_PATHS if path != model.external_path]
        return {
            "apiVersion": f"{AI_GATEWAY_GROUP}/v1alpha1",
            "kind": "AIGatewayRoute",
            "metadata": self._metadata(model, route_name(model.tenant_id, model.model_name), type="openai"),
            "spec": {
                "schema": {"name": "OpenAI"},
                "targetRefs": [
                    {
                        "group": GATEWAY_API_GROUP,
                        "kind": "Gateway",
                        "name": self.settings.gateway_name,
                        "namespace": self.settings.gateway_namespace,
                    }
                ],
                "hostnames": [model.public_hostname],
                "rules": [
                    {
                        "matches": [
                            {"path": {"type": "PathPrefix", "value": path}, "headers": [model_header]}
                            for path in paths
                        ],
                        "backendRefs": [
                            {"name": ai_backend_name(model.tenant_id, model.model_name), "weight": 100}
                        ],
                    }
                ],
                "llmRequestCosts": [
                    {"metadataKey": "llm_input_token", "type": "InputToken"},
                    {"metadataKey": "llm_output_token", "type": "OutputToken"},
                    {"metadataKey": TOKEN_COST_METADATA_KEY, "type": "TotalToken"},
                ],
            },
        }

    def _backend(self, model: PublishedModel) -> Dict[str, Any]:
        return {
            "apiVersion": f"{ENVOY_GATEWAY_GROUP}/v1alpha1",
            "kind": "Backend",
            "metadata": self._metadata(model, backend_name(model.tenant_id, model.model_name)),
            "spec": {
                "endpoints": [
                    {"fqdn": {"hostname": model.backend_hostname, "port": self.settings.backend_port}}
                ]
            },
        }

    def _ai_service_backend(self, model: PublishedModel) -> Dict[str, Any]:
        return {
            "apiVersion": f"{AI_GATEWAY_GROUP}/v1alpha1",
            "kind": "AIServiceBackend",
            "metadata": self._metadata(model, ai_backend_name(model.tenant_id, model.model_name)),
            "spec": {
                "schema": {"name": "OpenAI"},
                "backendRef": {
                    "group": ENVOY_GATEWAY_GROUP,
                    "kind": "Backend",
                    "name": backend_name(model.tenant_id, model.model_name),
                    "namespace": self.settings.gateway_namespace,
                },
                "timeouts": {"request": self.settings.backend_request_timeout},
            },
        }

    def _security_policy(self, model: PublishedModel) -> Dict[str, Any]:
        spec: Dict[str, Any] = {"targetRefs": [self._route_target(model)]}
        auth = model.authentication

        if auth.require_api_key:
            spec["extAuth"] = {
                "headersToExtAuth": [API_KEY_HEADER],
                "http": {
                    "backendRefs": [
                        {
                            "name": self.settings.ext_auth_service,
                            "namespace": self.settings.ext_auth_namespace,
                            "port": self.settings.ext_auth_port,
                        }
                    ],
                    "path": self.settings.ext_auth_path_for(model.tenant_id, model.model_name),
                },
            }

        if auth.allowed_tenants:
            provider = self.settings.jwt_issuer
            spec["jwt"] = {
                "providers": [
                    {
                        "name": provider,
                        "issuer": self.settings.jwt_issuer,
                        "remoteJWKS": {"uri": self.settings.jwks_uri},
                        "claimToHeaders": [{"header": "x-jwt-tenant", "claim": self.settings.tenant_claim}],
                    }
                ]
            }
            spec["authorization"] = {
                "defaultAction": "Deny",
                "rules": [
                    {
                        "name": "allowed-tenants",
                        "action": "Allow",
                        "principal": {
                            "jwt": {
                                "provider": provider,
                                "claims": [
                                    {
                                        "name": self.settings.tenant_claim,
                                        "values": sorted(auth.allowed_tenants),
                                    }
                                ],
                            }
                        },
                    }
                ],
            }

        return {
            "apiVersion": f"{ENVOY_GATEWAY_GROUP}/v1alpha1",
            "kind": "SecurityPolicy",
            "metadata": self._metadata(model, security_policy_name(model.tenant_id, model.model_name)),
            "spec": spec,
        }

    def _rate_limit_policy(self, model: PublishedModel) -> Dict[str, Any]:
        limits = model.rate_limiting
        keyed = model.authentication.require_api_key

        rules: List[Dict[str, Any]] = []
        for requests, unit in (
            (limits.requests_per_minute, "Minute"),
            (limits.requests_per_hour, "Hour"),
            (limits.burst_limit, "Second"),
        ):
            if requests > 0:
                rules.append({"clientSelectors": _client_selectors(keyed), "limit": {"requests": requests, "unit": unit}})

        # Token budgets only mean something where the AI gateway reports usage
        if model.model_type == ModelType.OPENAI and limits.tokens_per_hour > 0:
            rules.append(
                {
                    "clientSelectors": _client_selectors(keyed),
                    "limit": {"requests": limits.tokens_per_hour, "unit": "Hour"},
                    "cost": {
                        "request": {"from": "Number", "number": 0},
                        "response": {
                            "from": "Metadata",
                            "metadata": {
                                "namespace": TOKEN_COST_METADATA_NAMESPACE,
                                "key": TOKEN_COST_METADATA_KEY,
                            },
                        },
                    },
                }
            )

        return {
            "apiVersion": f"{ENVOY_GATEWAY_GROUP}/v1alpha1",
            "kind": "BackendTrafficPolicy",
            "metadata": self._metadata(model, rate_limit_policy_name(model.tenant_id, model.model_name)),
            "spec": {
                "targetRefs": [self._route_target(model)],
                "rateLimit": {"type": "Global", "global": {"rules": rules}},
            },
        }


def synthesize(
    model: PublishedModel,
    descriptor: ModelDescriptor,
    settings: Optional[GatewaySettings] = None,
) -> ExternalPolicySet:
    """Convenience wrapper around ``PolicySynthesizer.synthesize``."""
    return PolicySynthesizer(settings).synthesize(model, descriptor)
