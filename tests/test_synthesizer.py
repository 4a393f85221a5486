"""Tests for gateway policy synthesis."""

import pytest

from app.runtime.errors import ValidationError
from app.runtime.models import (
    AuthenticationConfig,
    ModelDescriptor,
    ModelFramework,
    ModelType,
    ProtocolHint,
    PublishedModel,
    RateLimitConfig,
    default_external_path,
    external_url_for,
)
from app.runtime.synthesizer import GatewaySettings, PolicySynthesizer, synthesize

DESCRIPTOR = ModelDescriptor(
    ready=True,
    internal_url=None,
    declared_framework=ModelFramework.SKLEARN,
    protocol_hint=ProtocolHint.TRADITIONAL,
)


def make_record(model_type=ModelType.TRADITIONAL, **overrides) -> PublishedModel:
    path = overrides.pop("external_path", default_external_path(model_type, "iris"))
    fields = dict(
        tenant_id="tenant-a",
        model_name="iris",
        model_type=model_type,
        external_path=path,
        public_hostname="api.example.com",
        external_url=external_url_for("api.example.com", path),
        backend_hostname="iris-predictor.tenant-a.svc.cluster.local",
    )
    fields.update(overrides)
    return PublishedModel(**fields)


def test_traditional_object_set():
    policy_set = synthesize(make_record(), DESCRIPTOR)

    assert [obj.role for obj in policy_set.objects] == ["route", "backend", "security", "rate-limit"]
    assert [ref.name for ref in policy_set.refs()] == [
        "published-model-tenant-a-iris",
        "published-model-tenant-a-iris-backend",
        "published-model-auth-tenant-a-iris",
        "published-model-rate-limit-tenant-a-iris",
    ]

    route = policy_set.by_role("route").manifest
    assert route["kind"] == "HTTPRoute"
    assert route["spec"]["hostnames"] == ["api.example.com"]
    rule = route["spec"]["rules"][0]
    assert rule["matches"][0]["path"] == {"type": "PathPrefix", "value": "/published/models/iris"}
    rewrite = rule["filters"][0]["urlRewrite"]
    assert rewrite["hostname"] == "iris-predictor.tenant-a.svc.cluster.local"
    assert rewrite["path"]["replaceFullPath"] == "/v1/models/iris:predict"
    assert route["metadata"]["labels"]["framework"] == "sklearn"
    assert route["metadata"]["labels"]["tenant"] == "tenant-a"


def test_openai_object_set():
    record = make_record(ModelType.OPENAI, rate_limiting=RateLimitConfig(tokens_per_hour=50000))
    policy_set = synthesize(record, DESCRIPTOR)

    assert [obj.role for obj in policy_set.objects] == ["route", "backend", "ai-backend", "security", "rate-limit"]
    route = policy_set.by_role("route").manifest
    assert route["kind"] == "AIGatewayRoute"
    paths = [match["path"]["value"] for match in route["spec"]["rules"][0]["matches"]]
    assert paths[0] == "/v1/models/iris"
    assert "/v1/chat/completions" in paths
    for match in route["spec"]["rules"][0]["matches"]:
        assert match["headers"][0] == {"type": "Exact", "name": "x-ai-eg-model", "value": "iris"}

    rules = policy_set.by_role("rate-limit").manifest["spec"]["rateLimit"]["global"]["rules"]
    token_rules = [rule for rule in rules if "cost" in rule]
    assert len(token_rules) == 1
    assert token_rules[0]["limit"] == {"requests": 50000, "unit": "Hour"}


def test_request_rate_limits():
    record = make_record(rate_limiting=RateLimitConfig(requests_per_minute=5, requests_per_hour=100, burst_limit=0))
    rules = synthesize(record, DESCRIPTOR).by_role("rate-limit").manifest["spec"]["rateLimit"]["global"]["rules"]

    assert [rule["limit"] for rule in rules] == [
        {"requests": 5, "unit": "Minute"},
        {"requests": 100, "unit": "Hour"},
    ]
    assert rules[0]["clientSelectors"] == [{"headers": [{"name": "x-api-key", "type": "Distinct"}]}]
    # Selector lists are independent objects
    assert rules[0]["clientSelectors"] is not rules[1]["clientSelectors"]


def test_traditional_ignores_token_budget():
    record = make_record(rate_limiting=RateLimitConfig(tokens_per_hour=1000))
    rules = synthesize(record, DESCRIPTOR).by_role("rate-limit").manifest["spec"]["rateLimit"]["global"]["rules"]
    assert not any("cost" in rule for rule in rules)


def test_security_policy():
    settings = GatewaySettings(ext_auth_service="publisher", ext_auth_namespace="platform", ext_auth_port=8080)
    policy = PolicySynthesizer(settings).synthesize(make_record(), DESCRIPTOR).by_role("security").manifest

    ext_auth = policy["spec"]["extAuth"]
    assert ext_auth["headersToExtAuth"] == ["x-api-key"]
    assert ext_auth["http"]["backendRefs"] == [{"name": "publisher", "namespace": "platform", "port": 8080}]
    assert ext_auth["http"]["path"] == "/api/validate-api-key/tenant-a/iris"
    assert "authorization" not in policy["spec"]
    assert policy["spec"]["targetRefs"][0]["name"] == "published-model-tenant-a-iris"


def test_allowed_tenants_and_keyless_access():
    record = make_record(authentication=AuthenticationConfig(require_api_key=False, allowed_tenants=["tenant-b", "tenant-a"]))
    policy_set = synthesize(record, DESCRIPTOR)
    spec = policy_set.by_role("security").manifest["spec"]

    assert "extAuth" not in spec
    assert spec["authorization"]["defaultAction"] == "Deny"
    claims = spec["authorization"]["rules"][0]["principal"]["jwt"]["claims"]
    assert claims == [{"name": "tenant", "values": ["tenant-a", "tenant-b"]}]

    rules = policy_set.by_role("rate-limit").manifest["spec"]["rateLimit"]["global"]["rules"]
    assert all(rule["clientSelectors"] == [] for rule in rules)


def test_synthesis_is_deterministic():
    first = synthesize(make_record(), DESCRIPTOR)
    second = synthesize(make_record(), DESCRIPTOR)
    assert first.digest() == second.digest()

    changed = synthesize(make_record(rate_limiting=RateLimitConfig(requests_per_minute=7)), DESCRIPTOR)
    assert changed.digest() != first.digest()
    assert changed.refs() == first.refs()


def test_unresolved_record_is_rejected():
    with pytest.raises(ValidationError):
        synthesize(make_record(ModelType.AUTO, external_path="/x"), DESCRIPTOR)


def test_each_publication_gets_its_own_authorization_path():
    settings = GatewaySettings(ext_auth_path="/api/validate-api-key/")
    synthesizer = PolicySynthesizer(settings)

    paths = {
        synthesizer.synthesize(make_record(tenant_id=tenant, model_name=name), DESCRIPTOR)
        .by_role("security").manifest["spec"]["extAuth"]["http"]["path"]
        for tenant, name in [("tenant-a", "iris"), ("tenant-b", "iris"), ("tenant-a", "wine")]
    }
    assert paths == {
        "/api/validate-api-key/tenant-a/iris",
        "/api/validate-api-key/tenant-b/iris",
        "/api/validate-api-key/tenant-a/wine",
    }
