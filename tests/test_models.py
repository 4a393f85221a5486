"""Tests for publication data models and validation rules."""

import pytest
from pydantic import ValidationError as SchemaError

from app.runtime.errors import ValidationError
from app.runtime.models import (
    AuthenticationConfig,
    ModelType,
    PublishConfig,
    PublishRequest,
    PublishedModel,
    RateLimitConfig,
    validate_resolved,
)
from tests.test_synthesizer import make_record


def test_publish_request_uses_camel_case():
    request = PublishRequest.model_validate({
        "config": {
            "tenantId": "tenant-a",
            "modelType": "openai",
            "externalPath": "/llm",
            "rateLimiting": {"requestsPerMinute": 10, "tokensPerHour": 500},
            "authentication": {"allowedTenants": ["b", "a", "a"]},
        }
    })
    config = request.config
    assert config.tenant_id == "tenant-a"
    assert config.model_type == ModelType.OPENAI
    assert config.rate_limiting.requests_per_minute == 10
    assert config.rate_limiting.requests_per_hour == 1000
    assert config.authentication.allowed_tenants == ["a", "b"]
    assert config.model_fields_set == {"tenant_id", "model_type", "external_path", "rate_limiting", "authentication"}


def test_defaults():
    config = PublishConfig()
    assert config.model_type == ModelType.AUTO
    assert config.rate_limiting == RateLimitConfig(
        requests_per_minute=60, requests_per_hour=1000, tokens_per_hour=0, burst_limit=10
    )
    assert config.authentication == AuthenticationConfig(require_api_key=True, allowed_tenants=[])


def test_negative_limits_are_rejected_at_parse_time():
    with pytest.raises(SchemaError):
        RateLimitConfig(requests_per_minute=-1)


@pytest.mark.parametrize("overrides,message", [
    ({"external_path": "no-slash"}, "externalPath"),
    ({"external_path": "/with space"}, "externalPath"),
    ({"public_hostname": "https://api.example.com"}, "publicHostname"),
    ({"public_hostname": ""}, "publicHostname"),
    ({"rate_limiting": RateLimitConfig(requests_per_minute=0)}, "requestsPerMinute"),
    ({"rate_limiting": RateLimitConfig(requests_per_hour=0)}, "requestsPerHour"),
    ({"rate_limiting": RateLimitConfig(requests_per_minute=100, requests_per_hour=50)}, "cannot exceed"),
])
def test_validate_resolved_rules(overrides, message):
    with pytest.raises(ValidationError) as exc:
        validate_resolved(make_record(**overrides))
    assert message in exc.value.reason


def test_equal_rate_limits_are_valid():
    validate_resolved(make_record(rate_limiting=RateLimitConfig(requests_per_minute=60, requests_per_hour=60)))


def test_document_round_trip_preserves_record():
    record = make_record(metadata={"owner": "ml"}, warnings=["w"])
    document = record.to_document()

    assert document["tenantId"] == "tenant-a"
    assert document["rateLimiting"]["requestsPerMinute"] == 60
    assert "apiKey" not in document
    assert PublishedModel.from_document(document) == record
