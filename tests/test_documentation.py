"""Tests for usage documentation generation."""

import json

from app.runtime.documentation import API_KEY_PLACEHOLDER, DocumentationGenerator
from app.runtime.models import AuthenticationConfig, ModelType, RateLimitConfig
from tests.test_synthesizer import make_record

generator = DocumentationGenerator()


def test_traditional_documentation():
    docs = generator.generate(make_record())

    assert docs.endpoint_url == "https://api.example.com/published/models/iris"
    assert docs.auth_headers == {"X-API-Key": API_KEY_PLACEHOLDER}
    assert "tokensPerHour" not in docs.rate_limits
    request = docs.example_requests[0]
    assert request.method == "POST"
    assert request.url == docs.endpoint_url
    assert json.loads(request.body) == {"instances": [[1.0, 2.0, 3.0, 4.0]]}
    assert set(docs.sdk_examples) == {"curl", "python"}
    assert API_KEY_PLACEHOLDER in docs.sdk_examples["curl"]


def test_openai_documentation():
    record = make_record(ModelType.OPENAI, rate_limiting=RateLimitConfig(tokens_per_hour=1000))
    docs = generator.generate(record)

    urls = [request.url for request in docs.example_requests]
    assert "https://api.example.com/v1/chat/completions" in urls
    assert "https://api.example.com/v1/embeddings" in urls
    chat = docs.example_requests[0]
    assert chat.headers["x-ai-eg-model"] == "iris"
    assert json.loads(chat.body)["model"] == "iris"
    assert docs.rate_limits["tokensPerHour"] == 1000
    assert "from openai import OpenAI" in docs.sdk_examples["python"]


def test_keyless_documentation_has_no_auth_header():
    docs = generator.generate(make_record(authentication=AuthenticationConfig(require_api_key=False)))
    assert docs.auth_headers == {}
    assert "X-API-Key" not in docs.sdk_examples["curl"]


def test_documentation_serializes_camel_case():
    payload = generator.generate(make_record()).model_dump(mode="json", by_alias=True)
    assert set(payload) == {"endpointUrl", "modelType", "authHeaders", "rateLimits", "exampleRequests", "sdkExamples"}
