"""Usage documentation for published models.

Built from the publication record alone. The API key is never embedded;
examples carry the ``<your-api-key>`` placeholder instead.
"""

import json
from typing import Dict, List

from pydantic import Field

from .models import CamelModel, ModelType, PublishedModel

API_KEY_PLACEHOLDER = "<your-api-key>"


class ExampleRequest(CamelModel):
    method: str
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: str = ""
    description: str = ""


class ApiDocumentation(CamelModel):
    endpoint_url: str
    model_type: ModelType
    auth_headers: Dict[str, str] = Field(default_factory=dict)
    rate_limits: Dict[str, int] = Field(default_factory=dict)
    example_requests: List[ExampleRequest] = Field(default_factory=list)
    sdk_examples: Dict[str, str] = Field(default_factory=dict)


class DocumentationGenerator:
    """Generates endpoint documentation for a publication."""

    def generate(self, model: PublishedModel) -> ApiDocumentation:
        auth_headers = {"X-API-Key": API_KEY_PLACEHOLDER} if model.authentication.require_api_key else {}
        limits = model.rate_limiting
        rate_limits = {
            "requestsPerMinute": limits.requests_per_minute,
            "requestsPerHour": limits.requests_per_hour,
            "burstLimit": limits.burst_limit,
        }
        if model.model_type == ModelType.OPENAI:
            rate_limits["tokensPerHour"] = limits.tokens_per_hour
            examples = self._openai_requests(model, auth_headers)
            sdk = {"curl": self._openai_curl(model), "python": self._openai_python(model)}
        else:
            examples = self._traditional_requests(model, auth_headers)
            sdk = {"curl": self._traditional_curl(model), "python": self._traditional_python(model)}

        return ApiDocumentation(
            endpoint_url=model.external_url,
            model_type=model.model_type,
            auth_headers=auth_headers,
            rate_limits=rate_limits,
            example_requests=examples,
            sdk_examples=sdk,
        )

    # Traditional predict endpoints

    @staticmethod
    def _predict_body() -> str:
        return json.dumps({"instances": [[1.0, 2.0, 3.0, 4.0]]}, indent=2)

    def _traditional_requests(self, model: PublishedModel, auth_headers: Dict[str, str]) -> List[ExampleRequest]:
        return [
            ExampleRequest(
                method="POST",
                url=model.external_url,
                headers={**auth_headers, "Content-Type": "application/json"},
                body=self._predict_body(),
                description="Prediction request (forwarded to the KServe v1 predict endpoint)",
            )
        ]

    def _traditional_curl(self, model: PublishedModel) -> str:
        auth = f'  -H "X-API-Key: {API_KEY_PLACEHOLDER}" \\\n' if model.authentication.require_api_key else ""
        return (
            f'curl -X POST "{model.external_url}" \\\n'
            f"{auth}"
            '  -H "Content-Type: application/json" \\\n'
            "  -d '{\"instances\": [[1.0, 2.0, 3.0, 4.0]]}'"
        )

    def _traditional_python(self, model: PublishedModel) -> str:
        return "\n".join([
            "import requests",
            "",
            "response = requests.post(",
            f'    "{model.external_url}",',
            f'    headers={{"X-API-Key": "{API_KEY_PLACEHOLDER}"}},',
            '    json={"instances": [[1.0, 2.0, 3.0, 4.0]]},',
            "    timeout=30,",
            ")",
            "response.raise_for_status()",
            'print(response.json()["predictions"])',
        ])

    # OpenAI-compatible endpoints

    def _openai_base(self, model: PublishedModel) -> str:
        return f"https://{model.public_hostname}"

    def _openai_requests(self, model: PublishedModel, auth_headers: Dict[str, str]) -> List[ExampleRequest]:
        headers = {**auth_headers, "Content-Type": "application/json", "x-ai-eg-model": model.model_name}
        base = self._openai_base(model)
        chat = {
            "model": model.model_name,
            "messages": [{"role": "user", "content": "Hello, how are you?"}],
            "max_tokens": 100,
        }
        embeddings = {"model": model.model_name, "input": "The quick brown fox jumps over the lazy dog"}
        return [
            ExampleRequest(
                method="POST",
                url=f"{base}/v1/chat/completions",
                headers=headers,
                body=json.dumps(chat, indent=2),
                description="Chat completion request (OpenAI compatible)",
            ),
            ExampleRequest(
                method="POST",
                url=f"{base}/v1/completions",
                headers=headers,
                body=json.dumps({"model": model.model_name, "prompt": "Once upon a time", "max_tokens": 50}, indent=2),
                description="Text completion request (OpenAI compatible)",
            ),
            ExampleRequest(
                method="POST",
                url=f"{base}/v1/embeddings",
                headers=headers,
                body=json.dumps(embeddings, indent=2),
                description="Embedding request (OpenAI compatible)",
            ),
        ]

    def _openai_curl(self, model: PublishedModel) -> str:
        auth = f'  -H "X-API-Key: {API_KEY_PLACEHOLDER}" \\\n' if model.authentication.require_api_key else ""
        return (
            f'curl -X POST "{self._openai_base(model)}/v1/chat/completions" \\\n'
            f"{auth}"
            f'  -H "x-ai-eg-model: {model.model_name}" \\\n'
            '  -H "Content-Type: application/json" \\\n'
            f"  -d '{{\"model\": \"{model.model_name}\", "
            "\"messages\": [{\"role\": \"user\", \"content\": \"Hello!\"}]}'"
        )

    def _openai_python(self, model: PublishedModel) -> str:
        return "\n".join([
            "from openai import OpenAI",
            "",
            "client = OpenAI(",
            f'    base_url="{self._openai_base(model)}/v1",',
            f'    api_key="{API_KEY_PLACEHOLDER}",',
            f'    default_headers={{"X-API-Key": "{API_KEY_PLACEHOLDER}", "x-ai-eg-model": "{model.model_name}"}},',
            ")",
            "",
            "completion = client.chat.completions.create(",
            f'    model="{model.model_name}",',
            '    messages=[{"role": "user", "content": "Hello!"}],',
            ")",
            "print(completion.choices[0].message.content)",
        ])
