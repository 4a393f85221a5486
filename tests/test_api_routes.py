"""HTTP tests for the publishing API."""

import httpx
import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from app.main import app
from app.runtime.documentation import DocumentationGenerator
from app.runtime.synthesizer import security_policy_name
from libs.common.auth import AuthManager, InternalAuthManager
from libs.common.config import PublishingConfig
from libs.common.metrics import MetricsCollector
from libs.common.security import SecurityHeaders

SECRET = "test-secret"
auth = AuthManager(SECRET)


def bearer(token: str):
    return {"Authorization": f"Bearer {token}"}


def tenant_headers(tenant: str = "tenant-a"):
    return bearer(auth.create_access_token({"sub": f"user-{tenant}", "tenant": tenant}))


def admin_headers():
    return bearer(auth.create_access_token({"sub": "root", "isAdmin": True}))


@pytest.fixture
def api_app(reconciler, store):
    app.state.config = PublishingConfig()
    app.state.store = store
    app.state.control_plane = reconciler.control_plane
    app.state.reconciler = reconciler
    app.state.documentation_generator = DocumentationGenerator()
    app.state.metrics_collector = MetricsCollector("test", registry=CollectorRegistry())
    app.state.auth_manager = auth
    app.state.internal_auth_manager = InternalAuthManager(SECRET)
    return app


@pytest_asyncio.fixture
async def client(api_app):
    transport = httpx.ASGITransport(app=api_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://publishing.test") as client:
        yield client


async def publish(client, model="sklearn-iris", headers=None, **config):
    return await client.post(
        f"/api/models/{model}/publish",
        json={"config": config},
        headers=headers or tenant_headers(),
    )


@pytest.mark.asyncio
async def test_publish_returns_key_once(client):
    response = await publish(client)

    assert response.status_code == 201
    body = response.json()
    api_key = body["apiKey"]
    assert api_key
    assert body["publishedModel"]["tenantId"] == "tenant-a"
    assert body["publishedModel"]["status"] == "active"
    assert body["publishedModel"]["rateLimiting"]["requestsPerMinute"] == 60

    fetched = await client.get("/api/models/sklearn-iris/publish", headers=tenant_headers())
    assert fetched.status_code == 200
    assert api_key not in fetched.text
    assert "apiKey" not in fetched.json()["publishedModel"]

    updated = await client.put(
        "/api/models/sklearn-iris/publish",
        json={"config": {"rateLimiting": {"requestsPerMinute": 10}}},
        headers=tenant_headers(),
    )
    assert updated.status_code == 200
    assert updated.json()["apiKey"] is None
    assert api_key not in updated.text
    assert updated.json()["publishedModel"]["rateLimiting"]["requestsPerMinute"] == 10


@pytest.mark.asyncio
async def test_identical_republish_returns_200_without_key(client):
    await publish(client)
    again = await publish(client)
    assert again.status_code == 200
    assert again.json()["apiKey"] is None


@pytest.mark.asyncio
async def test_conflicting_republish(client):
    await publish(client)
    response = await publish(client, rateLimiting={"requestsPerMinute": 1})
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_validation_errors_are_400(client):
    response = await publish(client, rateLimiting={"requestsPerMinute": -1})
    assert response.status_code == 400
    assert response.json()["error"] == "validation"

    response = await publish(client, rateLimiting={"requestsPerMinute": 500, "requestsPerHour": 100})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_cross_tenant_access_is_forbidden(client):
    await publish(client)

    response = await client.get("/api/models/sklearn-iris/publish?tenantId=tenant-a", headers=tenant_headers("tenant-b"))
    assert response.status_code == 403
    assert response.json() == {"error": "authorization", "detail": "Access denied: cannot act on another tenant"}

    response = await client.delete("/api/models/sklearn-iris/publish?tenantId=tenant-a", headers=tenant_headers("tenant-b"))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(client):
    response = await client.get("/api/published-models")
    assert response.status_code in (401, 403)

    response = await client.get("/api/published-models", headers=bearer("garbage"))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unpublish_then_republish(client):
    first = (await publish(client)).json()["apiKey"]

    response = await client.delete("/api/models/sklearn-iris/publish", headers=tenant_headers())
    assert response.status_code == 200

    missing = await client.get("/api/models/sklearn-iris/publish", headers=tenant_headers())
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"

    second = await publish(client)
    assert second.status_code == 201
    assert second.json()["apiKey"] != first


@pytest.mark.asyncio
async def test_rotate_key_and_gateway_validation(client):
    old_key = (await publish(client)).json()["apiKey"]
    hook = "/api/validate-api-key/tenant-a/sklearn-iris/published/models/sklearn-iris"

    ok = await client.post(hook, headers={"x-api-key": old_key})
    assert ok.status_code == 200
    assert ok.json() == {"valid": True, "tenantId": "tenant-a", "modelName": "sklearn-iris"}
    assert ok.headers["x-tenant-id"] == "tenant-a"

    # The original method is forwarded, not only POST
    assert (await client.get(hook, headers={"x-api-key": old_key})).status_code == 200

    rotated = await client.post("/api/models/sklearn-iris/publish/rotate-key", headers=tenant_headers())
    assert rotated.status_code == 200
    body = rotated.json()
    assert body["newApiKey"] != old_key
    assert body["updatedAt"]

    stale = await client.post(hook, headers={"x-api-key": old_key})
    assert stale.status_code == 401
    assert (await client.post(hook, headers={"x-api-key": body["newApiKey"]})).status_code == 200

    scoped = await client.post(
        "/api/validate-api-key",
        headers={"x-api-key": body["newApiKey"], "x-tenant-id": "tenant-a", "x-model-name": "sklearn-iris"},
    )
    assert scoped.status_code == 200

    wrong_model = await client.post(
        "/api/validate-api-key",
        headers={"x-api-key": body["newApiKey"], "x-tenant-id": "tenant-a", "x-model-name": "llama"},
    )
    assert wrong_model.status_code == 401

    # A key alone names no publication
    unscoped = await client.post("/api/validate-api-key", headers={"x-api-key": body["newApiKey"]})
    assert unscoped.status_code == 401
    assert (await client.post("/api/validate-api-key")).status_code == 401
    assert (await client.post(hook)).status_code == 401


@pytest.mark.asyncio
async def test_key_only_authorizes_its_own_publication(client, control_plane):
    iris_key = (await publish(client)).json()["apiKey"]
    llama_key = (await publish(client, model="llama", headers=tenant_headers("tenant-b"))).json()["apiKey"]

    policies = {
        policy["metadata"]["name"]: policy["spec"]["extAuth"]
        for policy in control_plane.objects("SecurityPolicy")
    }
    llama_auth = policies[security_policy_name("tenant-b", "llama")]
    assert llama_auth["headersToExtAuth"] == ["x-api-key"]
    llama_hook = llama_auth["http"]["path"] + "/v1/chat/completions"

    foreign = await client.post(llama_hook, headers={"x-api-key": iris_key})
    assert foreign.status_code == 401
    assert foreign.json()["error"] == "unauthorized"

    own = await client.post(llama_hook, headers={"x-api-key": llama_key})
    assert own.status_code == 200
    assert own.json()["tenantId"] == "tenant-b"
    assert own.json()["modelName"] == "llama"


@pytest.mark.asyncio
async def test_usage_reporting(client):
    await publish(client)
    internal = bearer(InternalAuthManager(SECRET).create_internal_token("ai-gateway"))
    report = {"tenantId": "tenant-a", "modelName": "sklearn-iris", "tokens": 42, "success": True}

    response = await client.post("/api/usage/report", json=report, headers=internal)
    assert response.status_code == 202
    assert response.json() == {"accepted": True}

    rejected = await client.post("/api/usage/report", json=report, headers=tenant_headers())
    assert rejected.status_code == 401

    usage = await client.get("/api/models/sklearn-iris/publish/usage", headers=tenant_headers())
    assert usage.status_code == 200
    assert usage.json()["usage"]["totalRequests"] == 1
    assert usage.json()["usage"]["totalTokens"] == 42


@pytest.mark.asyncio
async def test_documentation_endpoint(client):
    await publish(client)
    response = await client.get("/api/models/sklearn-iris/publish/docs", headers=tenant_headers())

    assert response.status_code == 200
    docs = response.json()["documentation"]
    assert docs["endpointUrl"] == "https://api.example.com/published/models/sklearn-iris"
    assert docs["authHeaders"] == {"X-API-Key": "<your-api-key>"}
    assert docs["exampleRequests"][0]["method"] == "POST"


@pytest.mark.asyncio
async def test_listing(client):
    await publish(client)
    await publish(client, model="llama")
    await publish(client, headers=tenant_headers("tenant-b"))

    own = (await client.get("/api/published-models", headers=tenant_headers())).json()
    assert own["total"] == 2
    assert {m["modelName"] for m in own["publishedModels"]} == {"sklearn-iris", "llama"}

    everything = (await client.get("/api/published-models", headers=admin_headers())).json()
    assert everything["total"] == 3


@pytest.mark.asyncio
async def test_admin_must_name_tenant(client):
    response = await publish(client, headers=admin_headers())
    assert response.status_code == 400

    response = await publish(client, headers=admin_headers(), tenantId="tenant-c")
    assert response.status_code == 201
    assert response.json()["publishedModel"]["tenantId"] == "tenant-c"


@pytest.mark.asyncio
async def test_service_endpoints(client):
    health = await client.get("/health")
    assert health.status_code == 200
    assert health.json()["checks"] == {"store": True, "controlPlane": True}

    await client.get("/")
    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text

    for name, value in SecurityHeaders.get_security_headers().items():
        assert health.headers[name] == value
