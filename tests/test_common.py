"""Tests for common utilities."""

import json
from datetime import timedelta

import pytest
from fastapi import HTTPException

from libs.common.auth import AuthManager, InternalAuthManager
from libs.common.config import PublishingConfig, get_config
from libs.common.events import EventPublisher, EventType
from libs.common.logging import configure_logging
from libs.common.metrics import MetricsCollector
from libs.common.security import CredentialHasher, InputSanitizer, generate_api_key, key_id_for


class FakeRedis:
    """Records publish calls; fails the first ``failures`` of them."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.published = []

    async def publish(self, channel, message):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("redis down")
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        return None


def test_config_defaults():
    """Test publishing configuration defaults."""
    config = PublishingConfig()
    assert config.ml_publishing_port == 9010
    assert config.ml_publishing_apply_max_attempts == 3
    assert config.ml_publishing_store_max_attempts == 6
    assert config.tenant_list == ["tenant-a", "tenant-b", "tenant-c"]


def test_config_from_environment(monkeypatch):
    """Tenants are read from a comma-separated variable."""
    monkeypatch.setenv("ML_PUBLISHING_TENANTS", " team-x , team-y,,")
    monkeypatch.setenv("ML_PUBLISHING_CONTROL_PLANE", "memory")
    config = get_config("publishing")
    assert isinstance(config, PublishingConfig)
    assert config.tenant_list == ["team-x", "team-y"]
    assert config.ml_publishing_control_plane == "memory"


def test_logging_configuration():
    """Test logging configuration."""
    # This should not raise an exception
    configure_logging("test-service", "INFO", "json")
    configure_logging("test-service", "DEBUG", "console")


def test_metrics_collector():
    """Test metrics collector."""
    collector = MetricsCollector("test-service")
    assert collector.service_name == "test-service"

    collector.record_http_request("GET", "/api/published-models", 200, 0.1)
    collector.record_operation("publish", "success", 0.05)
    collector.record_control_plane_call("apply", "HTTPRoute", "success")
    collector.set_published_models("active", 3)
    collector.record_api_key_validation(False)

    metrics = collector.get_metrics()
    assert "http_requests_total" in metrics
    assert 'publishing_operations_total{operation="publish",outcome="success"} 1.0' in metrics
    assert 'publishing_published_models{status="active"} 3.0' in metrics
    assert 'publishing_api_key_validations_total{result="invalid"} 1.0' in metrics


def test_auth_manager_identifies_tenant_and_admin():
    """Tenant and admin claims map onto caller identities."""
    auth = AuthManager("secret")

    caller = auth.identify(auth.create_access_token({"sub": "alice", "tenant": "tenant-a"}))
    assert caller.tenant_id == "tenant-a"
    assert not caller.is_admin
    assert caller.actor == "tenant-a"

    admin = auth.identify(auth.create_access_token({"sub": "root", "isAdmin": True}))
    assert admin.is_admin
    assert admin.actor == "admin"

    by_role = auth.identify(auth.create_access_token({"sub": "ops", "role": "platform-admin"}))
    assert by_role.is_admin


def test_auth_manager_rejects_bad_tokens():
    auth = AuthManager("secret")

    with pytest.raises(HTTPException) as exc:
        auth.identify(auth.create_access_token({"sub": "x"}))
    assert exc.value.status_code == 401

    expired = auth.create_access_token({"tenant": "tenant-a"}, expires_delta=timedelta(seconds=-5))
    with pytest.raises(HTTPException) as exc:
        auth.identify(expired)
    assert exc.value.detail == "Token has expired"

    with pytest.raises(HTTPException):
        AuthManager("other-secret").identify(auth.create_access_token({"tenant": "tenant-a"}))


def test_internal_tokens():
    internal = InternalAuthManager("secret")
    payload = internal.verify_internal_token(internal.create_internal_token("gateway"))
    assert payload["service"] == "gateway"

    # A tenant token signed with the same key is not an internal token
    tenant_token = AuthManager("secret").create_access_token({"tenant": "tenant-a"})
    with pytest.raises(HTTPException):
        internal.verify_internal_token(tenant_token)


def test_credential_hasher():
    """Hashes verify the right key only and never equal the plaintext."""
    hasher = CredentialHasher(rounds=4)
    key = generate_api_key()
    digest = hasher.digest(key)

    assert digest != key
    assert digest.startswith("$2b$04$")
    assert hasher.verify(key, digest)
    assert not hasher.verify(key + "x", digest)
    assert not hasher.verify("", digest)
    assert not hasher.verify(key, "not-a-hash")

    # Salted: the same key hashes differently each time
    assert hasher.digest(key) != digest


def test_generated_keys_are_unique():
    keys = {generate_api_key() for _ in range(50)}
    assert len(keys) == 50
    assert all(len(key) >= 40 for key in keys)
    assert len({key_id_for(key) for key in keys}) == 50


def test_input_sanitizer():
    sanitizer = InputSanitizer()
    assert sanitizer.validate_resource_name("sklearn-iris") == "sklearn-iris"

    for bad in ("", "Upper", "-leading", "trailing-", "has_underscore", "a" * 64):
        with pytest.raises(ValueError):
            sanitizer.validate_resource_name(bad)

    cleaned = sanitizer.sanitize_metadata({"owner": "team\x00a", "b": 1})
    assert cleaned == {"b": "1", "owner": "teama"}


@pytest.mark.asyncio
async def test_event_publisher_publishes_lifecycle_events():
    """Events go to a per-type channel and carry no key material."""
    client = FakeRedis()
    publisher = EventPublisher("redis://unused", client=client)

    published = await publisher.publish_lifecycle(
        EventType.MODEL_PUBLISHED,
        tenant_id="tenant-a",
        model_name="sklearn-iris",
        actor="tenant-a",
        external_url="https://api.example.com/published/models/sklearn-iris",
    )

    assert published
    channel, message = client.published[0]
    assert channel == "ml_events:model.published.v1"
    payload = json.loads(message)
    assert payload["tenant_id"] == "tenant-a"
    assert payload["actor"] == "tenant-a"
    assert "api_key" not in payload


@pytest.mark.asyncio
async def test_event_publisher_retries_then_gives_up():
    client = FakeRedis(failures=1)
    publisher = EventPublisher("redis://unused", client=client, base_delay=0.0)
    assert await publisher.publish_lifecycle(EventType.MODEL_UPDATED, "tenant-a", "m", "tenant-a")
    assert len(client.published) == 1

    failing = EventPublisher("redis://unused", client=FakeRedis(failures=10), max_retries=2, base_delay=0.0)
    assert not await failing.publish_lifecycle(EventType.MODEL_UPDATED, "tenant-a", "m", "tenant-a")


@pytest.mark.asyncio
async def test_disabled_event_publisher():
    publisher = EventPublisher("redis://unused", enabled=False)
    assert not await publisher.publish_lifecycle(EventType.MODEL_UNPUBLISHED, "tenant-a", "m", "admin")
    await publisher.close()
