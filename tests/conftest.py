"""Shared fixtures for publishing tests."""

import pytest

from app.adapters.control_plane import InMemoryControlPlane
from app.adapters.model_oracle import StaticModelOracle
from app.pipelines.retry_handler import CONTROL_PLANE_POLICY, STORE_POLICY, RetryHandler
from app.runtime.api_keys import ApiKeyManager
from app.runtime.models import ModelDescriptor, ModelFramework, ProtocolHint
from app.runtime.reconciler import PublicationReconciler
from app.runtime.synthesizer import PolicySynthesizer
from app.runtime.tenants import TenantResolver
from app.runtime.usage import UsageTracker
from libs.common.auth import CallerIdentity
from libs.common.security import CredentialHasher
from libs.publishing_store.memory import InMemoryPublishingStore

TENANTS = ("tenant-a", "tenant-b", "tenant-c")


def traditional_descriptor(ready: bool = True) -> ModelDescriptor:
    return ModelDescriptor(
        ready=ready,
        internal_url="http://sklearn-iris-predictor.tenant-a.svc.cluster.local",
        declared_framework=ModelFramework.SKLEARN,
        protocol_hint=ProtocolHint.TRADITIONAL,
    )


def openai_descriptor() -> ModelDescriptor:
    return ModelDescriptor(
        ready=True,
        internal_url="http://llama-predictor.tenant-a.svc.cluster.local",
        declared_framework=ModelFramework.HUGGINGFACE,
        protocol_hint=ProtocolHint.OPENAI,
    )


@pytest.fixture
def store():
    return InMemoryPublishingStore()


@pytest.fixture
def control_plane():
    return InMemoryControlPlane()


@pytest.fixture
def oracle():
    models = {}
    for tenant in TENANTS:
        models[(tenant, "sklearn-iris")] = traditional_descriptor()
        models[(tenant, "llama")] = openai_descriptor()
    models[("tenant-a", "warming-up")] = traditional_descriptor(ready=False)
    return StaticModelOracle(models)


@pytest.fixture
def hasher():
    return CredentialHasher(rounds=4)


@pytest.fixture
def api_keys(store, hasher):
    return ApiKeyManager(store, hasher)


@pytest.fixture
def usage():
    return UsageTracker()


@pytest.fixture
def build_reconciler(oracle, hasher):
    """Factory for reconcilers over a given store and control plane."""

    def build(store, control_plane, **overrides):
        options = dict(
            store=store,
            control_plane=control_plane,
            oracle=oracle,
            resolver=TenantResolver(TENANTS),
            api_keys=ApiKeyManager(store, hasher),
            usage=UsageTracker(),
            synthesizer=PolicySynthesizer(),
            default_hostname="api.example.com",
            apply_timeout=2.0,
            control_plane_retry=RetryHandler(CONTROL_PLANE_POLICY.immediate()),
            store_retry=RetryHandler(STORE_POLICY.immediate()),
        )
        options.update(overrides)
        return PublicationReconciler(**options)

    return build


@pytest.fixture
def reconciler(build_reconciler, store, control_plane, api_keys, usage):
    return build_reconciler(store, control_plane, api_keys=api_keys, usage=usage)


@pytest.fixture
def tenant_a():
    return CallerIdentity(tenant_id="tenant-a", subject="user-a")


@pytest.fixture
def tenant_b():
    return CallerIdentity(tenant_id="tenant-b", subject="user-b")


@pytest.fixture
def admin():
    return CallerIdentity(tenant_id="", is_admin=True, subject="root")
