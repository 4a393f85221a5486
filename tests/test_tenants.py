"""Tests for tenant resolution."""

import pytest

from app.runtime.errors import AuthorizationError, NotFoundError, ValidationError
from app.runtime.tenants import TenantResolver
from libs.common.auth import CallerIdentity

resolver = TenantResolver(["tenant-a", "tenant-b"])


def test_caller_defaults_to_own_tenant():
    caller = CallerIdentity(tenant_id="tenant-a")
    assert resolver.resolve_tenant(caller, None) == "tenant-a"
    assert resolver.resolve_tenant(caller, "") == "tenant-a"
    assert resolver.resolve_tenant(caller, "tenant-a") == "tenant-a"


def test_cross_tenant_access_is_denied():
    caller = CallerIdentity(tenant_id="tenant-a")
    with pytest.raises(AuthorizationError) as exc:
        resolver.resolve_tenant(caller, "tenant-b")
    assert exc.value.status_code == 403


def test_admin_must_name_a_known_tenant():
    admin = CallerIdentity(tenant_id="", is_admin=True)
    assert resolver.resolve_tenant(admin, "tenant-b") == "tenant-b"

    with pytest.raises(ValidationError):
        resolver.resolve_tenant(admin, None)
    with pytest.raises(NotFoundError):
        resolver.resolve_tenant(admin, "tenant-z")


def test_visible_tenant():
    assert resolver.visible_tenant(CallerIdentity(tenant_id="tenant-a")) == "tenant-a"
    assert resolver.visible_tenant(CallerIdentity(tenant_id="", is_admin=True)) is None
