from __future__ import annotations

import types

import pytest

from openstack_tool.auth import providers as auth_providers
from openstack_tool.util.errors import ConfigError

ENV = {
    "OS_AUTH_URL": "https://keystone.example.com:5000/v3",
    "OS_USERNAME": "admin",
    "OS_PASSWORD": "pw",
    "OS_PROJECT_NAME": "admin",
    "OS_DOMAIN_NAME": "Default",
}


class DummySdkError(Exception):
    __module__ = "openstack.exceptions"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in list(ENV) + ["OS_REGION_NAME", "OS_CLOUD"]:
        monkeypatch.delenv(name, raising=False)


def test_region_is_required() -> None:
    with pytest.raises(ConfigError, match="OS_REGION_NAME not set"):
        auth_providers.resolve_auth("prod", None)


def test_env_auth_requires_standard_variables(monkeypatch) -> None:
    monkeypatch.setenv("OS_REGION_NAME", "RegionOne")
    monkeypatch.setenv("OS_AUTH_URL", ENV["OS_AUTH_URL"])

    with pytest.raises(ConfigError) as excinfo:
        auth_providers.resolve_auth(None, None)
    assert "OS_USERNAME" in str(excinfo.value)
    assert "OS_AUTH_URL" not in str(excinfo.value)


def test_env_auth_resolves(monkeypatch) -> None:
    for name, value in ENV.items():
        monkeypatch.setenv(name, value)

    ctx = auth_providers.resolve_auth(None, "RegionTwo")

    assert (ctx.method, ctx.cloud, ctx.region) == ("env", None, "RegionTwo")


def test_cloud_auth_only_needs_region() -> None:
    ctx = auth_providers.resolve_auth("prod", "RegionOne")

    assert (ctx.method, ctx.cloud) == ("cloud", "prod")


def test_connect_maps_sdk_errors(monkeypatch) -> None:
    def _raise(*args, **kwargs):
        raise DummySdkError("401 Unauthorized")

    monkeypatch.setattr(auth_providers, "openstack", types.SimpleNamespace(connect=_raise))
    ctx = auth_providers.AuthContext(method="cloud", cloud="prod", region="RegionOne")

    with pytest.raises(auth_providers.AuthError, match="authentication failed"):
        auth_providers.connect(ctx)


def test_connect_passes_region_and_timeout(monkeypatch) -> None:
    seen = {}
    conn = types.SimpleNamespace(authorize=lambda: "token", endpoint_for=lambda service: "https://keystone/v3")

    def _connect(**kwargs):
        seen.update(kwargs)
        return conn

    monkeypatch.setattr(auth_providers, "openstack", types.SimpleNamespace(connect=_connect))
    ctx = auth_providers.AuthContext(method="cloud", cloud="prod", region="RegionOne")

    assert auth_providers.connect(ctx, api_timeout=42) is conn
    assert seen == {"cloud": "prod", "region_name": "RegionOne", "api_timeout": 42}


def test_verify_identity_requires_catalog_entry() -> None:
    conn = types.SimpleNamespace(endpoint_for=lambda service: None)

    with pytest.raises(auth_providers.AuthError, match="identity service not found"):
        auth_providers.verify_identity(conn)
