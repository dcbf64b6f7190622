from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Optional

import openstack

from ..util.errors import ConfigError, is_openstack_error

REQUIRED_ENV = ("OS_AUTH_URL", "OS_USERNAME", "OS_PASSWORD", "OS_PROJECT_NAME", "OS_DOMAIN_NAME")


@dataclass(frozen=True)
class AuthContext:
    """
    Holds the resolved control-plane authentication source.
    method is "cloud" when a clouds.yaml entry is used, "env" for OS_* variables.
    """

    method: str
    cloud: Optional[str]
    region: str


class AuthError(RuntimeError):
    pass


def _detect_region(region: Optional[str]) -> Optional[str]:
    return region or os.getenv("OS_REGION_NAME")


def resolve_auth(cloud: Optional[str], region: Optional[str]) -> AuthContext:
    """
    Resolve which credentials to use without contacting the cloud.
    - a region is mandatory (explicit or OS_REGION_NAME)
    - with a cloud name, credentials come from clouds.yaml
    - otherwise the standard OS_* variables must all be present
    """
    resolved_region = _detect_region(region)
    if not resolved_region:
        raise ConfigError("OS_REGION_NAME not set")
    if cloud:
        return AuthContext(method="cloud", cloud=cloud, region=resolved_region)
    missing = [name for name in REQUIRED_ENV if not os.getenv(name)]
    if missing:
        raise ConfigError(f"missing required environment variable: {', '.join(missing)}")
    return AuthContext(method="env", cloud=None, region=resolved_region)


def connect(ctx: AuthContext, api_timeout: Optional[float] = None) -> Any:
    """
    Build an authenticated openstacksdk Connection and verify the identity
    service is reachable. Any failure here is an AuthError.
    """
    kwargs = {"region_name": ctx.region}
    if api_timeout:
        kwargs["api_timeout"] = api_timeout
    try:
        if ctx.cloud:
            conn = openstack.connect(cloud=ctx.cloud, **kwargs)
        else:
            conn = openstack.connect(**kwargs)
        conn.authorize()
    except Exception as e:
        if is_openstack_error(e):
            raise AuthError(f"authentication failed: {e}") from e
        raise
    verify_identity(conn)
    return conn


def verify_identity(conn: Any) -> str:
    """
    Return the identity endpoint, or raise AuthError when the catalog has none.
    """
    try:
        endpoint = conn.endpoint_for("identity")
    except Exception as e:
        if is_openstack_error(e):
            raise AuthError(f"failed to resolve identity v3 endpoint: {e}") from e
        raise
    if not endpoint:
        raise AuthError("identity service not found in service catalog")
    return str(endpoint)
