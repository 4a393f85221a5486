"""Configuration management for the model publishing service.

This module centralizes environment-driven configuration for the publishing
service and the shared libraries it uses. It builds on
``pydantic_settings.BaseSettings`` so configuration can be provided via
environment variables, ``.env`` files, or defaults.

Highlights
- Strongly-typed settings with sensible defaults
- One place to discover commonly used environment variables
- Retry and timeout knobs for the reconciler live next to the endpoints they
  protect

Usage
- Inject the config in the service entrypoint:
  ``config = PublishingConfig()``
- Or select dynamically: ``config = get_config("publishing")``
"""

import os
from typing import Any, Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class shared by platform services.

    Parameters are read from the process environment with the given names.
    Defaults keep local development convenient while still being explicit.

    Notes
    - Add new shared settings here so downstream services inherit them.
    - Prefer ``Field(..., validation_alias="NAME")`` over reading
      ``os.environ`` directly.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    ml_env: str = Field(default="local", validation_alias="ML_ENV")

    # Redis
    ml_redis_url: str = Field(default="redis://localhost:6379", validation_alias="ML_REDIS_URL")

    # Logging
    ml_log_level: str = Field(default="INFO", validation_alias="ML_LOG_LEVEL")
    ml_log_format: str = Field(default="json", validation_alias="ML_LOG_FORMAT")

    # Security
    ml_jwt_secret_key: str = Field(default="dev-secret-key-change-in-production", validation_alias="ML_JWT_SECRET_KEY")
    ml_jwt_algorithm: str = Field(default="HS256", validation_alias="ML_JWT_ALGORITHM")
    ml_jwt_tenant_claim: str = Field(default="tenant", validation_alias="ML_JWT_TENANT_CLAIM")


class PublishingConfig(BaseConfig):
    """Configuration for the model publishing service.

    Extends ``BaseConfig`` with the gateway topology the synthesized policy
    objects refer to, the store backend, and reconciler retry budgets.
    """

    ml_publishing_port: int = Field(default=9010, validation_alias="ML_PUBLISHING_PORT")

    # Tenancy: comma-separated list of tenant namespaces
    ml_publishing_tenants: str = Field(default="tenant-a,tenant-b,tenant-c", validation_alias="ML_PUBLISHING_TENANTS")

    # Gateway topology
    ml_publishing_default_hostname: str = Field(
        default="api.router.inference-in-a-box", validation_alias="ML_PUBLISHING_DEFAULT_HOSTNAME"
    )
    ml_publishing_gateway_name: str = Field(default="ai-inference-gateway", validation_alias="ML_PUBLISHING_GATEWAY_NAME")
    ml_publishing_gateway_namespace: str = Field(
        default="envoy-gateway-system", validation_alias="ML_PUBLISHING_GATEWAY_NAMESPACE"
    )
    ml_publishing_cluster_domain: str = Field(default="svc.cluster.local", validation_alias="ML_PUBLISHING_CLUSTER_DOMAIN")
    ml_publishing_ext_auth_service: str = Field(
        default="model-publishing", validation_alias="ML_PUBLISHING_EXT_AUTH_SERVICE"
    )
    ml_publishing_ext_auth_namespace: str = Field(
        default="platform-system", validation_alias="ML_PUBLISHING_EXT_AUTH_NAMESPACE"
    )
    ml_publishing_ext_auth_port: int = Field(default=9010, validation_alias="ML_PUBLISHING_EXT_AUTH_PORT")
    ml_publishing_jwks_uri: str = Field(
        default="http://jwt-server.default.svc.cluster.local:8080/.well-known/jwks.json",
        validation_alias="ML_PUBLISHING_JWKS_URI",
    )

    # Control plane
    ml_publishing_control_plane: str = Field(default="kubernetes", validation_alias="ML_PUBLISHING_CONTROL_PLANE")
    ml_publishing_kubeconfig: str = Field(default="", validation_alias="ML_PUBLISHING_KUBECONFIG")
    ml_publishing_in_cluster: bool = Field(default=False, validation_alias="ML_PUBLISHING_IN_CLUSTER")
    ml_publishing_apply_timeout_seconds: float = Field(
        default=15.0, validation_alias="ML_PUBLISHING_APPLY_TIMEOUT_SECONDS"
    )
    ml_publishing_apply_max_attempts: int = Field(default=3, validation_alias="ML_PUBLISHING_APPLY_MAX_ATTEMPTS")

    # Store
    ml_publishing_store_backend: str = Field(default="redis", validation_alias="ML_PUBLISHING_STORE_BACKEND")
    ml_publishing_store_prefix: str = Field(default="publishing", validation_alias="ML_PUBLISHING_STORE_PREFIX")
    ml_publishing_store_max_attempts: int = Field(default=6, validation_alias="ML_PUBLISHING_STORE_MAX_ATTEMPTS")

    # Credentials
    ml_publishing_api_key_hash_scheme: str = Field(
        default="bcrypt", validation_alias="ML_PUBLISHING_API_KEY_HASH_SCHEME"
    )
    ml_publishing_api_key_hash_rounds: int = Field(
        default=12, ge=4, le=31, validation_alias="ML_PUBLISHING_API_KEY_HASH_ROUNDS"
    )

    # Background reconciliation; 0 disables the loop
    ml_publishing_reconcile_interval_seconds: float = Field(
        default=60.0, validation_alias="ML_PUBLISHING_RECONCILE_INTERVAL_SECONDS"
    )

    # Events
    ml_publishing_events_enabled: bool = Field(default=True, validation_alias="ML_PUBLISHING_EVENTS_ENABLED")

    @property
    def tenant_list(self) -> List[str]:
        """Known tenant namespaces, in configured order."""
        return [item.strip() for item in self.ml_publishing_tenants.split(",") if item.strip()]


def get_config(service_name: str) -> BaseConfig:
    """Get configuration for a specific service.

    Parameters
    - service_name: Literal name, currently only ``publishing``.

    Returns
    - A concrete ``BaseConfig`` subclass pre-wired to read the right env vars.
    """
    config_map = {
        "publishing": PublishingConfig,
    }

    # Default to ``BaseConfig`` to avoid surprising crashes for unknown names.
    config_class = config_map.get(service_name, BaseConfig)
    return config_class()


def load_env_file(env_file: str = ".env") -> Dict[str, Any]:
    """Load environment variables from a file.

    This helper parses a simple ``KEY=VALUE`` file, ignoring blank lines and
    comments. It does not modify the process environment; callers can decide
    whether to merge or just inspect values.
    """
    env_vars = {}
    if os.path.exists(env_file):
        with open(env_file, "r") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    env_vars[key] = value
    return env_vars
