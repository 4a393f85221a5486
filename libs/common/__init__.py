"""Common utilities shared across services.

Includes:
- ``config``: Pydantic-based service configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers.
- ``events``: Redis pub/sub publishing lifecycle events.
- ``auth``: JWT caller decoding and internal service tokens.
- ``security``: API key generation, hashing and input validation.

Import pattern:
- from libs.common.config import PublishingConfig
- from libs.common.logging import configure_logging
"""
