"""Publishing store adapters and utilities.

Primary components:
- ``base``: abstract ``PublishingStore`` interface and common exceptions.
- ``memory``: process-local implementation for tests and local development.
- ``redis_store``: Redis implementation; the durable default.
- ``factory``: helpers to construct a store from typed config.

Guidance:
- Records are plain JSON-compatible dictionaries keyed by
  ``(tenant_id, model_name)``; callers own the schema.
- Prefer constructing via ``factory.create_publishing_store`` so runtime
  services remain decoupled from specific backends.
"""
