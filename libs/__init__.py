"""Shared libraries for the model publishing service.

Subpackages:
- ``libs.common``: configuration, logging, authentication, metrics, and events.
- ``libs.publishing_store``: persistence for publication records and credentials.

Usage:
- Import stable, reusable functionality from here to keep service code lean.

Notes:
- Avoid service-specific logic; keep modules cohesive and broadly useful.
"""
