"""Tests for the model publishing service.

Everything runs against the in-memory store, control plane and model
oracle; no cluster or Redis is needed.
"""
