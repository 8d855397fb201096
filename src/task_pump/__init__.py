"""Persisted priority task queue pumped from request-driven host processes."""

__version__ = "0.1.0"
