"""Persisted priority task queue with admission-controlled execution."""
