"""Fixtures and helpers for tests in tests/*."""
