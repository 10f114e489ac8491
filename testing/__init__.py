"""Fixtures and utilities for tests in tests/*."""
