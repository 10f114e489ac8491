"""Utility functions used by the relay server."""
