"""Endpoint helpers for the auth and data APIs (internal)."""
