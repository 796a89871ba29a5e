"""Trace and shared schema models."""
