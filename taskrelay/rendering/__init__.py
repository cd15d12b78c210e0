"""Rendering of issue bodies and worker command comments."""
