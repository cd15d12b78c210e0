"""Shared helpers: logging setup and retry."""
