"""Observability: logging setup and node health checks."""
