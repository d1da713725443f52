"""Core provisioning engine."""
