"""Persistence: node record, deployment state, run log."""
