"""Provisioning engine for a Raspberry Pi Xray exit node behind a Cloudflare Tunnel."""

__version__ = "0.1.0"
