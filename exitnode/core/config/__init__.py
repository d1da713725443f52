"""Configuration loading."""

from exitnode.core.config.loader import ConfigError, load_context

__all__ = ["ConfigError", "load_context"]
