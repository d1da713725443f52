"""
Configuration loader — builds the deployment Context.

Sources, lowest precedence first:

    1. Context defaults
    2. deploy.yml (explicit --config path, or /etc/xray-exit/deploy.yml)
    3. Environment variables (XRAY_VERSION, XRAY_PORT, TIMEZONE, CF_API_TOKEN, ...)
    4. Explicit overrides from the CLI (--root)

The result is validated once by pydantic and is immutable afterwards.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from exitnode.core.context import Context

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("/etc/xray-exit/deploy.yml")

# Environment variable → Context field
ENV_VARS: dict[str, str] = {
    "XRAY_VERSION": "xray_version",
    "XRAY_PORT": "xray_port",
    "TIMEZONE": "timezone",
    "CF_API_TOKEN": "api_token",
    "XRAY_EXIT_HOSTNAME": "hostname",
    "XRAY_EXIT_ROOT": "root",
}


class ConfigError(Exception):
    """Raised when the deployment configuration is invalid or unreadable."""


def read_config_file(path: Path) -> dict[str, Any]:
    """Read a deploy.yml mapping.

    Raises:
        ConfigError: If the file is unreadable or not a YAML mapping.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    unknown = sorted(set(data) - set(Context.model_fields))
    if unknown:
        raise ConfigError(f"Unknown settings in {path}: {', '.join(unknown)}")

    return data


def env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    """Pick the documented variables out of an environment. Empty values are ignored."""
    values: dict[str, str] = {}
    for var, field in ENV_VARS.items():
        value = environ.get(var, "").strip()
        if value:
            values[field] = value
    return values


def load_context(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Context:
    """Load and validate the deployment Context.

    Args:
        config_path: Explicit deploy.yml. Must exist when given.
        environ: Environment to read (default: ``os.environ``).
        overrides: Final values that win over every other source.

    Raises:
        ConfigError: On any unreadable or invalid setting.
    """
    data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
        data.update(read_config_file(config_path))
        logger.debug("Loaded settings from %s", config_path)
    elif DEFAULT_CONFIG_FILE.is_file():
        data.update(read_config_file(DEFAULT_CONFIG_FILE))
        logger.debug("Loaded settings from %s", DEFAULT_CONFIG_FILE)

    data.update(env_overrides(os.environ if environ is None else environ))
    data.update({k: v for k, v in (overrides or {}).items() if v is not None})

    try:
        context = Context.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e

    logger.info(
        "Context: xray %s on port %d, root %s", context.xray_version, context.xray_port, context.root
    )
    return context
