"""
Deployment context — every value a provisioning step is allowed to read.

One Context is built before the pipeline starts (see
``exitnode.core.config.loader``) and handed to every step.  It is a
frozen model: a step cannot move a path or a port half way through a run.
Pre-flight may derive a new Context (for example with an API token typed
in by the operator) but only before the first step executes.

Paths are stored as they exist on the target system (``/opt/xray-exit``)
and resolved through ``root`` when touched on the host.  With the default
root of ``/`` the two are identical; a staging root lets the whole tree be
produced inside a scratch directory.  Rendered documents always reference
target paths, commands and file operations always use host paths.
"""

from __future__ import annotations

import re
import socket
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VERSION_TAG_RE = re.compile(r"^v?\d+\.\d+(\.\d+)?$")
_MAJOR_MINOR_RE = re.compile(r"^\d+\.\d+$")


class Context(BaseModel):
    """Immutable configuration for one deployment run."""

    model_config = ConfigDict(frozen=True)

    # ── Versions and network ────────────────────────────────────
    xray_version: str = "v25.12.8"
    xray_port: int = Field(default=10808, ge=1, le=65535)
    timezone: str = "UTC"
    api_token: str | None = Field(default=None, repr=False)
    hostname: str = Field(default_factory=socket.gethostname)

    # ── Identities ──────────────────────────────────────────────
    xray_user: str = "xray"
    xray_group: str = "xray"
    cloudflared_user: str = "cloudflared"
    cloudflared_group: str = "cloudflared"

    # ── Target layout ───────────────────────────────────────────
    root: Path = Path("/")
    home: str = "/root"
    install_dir: str = "/opt/xray-exit"
    config_dir: str = "/etc/xray-exit"
    log_dir: str = "/var/log/xray-exit"
    cloudflared_config_dir: str = "/etc/cloudflared"
    export_dir: str = "/opt/xray-exit/export"
    build_dir: str = "/tmp/xray-build"
    run_log_dir: str = "/tmp"

    # ── Toolchain ───────────────────────────────────────────────
    min_go_version: str = "1.21"
    go_version: str = "1.23.5"

    # ── Guards and timeouts (seconds) ───────────────────────────
    min_free_mb: int = 500
    command_timeout: int = 300
    build_timeout: int = 3600
    download_timeout: int = 600

    @field_validator("xray_version")
    @classmethod
    def _check_version_tag(cls, value: str) -> str:
        if not _VERSION_TAG_RE.match(value):
            raise ValueError(f"not a release tag: {value!r} (expected e.g. v25.12.8)")
        return value

    @field_validator("min_go_version")
    @classmethod
    def _check_min_go(cls, value: str) -> str:
        if not _MAJOR_MINOR_RE.match(value):
            raise ValueError(f"expected major.minor, got {value!r}")
        return value

    @field_validator("hostname")
    @classmethod
    def _check_hostname(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("hostname must not be empty")
        return value

    # ── Path resolution ─────────────────────────────────────────

    def path(self, target: str) -> Path:
        """Resolve a target-system path to where it lives on this host."""
        return self.root / target.lstrip("/")

    @property
    def staged(self) -> bool:
        """Whether managed paths are redirected away from the live system."""
        return self.root != Path("/")

    # Xray

    @property
    def xray_bin_target(self) -> str:
        return f"{self.install_dir}/bin/xray"

    @property
    def xray_bin(self) -> Path:
        return self.path(self.xray_bin_target)

    @property
    def xray_config_target(self) -> str:
        return f"{self.config_dir}/xray.json"

    @property
    def xray_config_file(self) -> Path:
        return self.path(self.xray_config_target)

    @property
    def version_number(self) -> str:
        """Release tag without the leading ``v`` as printed by ``xray version``."""
        return self.xray_version.lstrip("v")

    # Records and state

    @property
    def record_file(self) -> Path:
        return self.path(f"{self.export_dir}/exit_node_info.json")

    @property
    def saved_record_file(self) -> Path:
        return self.path(f"{self.config_dir}/node_info.json")

    @property
    def state_file(self) -> Path:
        return self.path(f"{self.install_dir}/var/state.json")

    # Cloudflared

    @property
    def cloudflared_bin_target(self) -> str:
        return "/usr/local/bin/cloudflared"

    @property
    def cloudflared_bin(self) -> Path:
        return self.path(self.cloudflared_bin_target)

    @property
    def tunnel_config_target(self) -> str:
        return f"{self.cloudflared_config_dir}/config.yml"

    @property
    def tunnel_config_file(self) -> Path:
        return self.path(self.tunnel_config_target)

    @property
    def tunnel_name(self) -> str:
        return f"rpi-exit-{self.hostname}"

    def tunnel_hostname_for(self, tunnel_id: str) -> str:
        return f"{tunnel_id}.cfargotunnel.com"

    def credentials_target(self, tunnel_id: str) -> str:
        return f"{self.cloudflared_config_dir}/{tunnel_id}.json"

    def credentials_candidates(self, tunnel_id: str) -> list[Path]:
        """Where ``cloudflared tunnel create`` may have left the credentials."""
        candidates = [
            self.path(f"{self.home}/.cloudflared/{tunnel_id}.json"),
            self.path(f"/root/.cloudflared/{tunnel_id}.json"),
        ]
        return list(dict.fromkeys(candidates))

    # System files

    def unit_file(self, unit: str) -> Path:
        return self.path(f"/etc/systemd/system/{unit}")

    @property
    def sysctl_file(self) -> Path:
        return self.path("/etc/sysctl.d/99-xray-exit.conf")

    @property
    def logrotate_file(self) -> Path:
        return self.path("/etc/logrotate.d/xray-exit")

    @property
    def wifi_hook_file(self) -> Path:
        return self.path("/etc/network/if-up.d/disable-wifi-powersave")

    # Go

    @property
    def go_root(self) -> Path:
        return self.path("/usr/local/go")

    @property
    def go_bin(self) -> Path:
        return self.go_root / "bin" / "go"

    @property
    def go_profile(self) -> Path:
        return self.path("/etc/profile.d/go.sh")

    @property
    def gopath(self) -> Path:
        return self.path(f"{self.home}/.go")

    @property
    def gocache(self) -> Path:
        return self.path(f"{self.home}/.cache/go-build")

    # Directory sets

    @property
    def managed_dirs(self) -> list[Path]:
        """Directories the system preparation step creates."""
        return [
            self.path(f"{self.install_dir}/bin"),
            self.path(f"{self.install_dir}/var"),
            self.path(self.config_dir),
            self.path(self.log_dir),
            self.path(self.cloudflared_config_dir),
            self.path(self.export_dir),
        ]

    @property
    def removable_dirs(self) -> list[Path]:
        """Directories the uninstaller deletes."""
        return [
            self.path(self.install_dir),
            self.path(self.config_dir),
            self.path(self.log_dir),
            self.path(self.cloudflared_config_dir),
            self.path(self.build_dir),
            self.path("/root/.cloudflared"),
        ]

    # ── Derivation ──────────────────────────────────────────────

    def with_token(self, token: str) -> Context:
        """Copy of this context carrying an API token."""
        return self.model_copy(update={"api_token": token})

    def redacted(self) -> dict[str, Any]:
        """Serializable view with the API token masked."""
        data = self.model_dump(mode="json")
        data["api_token"] = "***" if self.api_token else None
        return data
