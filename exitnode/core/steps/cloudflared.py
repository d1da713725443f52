"""
Step 5 — install the cloudflared daemon.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from exitnode.core.errors import ExternalToolError, UnsupportedPlatformError
from exitnode.core.models.pipeline import PipelineState
from exitnode.core.persistence.atomic import file_mode
from exitnode.core.services.host import (
    ARM32_ARCHES,
    ARM64_ARCHES,
    chown,
    detect_arch,
    ensure_system_user,
    user_exists,
)
from exitnode.core.steps.base import Step

if TYPE_CHECKING:
    from exitnode.core.engine.session import Session

logger = logging.getLogger(__name__)

RELEASE_URL = "https://github.com/cloudflare/cloudflared/releases/latest/download/{asset}"
ELF_MAGIC = b"\x7fELF"
CONFIG_DIR_MODE = 0o750


class InstallCloudflaredStep(Step):
    name = "install-cloudflared"
    title = "Install cloudflared"
    order = 5
    requires = PipelineState.CONFIGURED
    produces = PipelineState.TUNNEL_DAEMON_INSTALLED
    done_message = "cloudflared installed"

    def is_done(self, session: Session) -> bool:
        ctx = session.context
        return (
            ctx.cloudflared_bin.is_file()
            and session.commands.succeeds([ctx.cloudflared_bin, "--version"])
            and user_exists(session.commands, ctx.cloudflared_user)
            and file_mode(ctx.path(ctx.cloudflared_config_dir)) == CONFIG_DIR_MODE
        )

    def apply(self, session: Session) -> None:
        ctx = session.context
        commands = session.commands

        asset = self._asset(session)
        ctx.cloudflared_bin.parent.mkdir(parents=True, exist_ok=True)
        download = ctx.cloudflared_bin.with_name(".cloudflared.download")
        commands.download(RELEASE_URL.format(asset=asset), download, timeout=ctx.download_timeout)

        with download.open("rb") as f:
            magic = f.read(4)
        if magic != ELF_MAGIC:
            download.unlink(missing_ok=True)
            raise ExternalToolError(
                self.name,
                "Downloaded cloudflared is not an ELF binary",
                operation=commands.last_operation,
                detail=f"First bytes: {magic!r}",
            )

        os.chmod(download, 0o755)
        os.replace(download, ctx.cloudflared_bin)
        version = commands.run([ctx.cloudflared_bin, "--version"]).output
        logger.info("Installed %s", version or "cloudflared")

        ensure_system_user(commands, ctx.cloudflared_user)
        config_dir = ctx.path(ctx.cloudflared_config_dir)
        config_dir.mkdir(parents=True, exist_ok=True)
        chown(commands, ctx.cloudflared_user, ctx.cloudflared_group, config_dir)
        os.chmod(config_dir, CONFIG_DIR_MODE)

    def verify(self, session: Session) -> None:
        ctx = session.context
        self.check(
            session.commands.succeeds([ctx.cloudflared_bin, "--version"]),
            f"{ctx.cloudflared_bin} does not run",
        )

    def _asset(self, session: Session) -> str:
        machine = detect_arch(session.commands)
        if machine in ARM64_ARCHES:
            return "cloudflared-linux-arm64"
        if machine in ARM32_ARCHES:
            session.warn(f"32-bit ARM ({machine}) detected, installing cloudflared-linux-arm")
            return "cloudflared-linux-arm"
        raise UnsupportedPlatformError(self.name, f"Unsupported architecture for cloudflared: {machine!r}")
