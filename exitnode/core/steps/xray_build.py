"""
Step 3 — build xray from a pinned Xray-core tag.

Reproducible build (``-trimpath``, stripped, empty build id), then
install with CAP_NET_BIND_SERVICE instead of root, owned by the
dedicated ``xray`` identity.  The build directory is removed whether or
not the build succeeded.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from typing import TYPE_CHECKING

from exitnode.core.errors import ExternalToolError
from exitnode.core.models.pipeline import PipelineState
from exitnode.core.services.host import chown, ensure_system_user, user_exists, version_at_least
from exitnode.core.steps.base import Step
from exitnode.core.steps.toolchain import installed_go_version

if TYPE_CHECKING:
    from pathlib import Path

    from exitnode.core.engine.session import Session

logger = logging.getLogger(__name__)

XRAY_REPO = "https://github.com/XTLS/Xray-core.git"
LDFLAGS = "-s -w -buildid="

_XRAY_VERSION_RE = re.compile(r"Xray (\d+\.\d+\.\d+)")


def parse_xray_version(text: str | None) -> str | None:
    """``Xray 25.12.8 (Xray, Penetrates Everything.) ...`` → ``25.12.8``."""
    if not text:
        return None
    match = _XRAY_VERSION_RE.search(text)
    return match.group(1) if match else None


def installed_xray_version(session: Session) -> str | None:
    xray_bin = session.context.xray_bin
    if not xray_bin.is_file():
        return None
    return parse_xray_version(session.commands.output([xray_bin, "version"]))


class BuildXrayStep(Step):
    name = "build-xray"
    title = "Build and install xray"
    order = 3
    requires = PipelineState.DEPENDENCIES_INSTALLED
    produces = PipelineState.BUILT
    done_message = "xray installed"

    def is_done(self, session: Session) -> bool:
        ctx = session.context
        return (
            installed_xray_version(session) == ctx.version_number
            and user_exists(session.commands, ctx.xray_user)
        )

    def check_preconditions(self, session: Session) -> None:
        ctx = session.context
        self.require(
            version_at_least(installed_go_version(session), ctx.min_go_version),
            f"Go >= {ctx.min_go_version} not installed",
            "install-deps",
        )
        self.require(session.commands.has_command("git"), "git not installed", "install-deps")

    def apply(self, session: Session) -> None:
        ctx = session.context
        build_dir = ctx.path(ctx.build_dir)
        try:
            built = self._build(session, build_dir)
            self._install(session, built)
        finally:
            shutil.rmtree(build_dir, ignore_errors=True)

        ensure_system_user(session.commands, ctx.xray_user)
        chown(
            session.commands,
            ctx.xray_user,
            ctx.xray_group,
            ctx.path(ctx.install_dir),
            ctx.path(ctx.config_dir),
            ctx.path(ctx.log_dir),
            recursive=True,
        )

    def verify(self, session: Session) -> None:
        ctx = session.context
        found = installed_xray_version(session)
        self.check(
            found == ctx.version_number,
            f"Installed xray reports version {found or 'unknown'}, expected {ctx.version_number}",
        )

    def _build(self, session: Session, build_dir: Path) -> Path:
        ctx = session.context
        commands = session.commands

        shutil.rmtree(build_dir, ignore_errors=True)
        build_dir.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Cloning Xray-core %s", ctx.xray_version)
        commands.run(
            ["git", "clone", "--depth=1", "--branch", ctx.xray_version, XRAY_REPO, build_dir],
            timeout=ctx.download_timeout,
        )

        logger.info("Building xray (slow on a Pi: expect several minutes)")
        env = {
            "PATH": f"{ctx.go_bin.parent}:{os.environ.get('PATH', '/usr/bin:/bin')}",
            "GOPATH": str(ctx.gopath),
            "GOCACHE": str(ctx.gocache),
        }
        go = ctx.go_bin if ctx.go_bin.is_file() else "go"
        commands.run(
            [go, "build", "-v", "-o", "xray", "-trimpath", "-ldflags", LDFLAGS, "./main"],
            cwd=build_dir,
            env=env,
            timeout=ctx.build_timeout,
        )

        built = build_dir / "xray"
        if not built.is_file():
            raise ExternalToolError(
                self.name, "go build reported success but produced no binary",
                operation=commands.last_operation,
            )

        description = commands.output(["file", built]) or ""
        if "ARM aarch64" not in description:
            session.warn(f"Unexpected binary architecture: {description.strip() or 'unknown'}")

        version = commands.run([built, "version"]).output
        logger.info("Built %s", version.splitlines()[0] if version else "xray")
        return built

    def _install(self, session: Session, built: Path) -> None:
        ctx = session.context
        target = ctx.xray_bin
        target.parent.mkdir(parents=True, exist_ok=True)

        staging = target.with_name(".xray.new")
        shutil.copyfile(built, staging)
        os.chmod(staging, 0o755)
        os.replace(staging, target)
        os.chmod(target.parent, 0o755)

        if not session.commands.has_command("setcap"):
            session.warn("setcap not available, xray cannot bind privileged ports")
        elif not session.commands.succeeds(["setcap", "cap_net_bind_service=+ep", target]):
            session.warn("Could not set cap_net_bind_service on xray")
