"""
Step 2 — build dependencies and the Go toolchain.

Go is only installed when missing or older than ``min_go_version``
(numeric major.minor, so 1.9 < 1.21).
"""

from __future__ import annotations

import logging
import re
import shutil
from typing import TYPE_CHECKING

from exitnode.core.errors import UnsupportedPlatformError
from exitnode.core.models.documents import GO_PROFILE
from exitnode.core.models.pipeline import PipelineState
from exitnode.core.persistence.atomic import matches, write_atomic
from exitnode.core.services.host import ARM32_ARCHES, ARM64_ARCHES, detect_arch, version_at_least
from exitnode.core.steps.base import Step
from exitnode.core.steps.system import APT_ENV

if TYPE_CHECKING:
    from exitnode.core.engine.session import Session

logger = logging.getLogger(__name__)

BUILD_PACKAGES = ("git", "curl", "wget", "jq", "build-essential", "ca-certificates", "gnupg")
REQUIRED_TOOLS = ("git", "jq", "curl")

GO_DOWNLOAD_URL = "https://go.dev/dl/{tarball}"

_GO_VERSION_RE = re.compile(r"go(\d+)\.(\d+)")


def parse_go_version(text: str | None) -> tuple[int, int] | None:
    """``go version go1.23.5 linux/arm64`` → (1, 23)."""
    if not text:
        return None
    match = _GO_VERSION_RE.search(text)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


def go_arch(machine: str) -> str | None:
    """Go release architecture for a ``uname -m`` value."""
    if machine in ARM64_ARCHES:
        return "arm64"
    if machine in ARM32_ARCHES:
        return "armv6l"
    if machine == "x86_64":
        return "amd64"
    return None


def installed_go_version(session: Session) -> tuple[int, int] | None:
    """Version of the Go toolchain in /usr/local/go, else the one on PATH."""
    commands = session.commands
    go_bin = session.context.go_bin
    out = commands.output([go_bin, "version"]) if go_bin.is_file() else None
    if out is None:
        out = commands.output(["go", "version"])
    return parse_go_version(out)


class InstallDepsStep(Step):
    name = "install-deps"
    title = "Install build dependencies and Go"
    order = 2
    requires = PipelineState.SYSTEM_PREPARED
    produces = PipelineState.DEPENDENCIES_INSTALLED
    done_message = "Toolchain ready"

    def is_done(self, session: Session) -> bool:
        ctx = session.context
        return (
            version_at_least(installed_go_version(session), ctx.min_go_version)
            and matches(ctx.go_profile, GO_PROFILE)
            and not self._missing_tools(session)
        )

    def apply(self, session: Session) -> None:
        ctx = session.context
        commands = session.commands

        commands.run(["apt-get", "install", "-y", *BUILD_PACKAGES], env=APT_ENV)

        found = installed_go_version(session)
        if version_at_least(found, ctx.min_go_version):
            logger.info("Go %d.%d meets the minimum %s", *found, ctx.min_go_version)
        else:
            if found:
                logger.info("Go %d.%d is below %s, upgrading", *found, ctx.min_go_version)
            self._install_go(session)

        if not matches(ctx.go_profile, GO_PROFILE):
            write_atomic(ctx.go_profile, GO_PROFILE, mode=0o755)

        ctx.gopath.mkdir(parents=True, exist_ok=True)
        ctx.gocache.mkdir(parents=True, exist_ok=True)

    def verify(self, session: Session) -> None:
        ctx = session.context
        found = installed_go_version(session)
        self.check(
            version_at_least(found, ctx.min_go_version),
            f"Go toolchain >= {ctx.min_go_version} not available after install",
        )
        missing = self._missing_tools(session)
        self.check(not missing, f"Required tools missing: {', '.join(missing)}")

    def _missing_tools(self, session: Session) -> list[str]:
        return [t for t in REQUIRED_TOOLS if not session.commands.has_command(t)]

    def _install_go(self, session: Session) -> None:
        ctx = session.context
        commands = session.commands

        machine = detect_arch(commands)
        arch = go_arch(machine)
        if arch is None:
            raise UnsupportedPlatformError(self.name, f"No Go release for architecture {machine!r}")

        tarball = f"go{ctx.go_version}.linux-{arch}.tar.gz"
        dest = ctx.path(ctx.build_dir).parent / tarball
        logger.info("Installing Go %s (%s)", ctx.go_version, arch)
        commands.download(GO_DOWNLOAD_URL.format(tarball=tarball), dest, timeout=ctx.download_timeout)
        try:
            shutil.rmtree(ctx.go_root, ignore_errors=True)
            ctx.go_root.parent.mkdir(parents=True, exist_ok=True)
            commands.run(["tar", "-C", ctx.go_root.parent, "-xzf", dest])
        finally:
            dest.unlink(missing_ok=True)
