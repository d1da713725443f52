"""
Step 1 — system preparation.

OS upgrade, essential packages, timezone, network tuning, directories,
log rotation.  Power tweaks (bluetooth, WiFi power save, CPU governor)
are best effort: their failures are warnings.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from exitnode.core.models.documents import WIFI_POWERSAVE_HOOK, render_logrotate, render_sysctl
from exitnode.core.models.pipeline import PipelineState
from exitnode.core.persistence.atomic import matches, write_atomic
from exitnode.core.services import systemd
from exitnode.core.steps.base import Step

if TYPE_CHECKING:
    from exitnode.core.engine.session import Session

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

ESSENTIAL_PACKAGES = (
    "apt-transport-https",
    "ca-certificates",
    "gnupg",
    "lsb-release",
    "sudo",
    "libcap2-bin",
    "file",
    "iproute2",
)

GOVERNORS = ("ondemand", "conservative")


class SystemPrepareStep(Step):
    name = "system-prepare"
    title = "Prepare the base system"
    order = 1
    requires = PipelineState.NOT_STARTED
    produces = PipelineState.SYSTEM_PREPARED
    done_message = "System prepared"

    def is_done(self, session: Session) -> bool:
        ctx = session.context
        return (
            matches(ctx.sysctl_file, render_sysctl())
            and matches(ctx.logrotate_file, render_logrotate(ctx))
            and all(d.is_dir() for d in ctx.managed_dirs)
        )

    def apply(self, session: Session) -> None:
        ctx = session.context
        commands = session.commands

        logger.info("Updating package lists and upgrading")
        commands.run(["apt-get", "update"], env=APT_ENV)
        commands.run(
            ["apt-get", "-y", "-o", "Dpkg::Options::=--force-confold", "upgrade"],
            env=APT_ENV,
            timeout=ctx.build_timeout,
        )
        commands.run(
            ["apt-get", "install", "-y", "--no-install-recommends", *ESSENTIAL_PACKAGES],
            env=APT_ENV,
        )

        self._set_timezone(session)
        self._power_tweaks(session)

        write_atomic(ctx.sysctl_file, render_sysctl(), mode=0o644)
        if not commands.succeeds(["sysctl", "-p", ctx.sysctl_file]):
            session.warn("Some sysctl settings were not applied (a kernel module may need loading)")

        for directory in ctx.managed_dirs:
            directory.mkdir(parents=True, exist_ok=True)

        write_atomic(ctx.logrotate_file, render_logrotate(ctx), mode=0o644)
        self._set_governor(session)

    def verify(self, session: Session) -> None:
        ctx = session.context
        self.check(matches(ctx.sysctl_file, render_sysctl()), f"{ctx.sysctl_file} not written")
        self.check(
            matches(ctx.logrotate_file, render_logrotate(ctx)), f"{ctx.logrotate_file} not written"
        )
        missing = [str(d) for d in ctx.managed_dirs if not d.is_dir()]
        self.check(not missing, "Directories missing", detail="\n".join(missing))

    # ── Best-effort pieces ──────────────────────────────────────

    def _set_timezone(self, session: Session) -> None:
        ctx = session.context
        if session.commands.succeeds(["timedatectl", "set-timezone", ctx.timezone]):
            logger.info("Timezone set to %s", ctx.timezone)
            return

        zoneinfo = f"/usr/share/zoneinfo/{ctx.timezone}"
        localtime = ctx.path("/etc/localtime")
        if not ctx.path(zoneinfo).exists():
            session.warn(f"Could not set timezone {ctx.timezone}: no {zoneinfo}")
            return
        try:
            localtime.unlink(missing_ok=True)
            localtime.symlink_to(zoneinfo)
        except OSError as e:
            session.warn(f"Could not set timezone {ctx.timezone}: {e}")

    def _power_tweaks(self, session: Session) -> None:
        ctx = session.context
        commands = session.commands

        if systemd.is_enabled(commands, "bluetooth.service"):
            commands.run(["systemctl", "disable", "bluetooth.service"], check=False)
            commands.run(["systemctl", "stop", "bluetooth.service"], check=False)
            logger.info("Bluetooth disabled")

        if commands.has_command("iwconfig"):
            write_atomic(ctx.wifi_hook_file, WIFI_POWERSAVE_HOOK, mode=0o755)
            if not commands.succeeds(["/sbin/iwconfig", "wlan0", "power", "off"]):
                session.warn("Could not disable WiFi power saving on wlan0")

    def _set_governor(self, session: Session) -> None:
        cpu_root = session.context.path("/sys/devices/system/cpu")
        knobs = sorted(cpu_root.glob("cpu[0-9]*/cpufreq/scaling_governor"))
        if not knobs:
            session.warn("CPU frequency scaling not available")
            return

        failed = []
        for knob in knobs:
            for governor in GOVERNORS:
                try:
                    knob.write_text(governor + "\n")
                    break
                except OSError:
                    continue
            else:
                failed.append(knob.parent.parent.name)
        if failed:
            session.warn(f"Could not set CPU governor on {', '.join(failed)}")
