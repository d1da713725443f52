"""
Teardown steps — the deployment in reverse.

Each step's ``is_done`` means "already absent", so an uninstall over a
half-finished deployment, or a second uninstall, only removes what is
still there.  Nothing here is fatal except a failure to delete files
the operator asked to remove.
"""

from __future__ import annotations

import logging
import shutil
from typing import TYPE_CHECKING

from exitnode.core.errors import ExternalToolError
from exitnode.core.models.service import managed_services
from exitnode.core.services import systemd
from exitnode.core.services.host import remove_user, user_exists
from exitnode.core.steps.base import Step
from exitnode.core.steps.tunnel import find_tunnel_id

if TYPE_CHECKING:
    from pathlib import Path

    from exitnode.core.engine.session import Session

logger = logging.getLogger(__name__)

BUILD_TOOLS = ("build-essential", "git", "jq")


def _system_files(session: Session) -> list[Path]:
    ctx = session.context
    return [ctx.logrotate_file, ctx.sysctl_file, ctx.wifi_hook_file]


class StopServicesStep(Step):
    name = "stop-services"
    title = "Stop services"
    order = 101
    done_message = "Services stopped"

    def is_done(self, session: Session) -> bool:
        return not any(
            systemd.is_active(session.commands, s.unit) for s in managed_services(session.context)
        )

    def apply(self, session: Session) -> None:
        # Tunnel first, it depends on xray
        for service in reversed(managed_services(session.context)):
            if systemd.is_active(session.commands, service.unit):
                session.commands.run(["systemctl", "stop", service.unit], check=False)
                logger.info("Stopped %s", service.unit)


class DisableServicesStep(Step):
    name = "disable-services"
    title = "Disable services"
    order = 102
    done_message = "Services disabled"

    def is_done(self, session: Session) -> bool:
        return not any(
            systemd.is_enabled(session.commands, s.unit) for s in managed_services(session.context)
        )

    def apply(self, session: Session) -> None:
        for service in reversed(managed_services(session.context)):
            session.commands.run(["systemctl", "disable", service.unit], check=False)


class RemoveUnitsStep(Step):
    name = "remove-units"
    title = "Remove unit files"
    order = 103
    done_message = "Unit files removed"

    def is_done(self, session: Session) -> bool:
        ctx = session.context
        return not any(ctx.unit_file(s.unit).exists() for s in managed_services(ctx))

    def apply(self, session: Session) -> None:
        ctx = session.context
        for service in managed_services(ctx):
            ctx.unit_file(service.unit).unlink(missing_ok=True)
        session.commands.run(["systemctl", "daemon-reload"], check=False)

    def verify(self, session: Session) -> None:
        self.check(self.is_done(session), "Unit files still present")


class DeleteTunnelStep(Step):
    name = "delete-tunnel"
    title = "Delete the Cloudflare Tunnel"
    order = 104
    done_message = "Tunnel deleted"

    def _can_reach_api(self, session: Session) -> bool:
        ctx = session.context
        return bool(ctx.api_token) and ctx.cloudflared_bin.is_file()

    def _listing(self, session: Session) -> str | None:
        ctx = session.context
        return session.commands.output(
            [ctx.cloudflared_bin, "tunnel", "list", "--output", "json"],
            env={"TUNNEL_TOKEN": ctx.api_token or ""},
        )

    def is_done(self, session: Session) -> bool:
        if not self._can_reach_api(session):
            return False
        listing = self._listing(session)
        return listing is not None and find_tunnel_id(listing, session.context.tunnel_name) is None

    def apply(self, session: Session) -> None:
        ctx = session.context
        name = ctx.tunnel_name
        if not self._can_reach_api(session):
            reason = "CF_API_TOKEN not set" if not ctx.api_token else "cloudflared not installed"
            session.warn(
                f"{reason}: delete tunnel '{name}' manually at https://dash.cloudflare.com/ "
                "(Zero Trust > Networks > Tunnels)"
            )
            return

        receipt = session.commands.run(
            [ctx.cloudflared_bin, "tunnel", "delete", "-f", name],
            check=False,
            env={"TUNNEL_TOKEN": ctx.api_token or ""},
        )
        if receipt.ok:
            logger.info("Tunnel %s deleted", name)
        else:
            session.warn(f"Failed to delete tunnel '{name}' (may need manual cleanup)")


class RemoveFilesStep(Step):
    name = "remove-files"
    title = "Remove directories and policy files"
    order = 105
    done_message = "Files removed"

    def is_done(self, session: Session) -> bool:
        ctx = session.context
        return not any(d.exists() for d in ctx.removable_dirs) and not any(
            f.exists() for f in _system_files(session)
        )

    def apply(self, session: Session) -> None:
        for directory in session.context.removable_dirs:
            if directory.exists():
                shutil.rmtree(directory)
                logger.info("Removed %s", directory)
        for path in _system_files(session):
            path.unlink(missing_ok=True)

    def verify(self, session: Session) -> None:
        self.check(self.is_done(session), "Some managed files are still present")


class RemoveBinariesStep(Step):
    name = "remove-binaries"
    title = "Remove cloudflared"
    order = 106
    done_message = "Binaries removed"

    def is_done(self, session: Session) -> bool:
        return not session.context.cloudflared_bin.exists()

    def apply(self, session: Session) -> None:
        session.context.cloudflared_bin.unlink(missing_ok=True)


class RemoveUsersStep(Step):
    name = "remove-users"
    title = "Remove service users"
    order = 107
    done_message = "Users removed"

    def _users(self, session: Session) -> list[str]:
        ctx = session.context
        return [ctx.xray_user, ctx.cloudflared_user]

    def is_done(self, session: Session) -> bool:
        return not any(user_exists(session.commands, u) for u in self._users(session))

    def apply(self, session: Session) -> None:
        for user in self._users(session):
            try:
                remove_user(session.commands, user)
            except ExternalToolError as e:
                session.warn(f"Could not remove user {user}: {e}")


class RemoveToolchainStep(Step):
    name = "remove-toolchain"
    title = "Remove Go and build tools"
    order = 108
    done_message = "Toolchain removed"

    def is_done(self, session: Session) -> bool:
        ctx = session.context
        return not ctx.go_root.exists() and not ctx.go_profile.exists()

    def apply(self, session: Session) -> None:
        ctx = session.context
        shutil.rmtree(ctx.go_root, ignore_errors=True)
        ctx.go_profile.unlink(missing_ok=True)

        env = {"DEBIAN_FRONTEND": "noninteractive"}
        session.commands.run(["apt-get", "remove", "-y", *BUILD_TOOLS], check=False, env=env)
        session.commands.run(["apt-get", "autoremove", "-y"], check=False, env=env)
