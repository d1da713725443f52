"""
Step 6 — provision the Cloudflare Tunnel.

Finds or creates the tunnel named ``rpi-exit-<hostname>``, installs its
credentials, renders config.yml, and back-fills the node record with the
tunnel hostname.  The hostname is derived from the tunnel id
(``<id>.cfargotunnel.com``); cloudflared is not asked for it.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from typing import TYPE_CHECKING

from pydantic import ValidationError

from exitnode.core.errors import ExternalToolError, MissingCredentialError
from exitnode.core.models.documents import TunnelConfig
from exitnode.core.models.pipeline import PipelineState
from exitnode.core.models.record import NodeRecord
from exitnode.core.persistence.atomic import matches, write_atomic
from exitnode.core.persistence.record_file import save_record, update_record
from exitnode.core.services.host import chown
from exitnode.core.steps.base import Step
from exitnode.core.steps.xray_config import read_record_quietly

if TYPE_CHECKING:
    from pathlib import Path

    from exitnode.core.engine.session import Session

logger = logging.getLogger(__name__)

CREDENTIALS_MODE = 0o600
CONFIG_MODE = 0o640

TOKEN_HELP = """\
Create a Cloudflare API token with at least these permissions:

  Account level:
    Cloudflare Tunnel: Read, Edit
  Zone level (optional, for custom domain routing):
    DNS: Read, Edit

Create it at https://dash.cloudflare.com/profile/api-tokens, then:

  export CF_API_TOKEN="your-token-here"

and re-run the deployment."""


def find_tunnel_id(listing: str | None, name: str) -> str | None:
    """Id of the tunnel called ``name`` in ``cloudflared tunnel list --output json``."""
    if not listing:
        return None
    try:
        tunnels = json.loads(listing)
    except json.JSONDecodeError:
        logger.warning("Unparseable tunnel list output")
        return None
    for tunnel in tunnels or []:
        if isinstance(tunnel, dict) and tunnel.get("name") == name and tunnel.get("id"):
            return str(tunnel["id"])
    return None


def read_tunnel_config(path: Path) -> TunnelConfig | None:
    try:
        return TunnelConfig.from_yaml(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (ValueError, ValidationError) as e:
        logger.warning("Unreadable tunnel config %s: %s", path, e)
        return None


class ConfigureTunnelStep(Step):
    name = "configure-tunnel"
    title = "Provision the Cloudflare Tunnel"
    order = 6
    requires = PipelineState.TUNNEL_DAEMON_INSTALLED
    produces = PipelineState.TUNNEL_PROVISIONED
    done_message = "Tunnel provisioned"

    def is_done(self, session: Session) -> bool:
        ctx = session.context
        record = read_record_quietly(ctx.record_file)
        if record is None or record.hostname_pending or not record.tunnel_id:
            return False
        tunnel_id = record.tunnel_id
        return (
            record.tunnel_hostname == ctx.tunnel_hostname_for(tunnel_id)
            and ctx.path(ctx.credentials_target(tunnel_id)).is_file()
            and matches(ctx.tunnel_config_file, TunnelConfig.for_tunnel(ctx, tunnel_id).to_yaml())
        )

    def check_preconditions(self, session: Session) -> None:
        ctx = session.context
        self.require_file(ctx.cloudflared_bin, "install-cloudflared", executable=True)
        if not ctx.api_token:
            raise MissingCredentialError(self.name, "CF_API_TOKEN is not set", detail=TOKEN_HELP)

    def apply(self, session: Session) -> None:
        ctx = session.context
        tunnel_name = ctx.tunnel_name
        logger.info("Tunnel name: %s", tunnel_name)

        tunnel_id = self._existing_tunnel(session, tunnel_name)
        if tunnel_id is None:
            tunnel_id = self._create_tunnel(session, tunnel_name)
        logger.info("Tunnel id: %s", tunnel_id)

        self._install_credentials(session, tunnel_id)

        config = TunnelConfig.for_tunnel(ctx, tunnel_id)
        write_atomic(ctx.tunnel_config_file, config.to_yaml(), mode=CONFIG_MODE)
        chown(session.commands, ctx.cloudflared_user, ctx.cloudflared_group, ctx.tunnel_config_file)

        hostname = ctx.tunnel_hostname_for(tunnel_id)
        self._backfill_record(session, tunnel_id, tunnel_name, hostname)
        logger.info("Tunnel hostname: %s", hostname)

        self._check_tunnel_info(session, tunnel_id)

    def verify(self, session: Session) -> None:
        ctx = session.context
        record = read_record_quietly(ctx.record_file)
        self.check(
            record is not None and not record.hostname_pending,
            "Node record still has a pending tunnel hostname",
        )
        config = read_tunnel_config(ctx.tunnel_config_file)
        self.check(
            config is not None and config.tunnel == record.tunnel_id,
            f"{ctx.tunnel_config_file} does not reference tunnel {record.tunnel_id}",
        )

    # ── Pieces ──────────────────────────────────────────────────

    def _cloudflared(self, session: Session, *args: str, check: bool = True):
        ctx = session.context
        return session.commands.run(
            [ctx.cloudflared_bin, *args],
            check=check,
            env={"TUNNEL_TOKEN": ctx.api_token or ""},
        )

    def _list(self, session: Session) -> str:
        return self._cloudflared(session, "tunnel", "list", "--output", "json").output

    def _existing_tunnel(self, session: Session, tunnel_name: str) -> str | None:
        tunnel_id = find_tunnel_id(self._list(session), tunnel_name)
        if tunnel_id is None:
            return None

        question = f"Tunnel '{tunnel_name}' already exists (ID: {tunnel_id}). Delete and recreate it?"
        if not session.confirm(question):
            logger.info("Reusing existing tunnel %s", tunnel_id)
            return tunnel_id

        logger.info("Deleting tunnel %s", tunnel_name)
        self._cloudflared(session, "tunnel", "delete", "-f", tunnel_name, check=False)
        session.sleep(2)
        return None

    def _create_tunnel(self, session: Session, tunnel_name: str) -> str:
        receipt = self._cloudflared(session, "tunnel", "create", tunnel_name, check=False)
        if receipt.failed:
            raise ExternalToolError(
                self.name,
                f"Could not create tunnel {tunnel_name}; check the CF_API_TOKEN permissions",
                operation=session.commands.last_operation,
                detail=f"{receipt.diagnostics}\n\n{TOKEN_HELP}".strip(),
                return_code=receipt.return_code,
            )
        tunnel_id = find_tunnel_id(self._list(session), tunnel_name)
        if tunnel_id is None:
            raise ExternalToolError(
                self.name,
                f"Tunnel {tunnel_name} was created but is missing from the tunnel list",
                operation=session.commands.last_operation,
            )
        return tunnel_id

    def _install_credentials(self, session: Session, tunnel_id: str) -> None:
        ctx = session.context
        target = ctx.path(ctx.credentials_target(tunnel_id))

        source = next((p for p in ctx.credentials_candidates(tunnel_id) if p.is_file()), None)
        if source is None:
            if target.is_file():
                logger.info("Credentials already installed at %s", target)
                return
            searched = "\n".join(str(p) for p in ctx.credentials_candidates(tunnel_id))
            raise ExternalToolError(
                self.name,
                f"Credentials for tunnel {tunnel_id} not found",
                detail=f"Looked in:\n{searched}",
            )

        target.parent.mkdir(parents=True, exist_ok=True)
        staging = target.with_name(f".{target.name}.tmp")
        shutil.copyfile(source, staging)
        os.chmod(staging, CREDENTIALS_MODE)
        os.replace(staging, target)
        chown(session.commands, ctx.cloudflared_user, ctx.cloudflared_group, target)
        logger.info("Credentials installed to %s", target)

    def _backfill_record(
        self, session: Session, tunnel_id: str, tunnel_name: str, hostname: str
    ) -> None:
        ctx = session.context
        changes = {"tunnel_hostname": hostname, "tunnel_id": tunnel_id, "tunnel_name": tunnel_name}
        if ctx.record_file.is_file():
            update_record(ctx.record_file, **changes)
            return
        session.warn(f"No node record at {ctx.record_file}, writing one without a client UUID")
        save_record(NodeRecord(listen_port=ctx.xray_port, **changes), ctx.record_file)

    def _check_tunnel_info(self, session: Session, tunnel_id: str) -> None:
        ctx = session.context
        receipt = session.commands.run(
            [
                "sudo", "-u", ctx.cloudflared_user,
                ctx.cloudflared_bin, "tunnel", "--config", ctx.tunnel_config_file, "info", tunnel_id,
            ],
            check=False,
        )
        if not (receipt.ok and tunnel_id in receipt.output):
            session.warn("Could not verify the tunnel with 'cloudflared tunnel info' (may be normal)")
