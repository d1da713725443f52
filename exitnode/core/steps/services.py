"""
Step 7 — install units and bring the services up in order.

xray first; cloudflared only once xray is listening, because the tunnel
has nothing to forward to before that.  Both units must report
``active`` at the end.  Every start failure carries the unit's recent
journal lines.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from exitnode.core.errors import ExternalToolError, VerificationError
from exitnode.core.models.pipeline import PipelineState
from exitnode.core.models.service import ServiceDescriptor, managed_services
from exitnode.core.persistence.atomic import matches, write_atomic
from exitnode.core.services import systemd
from exitnode.core.steps.base import Step

if TYPE_CHECKING:
    from exitnode.core.engine.session import Session

logger = logging.getLogger(__name__)

PRIMARY_SETTLE_SECONDS = 2
TUNNEL_SETTLE_SECONDS = 5
JOURNAL_LINES = 20


class EnableServicesStep(Step):
    name = "enable-services"
    title = "Enable and start services"
    order = 7
    requires = PipelineState.TUNNEL_PROVISIONED
    produces = PipelineState.SERVICES_ACTIVE
    done_message = "Services active"

    def is_done(self, session: Session) -> bool:
        ctx = session.context
        commands = session.commands
        for service in managed_services(ctx):
            if not matches(ctx.unit_file(service.unit), service.render()):
                return False
            if not systemd.is_enabled(commands, service.unit):
                return False
            if not systemd.is_active(commands, service.unit):
                return False
        return systemd.is_listening(commands, ctx.xray_port)

    def check_preconditions(self, session: Session) -> None:
        ctx = session.context
        self.require_file(ctx.xray_bin, "build-xray", executable=True)
        self.require_file(ctx.xray_config_file, "configure-xray")
        self.require_file(ctx.cloudflared_bin, "install-cloudflared", executable=True)
        self.require_file(ctx.tunnel_config_file, "configure-tunnel")

    def apply(self, session: Session) -> None:
        ctx = session.context
        commands = session.commands
        primary, tunnel = managed_services(ctx)

        for service in (primary, tunnel):
            unit_path = ctx.unit_file(service.unit)
            if not matches(unit_path, service.render()):
                write_atomic(unit_path, service.render(), mode=0o644)
                logger.info("Installed %s", unit_path)

        commands.run(["systemctl", "daemon-reload"])
        for service in (tunnel, primary):
            commands.run(["systemctl", "stop", service.unit], check=False)
        for service in (primary, tunnel):
            commands.run(["systemctl", "enable", service.unit])

        self._start(session, primary)
        session.sleep(PRIMARY_SETTLE_SECONDS)
        if not systemd.is_listening(commands, ctx.xray_port):
            raise VerificationError(
                self.name,
                f"xray is not listening on 127.0.0.1:{ctx.xray_port}",
                operation=commands.last_operation,
                detail=systemd.journal_tail(commands, primary.unit, JOURNAL_LINES),
            )
        session.log_event("primary_listening", status="ok", unit=primary.unit, port=ctx.xray_port)

        self._start(session, tunnel)
        session.log_event("service_started", status="ok", unit=tunnel.unit)
        session.sleep(TUNNEL_SETTLE_SECONDS)

    def verify(self, session: Session) -> None:
        commands = session.commands
        for service in managed_services(session.context):
            state = systemd.active_state(commands, service.unit)
            if state != "active":
                raise VerificationError(
                    self.name,
                    f"{service.unit} is {state}",
                    operation=f"systemctl is-active {service.unit}",
                    detail=systemd.journal_tail(commands, service.unit, JOURNAL_LINES),
                )

    def _start(self, session: Session, service: ServiceDescriptor) -> None:
        commands = session.commands
        receipt = commands.run(["systemctl", "start", service.unit], check=False)
        if receipt.failed:
            operation = commands.last_operation
            journal = systemd.journal_tail(commands, service.unit, JOURNAL_LINES)
            raise ExternalToolError(
                self.name,
                f"Failed to start {service.unit}",
                operation=operation,
                detail="\n".join(p for p in (receipt.diagnostics, journal) if p),
                return_code=receipt.return_code,
            )
        logger.info("Started %s", service.unit)
