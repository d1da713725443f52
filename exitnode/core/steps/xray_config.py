"""
Step 4 — render, validate and install the xray configuration.

The VLESS client UUID is the node's only credential.  An existing valid
UUID is kept when the document is re-rendered; only a forced re-run
(confirmed by the operator) replaces it.  The rendered document is
checked with ``xray test -config`` before it replaces the live file.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from pydantic import ValidationError

from exitnode.core.errors import DocumentValidationError
from exitnode.core.models.documents import XrayConfig
from exitnode.core.models.pipeline import PipelineState
from exitnode.core.models.record import NodeRecord, generate_client_uuid, is_client_uuid
from exitnode.core.persistence.atomic import file_mode, write_atomic
from exitnode.core.persistence.record_file import RecordError, load_record, save_record
from exitnode.core.services.host import chown
from exitnode.core.steps.base import Step

if TYPE_CHECKING:
    from pathlib import Path

    from exitnode.core.context import Context
    from exitnode.core.engine.session import Session

logger = logging.getLogger(__name__)

CONFIG_MODE = 0o640


def read_xray_config(path: Path) -> XrayConfig | None:
    """Parse the installed xray.json, or None if absent or unreadable."""
    try:
        return XrayConfig.from_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (ValueError, ValidationError) as e:
        logger.warning("Unreadable xray config %s: %s", path, e)
        return None


def read_record_quietly(path: Path) -> NodeRecord | None:
    try:
        return load_record(path)
    except RecordError as e:
        logger.warning("%s", e)
        return None


def existing_client_uuid(ctx: Context) -> str | None:
    """Valid client UUID from the installed config, else from the node record."""
    config = read_xray_config(ctx.xray_config_file)
    if config is not None and is_client_uuid(config.client_uuid):
        return config.client_uuid
    record = read_record_quietly(ctx.record_file)
    if record is not None and is_client_uuid(record.uuid):
        return record.uuid
    return None


class ConfigureXrayStep(Step):
    name = "configure-xray"
    title = "Configure xray"
    order = 4
    requires = PipelineState.BUILT
    produces = PipelineState.CONFIGURED
    destructive_rerun = True
    done_message = "xray configured"

    @property
    def rerun_prompt(self) -> str:
        return (
            "Regenerate the VLESS client UUID? "
            "The transit server must then be reconfigured with the new id."
        )

    def is_done(self, session: Session) -> bool:
        ctx = session.context
        config = read_xray_config(ctx.xray_config_file)
        record = read_record_quietly(ctx.record_file)
        if config is None or record is None:
            return False
        expected = XrayConfig.for_node(ctx, config.client_uuid or "")
        return (
            is_client_uuid(config.client_uuid)
            and config.client_uuid == record.uuid
            and config == expected
        )

    def has_state_to_lose(self, session: Session) -> bool:
        # Any valid credential counts, even when the rest of the config drifted
        return existing_client_uuid(session.context) is not None

    def check_preconditions(self, session: Session) -> None:
        self.require_file(session.context.xray_bin, "build-xray", executable=True)

    def apply(self, session: Session) -> None:
        ctx = session.context
        commands = session.commands

        client_uuid = None if session.forced else existing_client_uuid(ctx)
        if client_uuid is not None:
            logger.info("Keeping existing client UUID")
        if client_uuid is None:
            client_uuid = generate_client_uuid()
            logger.info("Generated new client UUID")

        document = XrayConfig.for_node(ctx, client_uuid)
        pending = ctx.xray_config_file.with_name(".xray.pending.json")
        write_atomic(pending, document.to_json(), mode=CONFIG_MODE)

        receipt = commands.run([ctx.xray_bin, "test", "-config", pending], check=False)
        if receipt.failed:
            pending.unlink(missing_ok=True)
            raise DocumentValidationError(
                self.name,
                "xray rejected the rendered configuration",
                operation=commands.last_operation,
                detail=receipt.diagnostics,
            )

        os.replace(pending, ctx.xray_config_file)
        chown(commands, ctx.xray_user, ctx.xray_group, ctx.xray_config_file)

        record = NodeRecord(
            uuid=client_uuid,
            listen_port=ctx.xray_port,
            xray_version=ctx.xray_version,
        )
        previous = read_record_quietly(ctx.record_file)
        if previous is not None and not previous.hostname_pending:
            # The tunnel does not depend on the credential
            record = record.model_copy(
                update={
                    "tunnel_hostname": previous.tunnel_hostname,
                    "tunnel_id": previous.tunnel_id,
                    "tunnel_name": previous.tunnel_name,
                }
            )
        save_record(record, ctx.record_file)
        logger.info("Node record written to %s", ctx.record_file)

    def verify(self, session: Session) -> None:
        ctx = session.context
        config = read_xray_config(ctx.xray_config_file)
        record = read_record_quietly(ctx.record_file)
        self.check(config is not None, f"{ctx.xray_config_file} missing after install")
        self.check(record is not None, f"{ctx.record_file} missing after install")
        self.check(
            is_client_uuid(config.client_uuid) and config.client_uuid == record.uuid,
            "Client UUID in xray.json and the node record differ",
        )
        self.check(
            file_mode(ctx.xray_config_file) == CONFIG_MODE,
            f"{ctx.xray_config_file} has mode {oct(file_mode(ctx.xray_config_file) or 0)}, expected 0o640",
        )
