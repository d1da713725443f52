"""
NodeRecord — the exported facts about a deployed exit node.

Created by the xray configuration step with a placeholder hostname,
back-filled by the tunnel step, read by the health checker and by the
operator who configures the transit server.
"""

from __future__ import annotations

import re
import uuid as _uuid_mod
from datetime import UTC, datetime

from pydantic import BaseModel, Field

PENDING_HOSTNAME = "PENDING"
NODE_TYPE = "xray-vless-exit"

_UUID4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)


def generate_client_uuid() -> str:
    """Random VLESS client id, RFC-4122 version 4, lower-case."""
    return str(_uuid_mod.uuid4()).lower()


def is_client_uuid(value: str | None) -> bool:
    """Whether ``value`` is a lower-case RFC-4122 v4 UUID."""
    return bool(value) and _UUID4_RE.match(value) is not None


def _utc_stamp() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class NodeRecord(BaseModel):
    """Serialized to ``exit_node_info.json``."""

    node_type: str = NODE_TYPE
    uuid: str | None = None
    listen_address: str = "127.0.0.1"
    listen_port: int = 10808
    tunnel_hostname: str = PENDING_HOSTNAME
    tunnel_id: str | None = None
    tunnel_name: str | None = None
    created_at: str = Field(default_factory=_utc_stamp)
    xray_version: str | None = None
    protocol: str = "vless"
    transport: str = "tcp"
    security: str = "none"

    @property
    def hostname_pending(self) -> bool:
        return self.tunnel_hostname == PENDING_HOSTNAME
