"""
Typed configuration documents.

Every file the pipeline renders is built as a model and serialized by an
encoder (json, yaml) or a fixed renderer, never by string interpolation
into a template.  Values containing quotes, colons or newlines therefore
cannot change the document's structure.
"""

from __future__ import annotations

import json

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from exitnode.core.context import Context

_ALIASED = ConfigDict(populate_by_name=True)


# ── Xray ────────────────────────────────────────────────────────


class XrayLog(BaseModel):
    loglevel: str = "warning"
    access: str
    error: str


class VlessClient(BaseModel):
    id: str
    email: str = "transit-server"


class VlessSettings(BaseModel):
    clients: list[VlessClient]
    decryption: str = "none"


class StreamSettings(BaseModel):
    network: str = "tcp"
    security: str = "none"


class Inbound(BaseModel):
    model_config = _ALIASED

    tag: str = "vless-in"
    listen: str = "127.0.0.1"
    port: int = Field(ge=1, le=65535)
    protocol: str = "vless"
    settings: VlessSettings
    stream_settings: StreamSettings = Field(default_factory=StreamSettings, alias="streamSettings")


class Outbound(BaseModel):
    tag: str = "direct"
    protocol: str = "freedom"
    settings: dict = Field(default_factory=dict)


class XrayConfig(BaseModel):
    """The xray.json document: one loopback VLESS inbound, one direct outbound."""

    log: XrayLog
    inbounds: list[Inbound]
    outbounds: list[Outbound] = Field(default_factory=lambda: [Outbound()])

    @classmethod
    def for_node(cls, context: Context, client_uuid: str) -> XrayConfig:
        return cls(
            log=XrayLog(
                access=f"{context.log_dir}/access.log",
                error=f"{context.log_dir}/error.log",
            ),
            inbounds=[
                Inbound(
                    port=context.xray_port,
                    settings=VlessSettings(clients=[VlessClient(id=client_uuid)]),
                )
            ],
        )

    @property
    def client_uuid(self) -> str | None:
        for inbound in self.inbounds:
            if inbound.protocol == "vless" and inbound.settings.clients:
                return inbound.settings.clients[0].id
        return None

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), indent=2) + "\n"

    @classmethod
    def from_json(cls, text: str) -> XrayConfig:
        return cls.model_validate(json.loads(text))


# ── cloudflared ─────────────────────────────────────────────────


class IngressRule(BaseModel):
    service: str
    hostname: str | None = None


class TunnelConfig(BaseModel):
    """cloudflared config.yml: tunnel id, credentials path, ordered ingress rules."""

    model_config = _ALIASED

    tunnel: str
    credentials_file: str = Field(alias="credentials-file")
    ingress: list[IngressRule]

    @field_validator("ingress")
    @classmethod
    def _catch_all_last(cls, rules: list[IngressRule]) -> list[IngressRule]:
        if not rules:
            raise ValueError("ingress needs at least a catch-all rule")
        if rules[-1].hostname is not None:
            raise ValueError("last ingress rule must be a catch-all (no hostname)")
        return rules

    @classmethod
    def for_tunnel(cls, context: Context, tunnel_id: str) -> TunnelConfig:
        return cls(
            tunnel=tunnel_id,
            credentials_file=context.credentials_target(tunnel_id),
            ingress=[
                IngressRule(service=f"tcp://127.0.0.1:{context.xray_port}"),
                IngressRule(service="http_status:404"),
            ],
        )

    def to_yaml(self) -> str:
        data = self.model_dump(by_alias=True, exclude_none=True)
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)

    @classmethod
    def from_yaml(cls, text: str) -> TunnelConfig:
        return cls.model_validate(yaml.safe_load(text))


# ── System policy files ─────────────────────────────────────────

SYSCTL_SETTINGS: list[tuple[str, list[tuple[str, str]]]] = [
    ("TCP Fast Open", [("net.ipv4.tcp_fastopen", "3")]),
    (
        "BBR congestion control",
        [
            ("net.core.default_qdisc", "fq"),
            ("net.ipv4.tcp_congestion_control", "bbr"),
        ],
    ),
    (
        "Socket buffers",
        [
            ("net.core.rmem_max", "16777216"),
            ("net.core.wmem_max", "16777216"),
            ("net.ipv4.tcp_rmem", "4096 87380 16777216"),
            ("net.ipv4.tcp_wmem", "4096 65536 16777216"),
        ],
    ),
    (
        "Connection tracking",
        [
            ("net.netfilter.nf_conntrack_max", "65536"),
            ("net.netfilter.nf_conntrack_tcp_timeout_established", "7200"),
        ],
    ),
    ("File descriptor limits", [("fs.file-max", "65536")]),
]


def render_sysctl() -> str:
    blocks = []
    for title, settings in SYSCTL_SETTINGS:
        lines = [f"# {title}"] + [f"{key} = {value}" for key, value in settings]
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"


def render_logrotate(context: Context) -> str:
    directives = [
        "daily",
        "rotate 7",
        "compress",
        "delaycompress",
        "missingok",
        "notifempty",
        f"create 0640 {context.xray_user} {context.xray_group}",
        "sharedscripts",
    ]
    body = "\n".join(f"    {d}" for d in directives)
    postrotate = (
        "    postrotate\n"
        "        systemctl reload xray.service > /dev/null 2>&1 || true\n"
        "    endscript"
    )
    return f"{context.log_dir}/*.log {{\n{body}\n{postrotate}\n}}\n"


GO_PROFILE = (
    "export PATH=$PATH:/usr/local/go/bin\n"
    "export GOPATH=${HOME}/.go\n"
    "export GOCACHE=${HOME}/.cache/go-build\n"
)

WIFI_POWERSAVE_HOOK = "#!/bin/sh\n/sbin/iwconfig wlan0 power off 2>/dev/null || true\n"
