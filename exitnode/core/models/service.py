"""
ServiceDescriptor — one managed systemd service and its unit file.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from exitnode.core.context import Context


class ServiceDescriptor(BaseModel):
    """A managed daemon: unit name, identity, and how to start it."""

    name: str                          # logical name: "xray", "cloudflared"
    unit: str                          # "xray.service"
    description: str
    user: str
    group: str
    binary: str                        # target path of the executable
    exec_start: list[str]
    after: list[str] = Field(default_factory=lambda: ["network-online.target"])
    wants: list[str] = Field(default_factory=lambda: ["network-online.target"])
    capabilities: list[str] = Field(default_factory=list)
    limit_nofile: int = 65536

    def render(self) -> str:
        """Unit file text."""
        unit = [
            f"Description={self.description}",
            f"After={' '.join(self.after)}",
            f"Wants={' '.join(self.wants)}",
        ]
        service = [
            "Type=simple",
            f"User={self.user}",
            f"Group={self.group}",
            f"ExecStart={' '.join(self.exec_start)}",
            "Restart=on-failure",
            "RestartSec=5s",
            f"LimitNOFILE={self.limit_nofile}",
            "NoNewPrivileges=true",
        ]
        if self.capabilities:
            caps = " ".join(self.capabilities)
            service.append(f"AmbientCapabilities={caps}")
            service.append(f"CapabilityBoundingSet={caps}")
        install = ["WantedBy=multi-user.target"]

        sections = [("Unit", unit), ("Service", service), ("Install", install)]
        return "\n\n".join(
            f"[{title}]\n" + "\n".join(lines) for title, lines in sections
        ) + "\n"


def xray_service(context: Context) -> ServiceDescriptor:
    return ServiceDescriptor(
        name="xray",
        unit="xray.service",
        description="Xray VLESS exit node",
        user=context.xray_user,
        group=context.xray_group,
        binary=context.xray_bin_target,
        exec_start=[context.xray_bin_target, "run", "-config", context.xray_config_target],
        capabilities=["CAP_NET_BIND_SERVICE"],
    )


def cloudflared_service(context: Context) -> ServiceDescriptor:
    return ServiceDescriptor(
        name="cloudflared",
        unit="cloudflared.service",
        description="Cloudflare Tunnel for the Xray exit node",
        user=context.cloudflared_user,
        group=context.cloudflared_group,
        binary=context.cloudflared_bin_target,
        exec_start=[
            context.cloudflared_bin_target,
            "--no-autoupdate",
            "--config",
            context.tunnel_config_target,
            "tunnel",
            "run",
        ],
        after=["network-online.target", "xray.service"],
        wants=["network-online.target", "xray.service"],
    )


def managed_services(context: Context) -> list[ServiceDescriptor]:
    """Primary service first: cloudflared forwards to it."""
    return [xray_service(context), cloudflared_service(context)]
