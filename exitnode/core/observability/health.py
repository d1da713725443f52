"""
Health checker — read-only inspection of a deployed exit node.

Aggregates per-component results into one verdict:

    unhealthy   a service, port, process, config or record check failed,
                or a resource is in its critical band
    degraded    a resource is in its warning band, connectivity failed,
                or the tunnel hostname is still pending
    healthy     everything else

Nothing here writes to disk or changes a service, so it is safe to run
at any time, including while a deployment is in progress.  Sensors that
do not exist on the host are left out rather than reported as failures.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from exitnode.core.context import Context
from exitnode.core.engine.commands import CommandRunner
from exitnode.core.models.service import managed_services
from exitnode.core.persistence.record_file import RecordError, load_record
from exitnode.core.services import systemd

logger = logging.getLogger(__name__)

TEMPERATURE_BANDS = (70.0, 80.0)     # °C, warn / critical
MEMORY_BANDS = (80.0, 90.0)          # percent used
DISK_BANDS = (80.0, 90.0)            # percent used

CONNECTIVITY_TARGETS = ("1.1.1.1", "cloudflare.com")
JOURNAL_LINES = 10


@dataclass
class ComponentHealth:
    """Health of a single component."""

    name: str
    status: str = "unknown"  # healthy, degraded, unhealthy, unknown
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class NodeHealth:
    """Aggregate health of the node."""

    status: str = "healthy"
    timestamp: str = ""
    components: list[ComponentHealth] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(UTC).isoformat()

    def add(self, component: ComponentHealth | None) -> None:
        if component is None:
            return
        self.components.append(component)
        self._recalculate()

    def _recalculate(self) -> None:
        statuses = [c.status for c in self.components]
        if any(s == "unhealthy" for s in statuses):
            self.status = "unhealthy"
        elif any(s == "degraded" for s in statuses):
            self.status = "degraded"
        elif all(s == "healthy" for s in statuses):
            self.status = "healthy"
        else:
            self.status = "unknown"

    @property
    def ok(self) -> bool:
        """False only for an unhealthy node."""
        return self.status != "unhealthy"

    def get(self, name: str) -> ComponentHealth | None:
        for component in self.components:
            if component.name == name:
                return component
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "components": [c.to_dict() for c in self.components],
        }


def band(value: float, bands: tuple[float, float]) -> str:
    """healthy / degraded (above warn) / unhealthy (above critical)."""
    warn, critical = bands
    if value > critical:
        return "unhealthy"
    if value > warn:
        return "degraded"
    return "healthy"


# ── Services and processes ──────────────────────────────────────


def check_service(commands: CommandRunner, unit: str) -> ComponentHealth:
    state = systemd.active_state(commands, unit)
    details: dict[str, Any] = {
        "state": state,
        "journal": systemd.journal_tail(commands, unit, JOURNAL_LINES).splitlines(),
    }
    if state == "active":
        since = systemd.active_since(commands, unit)
        if since:
            details["active_since"] = since
        return ComponentHealth(f"service:{unit.removesuffix('.service')}", "healthy", "active", details)

    return ComponentHealth(f"service:{unit.removesuffix('.service')}", "unhealthy", state, details)


def check_port(context: Context, commands: CommandRunner) -> ComponentHealth:
    port = context.xray_port
    if systemd.is_listening(commands, port):
        return ComponentHealth("port", "healthy", f"xray listening on {port}", {"port": port})
    return ComponentHealth("port", "unhealthy", f"Nothing listening on {port}", {"port": port})


def check_process(commands: CommandRunner, process: str) -> ComponentHealth:
    name = f"process:{process}"
    pids = (commands.output(["pgrep", "-x", process]) or "").split()
    if not pids:
        return ComponentHealth(name, "unhealthy", "Not running")

    pid = pids[0]
    details: dict[str, Any] = {"pid": int(pid) if pid.isdigit() else pid}
    usage = (commands.output(["ps", "-p", pid, "-o", "rss=,%cpu="]) or "").split()
    if len(usage) >= 2:
        try:
            details["memory_mb"] = round(int(usage[0]) / 1024, 1)
            details["cpu_percent"] = float(usage[1])
        except ValueError:
            logger.debug("Unparseable ps output for %s: %s", process, usage)
    return ComponentHealth(name, "healthy", f"Running (pid {pid})", details)


# ── Files ───────────────────────────────────────────────────────


def check_config(context: Context) -> ComponentHealth:
    files = {
        "xray": context.xray_config_file,
        "cloudflared": context.tunnel_config_file,
    }
    missing = [label for label, path in files.items() if not path.is_file()]
    details = {label: str(path) for label, path in files.items()}
    if missing:
        return ComponentHealth("config", "unhealthy", f"Missing: {', '.join(missing)}", details)
    return ComponentHealth("config", "healthy", "Configuration files present", details)


def check_node_record(context: Context) -> ComponentHealth:
    try:
        record = load_record(context.record_file)
    except RecordError as e:
        return ComponentHealth("node_record", "unhealthy", str(e))
    if record is None:
        return ComponentHealth("node_record", "unhealthy", f"No record at {context.record_file}")

    details = {
        "tunnel_hostname": record.tunnel_hostname,
        "uuid": record.uuid,
        "xray_version": record.xray_version,
    }
    if record.hostname_pending:
        return ComponentHealth("node_record", "degraded", "Tunnel hostname pending", details)
    return ComponentHealth("node_record", "healthy", record.tunnel_hostname, details)


# ── Resources ───────────────────────────────────────────────────


def _read(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return None


def check_temperature(context: Context) -> ComponentHealth | None:
    raw = _read(context.path("/sys/class/thermal/thermal_zone0/temp"))
    if raw is None or not raw.strip().lstrip("-").isdigit():
        return None
    celsius = int(raw.strip()) / 1000
    status = band(celsius, TEMPERATURE_BANDS)
    return ComponentHealth("temperature", status, f"{celsius:.1f}°C", {"celsius": celsius})


def check_memory(context: Context) -> ComponentHealth | None:
    raw = _read(context.path("/proc/meminfo"))
    if raw is None:
        return None
    values: dict[str, int] = {}
    for line in raw.splitlines():
        key, _, rest = line.partition(":")
        parts = rest.split()
        if parts and parts[0].isdigit():
            values[key] = int(parts[0])
    total = values.get("MemTotal")
    available = values.get("MemAvailable")
    if not total or available is None:
        return None

    used_pct = round((total - available) * 100 / total, 1)
    details = {"total_mb": total // 1024, "used_percent": used_pct}
    return ComponentHealth("memory", band(used_pct, MEMORY_BANDS), f"{used_pct}% used", details)


def _disk_usage(path: Path) -> tuple[int, int, int] | None:
    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    try:
        usage = shutil.disk_usage(probe)
    except OSError:
        return None
    return usage.total, usage.used, usage.free


def check_disk(context: Context) -> ComponentHealth | None:
    usage = _disk_usage(context.path(context.install_dir))
    if usage is None or not usage[0]:
        return None
    total, used, free = usage
    used_pct = round(used * 100 / total, 1)
    details = {"used_percent": used_pct, "free_mb": free // (1024 * 1024)}
    return ComponentHealth("disk", band(used_pct, DISK_BANDS), f"{used_pct}% used", details)


def check_load(context: Context) -> ComponentHealth | None:
    raw = _read(context.path("/proc/loadavg"))
    if raw is None:
        return None
    fields = raw.split()[:3]
    return ComponentHealth("load", "healthy", " ".join(fields), {"loadavg": fields})


# ── Network ─────────────────────────────────────────────────────


def check_connectivity(commands: CommandRunner) -> ComponentHealth:
    results = {
        target: commands.succeeds(["ping", "-c", "1", "-W", "3", target], timeout=10)
        for target in CONNECTIVITY_TARGETS
    }
    failed = [t for t, ok in results.items() if not ok]
    if failed:
        return ComponentHealth("connectivity", "degraded", f"Unreachable: {', '.join(failed)}", results)
    return ComponentHealth("connectivity", "healthy", "Internet reachable", results)


def check_node_health(context: Context, commands: CommandRunner) -> NodeHealth:
    """Run every check and return the aggregate."""
    health = NodeHealth()
    services = managed_services(context)

    for service in services:
        health.add(check_service(commands, service.unit))
    health.add(check_port(context, commands))
    for service in services:
        health.add(check_process(commands, service.name))
    health.add(check_config(context))
    health.add(check_node_record(context))
    health.add(check_temperature(context))
    health.add(check_memory(context))
    health.add(check_disk(context))
    health.add(check_load(context))
    health.add(check_connectivity(commands))

    logger.info("Node health: %s", health.status)
    return health
