"""
systemd queries used by the services step, health checks and teardown.
"""

from __future__ import annotations

from exitnode.core.engine.commands import CommandRunner


def is_active(commands: CommandRunner, unit: str) -> bool:
    return active_state(commands, unit) == "active"


def active_state(commands: CommandRunner, unit: str) -> str:
    """``systemctl is-active`` output (``active``, ``inactive``, ``failed``...)."""
    receipt = commands.run(["systemctl", "is-active", unit], check=False)
    state = receipt.output.strip()
    return state or ("active" if receipt.ok else "unknown")


def is_enabled(commands: CommandRunner, unit: str) -> bool:
    return commands.succeeds(["systemctl", "is-enabled", unit])


def active_since(commands: CommandRunner, unit: str) -> str | None:
    """Value of ``ActiveEnterTimestamp``, or None."""
    value = commands.output(
        ["systemctl", "show", unit, "--property=ActiveEnterTimestamp", "--value"]
    )
    value = (value or "").strip()
    return value or None


def journal_tail(commands: CommandRunner, unit: str, lines: int = 20) -> str:
    """Last ``lines`` journal lines for ``unit``, empty if unavailable."""
    return commands.output(["journalctl", "-u", unit, "-n", str(lines), "--no-pager"]) or ""


def listening_ports(commands: CommandRunner) -> set[int]:
    """TCP ports in LISTEN state according to ``ss -tlnH``."""
    out = commands.output(["ss", "-tlnH"]) or ""
    ports: set[int] = set()
    for line in out.splitlines():
        fields = line.split()
        if len(fields) < 4:
            continue
        local = fields[3]
        _, _, port = local.rpartition(":")
        if port.isdigit():
            ports.add(int(port))
    return ports


def is_listening(commands: CommandRunner, port: int) -> bool:
    return port in listening_ports(commands)
