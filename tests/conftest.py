"""
Shared fixtures: a staged Context and a scripted host behind the mock adapter.

Every pipeline test runs against ``FakeHost``: the registry is put in
mock mode and each Action is answered from the fake's in-memory view of
users, services and tunnels.  File effects (git clone, go build, the
cloudflared download, tunnel credentials) are written under the staging
root, so the steps' own file probes see them.
"""

import json
import re
import uuid
from pathlib import Path

import pytest

from exitnode.adapters.base import ExecutionContext
from exitnode.adapters.mock import MockAdapter
from exitnode.adapters.registry import AdapterRegistry
from exitnode.core.context import Context
from exitnode.core.engine.commands import CommandRunner
from exitnode.core.engine.session import create_session, deny
from exitnode.core.models.action import Receipt

ELF_BYTES = b"\x7fELF\x02\x01\x01" + b"\x00" * 57

_COMMAND_V_RE = re.compile(r'command -v "(.+)"')


class FakeHost:
    """In-memory Raspberry Pi answering the commands the steps issue."""

    def __init__(self, context: Context, arch: str = "aarch64"):
        self.context = context
        self.arch = arch
        self.go_version: str | None = "1.23.5"
        self.users: set[str] = set()
        self.enabled: set[str] = set()
        self.active: set[str] = set()
        self.tunnels: dict[str, str] = {}        # name -> id
        self.online = True
        self.binds_port = True
        self.failing_units: set[str] = set()
        self.missing_commands: set[str] = set()

    def install(self, mock: MockAdapter) -> None:
        mock.on("", self.handle)

    # ── Dispatch ────────────────────────────────────────────────

    def handle(self, ctx: ExecutionContext) -> Receipt | str | None:
        params = ctx.params
        if "url" in params:
            return self._download(ctx)

        argv = [str(a) for a in params["argv"]]
        if argv[0] == "sudo":
            argv = argv[3:]
        program = Path(argv[0]).name
        handler = getattr(self, f"_{program.replace('-', '_')}", None)
        if handler is None:
            return None
        return handler(ctx, argv)

    def _fail(self, ctx: ExecutionContext, error: str, output: str = "", code: int = 1) -> Receipt:
        return Receipt.failure(
            adapter=ctx.action.adapter,
            action_id=ctx.action.id,
            error=error,
            output=output,
            return_code=code,
        )

    def _download(self, ctx: ExecutionContext) -> str:
        dest = Path(ctx.params["dest"])
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(ELF_BYTES)
        return f"{len(ELF_BYTES)} bytes"

    # ── Users and platform ──────────────────────────────────────

    def _id(self, ctx, argv):
        if argv[-1] in self.users:
            return "999"
        return self._fail(ctx, f"id: '{argv[-1]}': no such user")

    def _useradd(self, ctx, argv):
        self.users.add(argv[-1])

    def _userdel(self, ctx, argv):
        self.users.discard(argv[-1])

    def _uname(self, ctx, argv):
        return self.arch

    def _ping(self, ctx, argv):
        if self.online:
            return "1 packets transmitted, 1 received"
        return self._fail(ctx, "Network is unreachable", code=2)

    def _sh(self, ctx, argv):
        match = _COMMAND_V_RE.search(argv[-1])
        name = match.group(1) if match else ""
        if name in self.missing_commands:
            return self._fail(ctx, "", code=1)
        return f"/usr/bin/{name}"

    # ── Toolchain and build ─────────────────────────────────────

    def _go(self, ctx, argv):
        if argv[1] == "version":
            if self.go_version is None:
                return self._fail(ctx, "Command not found: go", code=127)
            return f"go version go{self.go_version} linux/arm64"
        if argv[1] == "build":
            (Path(ctx.params["cwd"]) / "xray").write_bytes(ELF_BYTES)
        return None

    def _tar(self, ctx, argv):
        go_bin = self.context.go_bin
        go_bin.parent.mkdir(parents=True, exist_ok=True)
        go_bin.write_bytes(ELF_BYTES)
        go_bin.chmod(0o755)
        self.go_version = self.context.go_version

    def _git(self, ctx, argv):
        if argv[1] == "clone":
            dest = Path(argv[-1])
            (dest / "main").mkdir(parents=True, exist_ok=True)

    def _file(self, ctx, argv):
        return f"{argv[-1]}: ELF 64-bit LSB executable, ARM aarch64, version 1 (SYSV), statically linked"

    def _xray(self, ctx, argv):
        if argv[1] == "version":
            return f"Xray {self.context.version_number} (Xray, Penetrates Everything.) (go1.23.5 linux/arm64)"
        if argv[1] == "test":
            return "Configuration OK."
        return None

    # ── cloudflared ─────────────────────────────────────────────

    def _cloudflared(self, ctx, argv):
        if argv[1] == "--version":
            return "cloudflared version 2025.1.0 (built 2025-01-15)"

        args = argv[2:]
        if args[:2] == ["--config", str(self.context.tunnel_config_file)]:
            args = args[2:]
        sub = args[0]

        if sub == "info":
            return f"NAME: {self.context.tunnel_name}\nID: {args[-1]}"

        token = (ctx.params.get("env") or {}).get("TUNNEL_TOKEN")
        if not token:
            return self._fail(ctx, "Cannot determine default origin certificate path")

        if sub == "list":
            return json.dumps(
                [{"id": tid, "name": name, "connections": []} for name, tid in self.tunnels.items()]
            )
        if sub == "create":
            name = args[-1]
            tunnel_id = str(uuid.uuid4())
            self.tunnels[name] = tunnel_id
            creds = self.context.path(f"{self.context.home}/.cloudflared/{tunnel_id}.json")
            creds.parent.mkdir(parents=True, exist_ok=True)
            creds.write_text(
                json.dumps({"AccountTag": "acct", "TunnelID": tunnel_id, "TunnelSecret": "c2VjcmV0"})
            )
            return f"Created tunnel {name} with id {tunnel_id}"
        if sub == "delete":
            self.tunnels.pop(args[-1], None)
            return None
        return None

    # ── systemd and sockets ─────────────────────────────────────

    def _systemctl(self, ctx, argv):
        action = argv[1]
        unit = argv[2] if len(argv) > 2 else ""

        if action == "is-active":
            if unit in self.active:
                return "active"
            state = "failed" if unit in self.failing_units else "inactive"
            return self._fail(ctx, "", output=state, code=3)
        if action == "is-enabled":
            if unit in self.enabled:
                return "enabled"
            return self._fail(ctx, "", output="disabled")
        if action == "enable":
            self.enabled.add(unit)
        elif action == "disable":
            self.enabled.discard(unit)
        elif action == "stop":
            self.active.discard(unit)
        elif action == "start":
            if unit in self.failing_units:
                return self._fail(ctx, f"Job for {unit} failed because the control process exited")
            self.active.add(unit)
        elif action == "show":
            return "Mon 2026-10-19 10:00:00 UTC"
        return None

    def _ss(self, ctx, argv):
        if "xray.service" in self.active and self.binds_port:
            return f"LISTEN 0 4096 127.0.0.1:{self.context.xray_port} 0.0.0.0:*"
        return ""

    def _journalctl(self, ctx, argv):
        unit = argv[argv.index("-u") + 1]
        return f"Oct 19 10:00:00 pi {unit.removesuffix('.service')}[1234]: failed to listen on 127.0.0.1"

    def _pgrep(self, ctx, argv):
        if f"{argv[-1]}.service" in self.active:
            return "1234"
        return self._fail(ctx, "", code=1)

    def _ps(self, ctx, argv):
        return "20480  1.5"


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture
def context(tmp_path: Path) -> Context:
    """Context staged under tmp_path, with an API token."""
    return Context(root=tmp_path.resolve(), hostname="pi-test", api_token="test-token")


@pytest.fixture
def mock_adapter() -> MockAdapter:
    return MockAdapter()


@pytest.fixture
def registry(mock_adapter: MockAdapter) -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.set_mock_mode(True, mock_adapter)
    return registry


@pytest.fixture
def host(context: Context, mock_adapter: MockAdapter) -> FakeHost:
    fake = FakeHost(context)
    fake.install(mock_adapter)
    return fake


@pytest.fixture
def make_session(registry: AdapterRegistry, host: FakeHost):
    """Factory for sessions on the fake host (no sleeping, confirmations declined)."""

    def _make(context: Context | None = None, confirm=deny, kind: str = "deploy"):
        return create_session(
            context or host.context,
            registry,
            kind=kind,
            confirm=confirm,
            sleep=lambda _seconds: None,
        )

    return _make


@pytest.fixture
def commands(registry: AdapterRegistry, host: FakeHost) -> CommandRunner:
    """Probe runner (no run log) on the fake host."""
    return CommandRunner(registry)


@pytest.fixture
def deployed(make_session):
    """A node after one successful deploy."""
    from exitnode.core.use_cases.deploy import deploy

    result = deploy(make_session())
    assert result.status == "ok", result.failure
    return result
