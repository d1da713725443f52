"""
Tests for individual provisioning steps against the fake host.
"""

import json
from pathlib import Path

from exitnode.core.models.documents import TunnelConfig, XrayConfig
from exitnode.core.models.record import is_client_uuid
from exitnode.core.persistence.atomic import file_mode
from exitnode.core.persistence.record_file import load_record
from exitnode.core.steps import step_names
from exitnode.core.steps.toolchain import go_arch, parse_go_version
from exitnode.core.steps.tunnel import find_tunnel_id
from exitnode.core.steps.xray_build import parse_xray_version
from exitnode.core.use_cases.deploy import run_step


def _always_yes(_question: str) -> bool:
    return True


def _deploy_through(make_session, last: str):
    """Run the deploy steps one at a time up to and including ``last``."""
    for name in step_names():
        result = run_step(make_session(kind="step"), name)
        assert result.status == "ok", result.failure
        if name == last:
            return


# ── Parsers ──────────────────────────────────────────────────────────


class TestParsers:
    def test_go_version(self):
        assert parse_go_version("go version go1.23.5 linux/arm64") == (1, 23)
        assert parse_go_version("go version go1.9 linux/arm64") == (1, 9)
        assert parse_go_version("") is None
        assert parse_go_version(None) is None

    def test_go_arch(self):
        assert go_arch("aarch64") == "arm64"
        assert go_arch("armv7l") == "armv6l"
        assert go_arch("mips") is None

    def test_xray_version(self):
        assert parse_xray_version("Xray 25.12.8 (Xray, Penetrates Everything.) Custom") == "25.12.8"
        assert parse_xray_version("garbage") is None

    def test_find_tunnel_id(self):
        listing = json.dumps([{"id": "1", "name": "other"}, {"id": "2", "name": "rpi-exit-pi"}])
        assert find_tunnel_id(listing, "rpi-exit-pi") == "2"
        assert find_tunnel_id(listing, "missing") is None
        assert find_tunnel_id("not json", "rpi-exit-pi") is None
        assert find_tunnel_id(None, "rpi-exit-pi") is None


# ── Step 1 ───────────────────────────────────────────────────────────


class TestSystemPrepare:
    def test_power_tweaks_are_best_effort(self, context, mock_adapter, make_session, host):
        mock_adapter.set_failure("iwconfig wlan0 power off")
        mock_adapter.set_failure("sysctl -p")

        result = run_step(make_session(), "system-prepare")

        assert result.status == "ok"
        warnings = result.outcomes[0].warnings
        assert any("WiFi" in w for w in warnings)
        assert any("sysctl" in w for w in warnings)
        assert "CPU frequency scaling not available" in warnings
        assert context.wifi_hook_file.is_file()

    def test_sets_governor(self, context, make_session, host):
        knob = context.path("/sys/devices/system/cpu/cpu0/cpufreq/scaling_governor")
        knob.parent.mkdir(parents=True)
        knob.write_text("performance\n")

        result = run_step(make_session(), "system-prepare")

        assert result.status == "ok"
        assert knob.read_text() == "ondemand\n"
        assert "CPU frequency scaling not available" not in result.outcomes[0].warnings

    def test_apt_failure_is_fatal(self, mock_adapter, make_session, host):
        mock_adapter.set_failure("apt-get update", error="Temporary failure resolving", return_code=100)
        result = run_step(make_session(), "system-prepare")
        assert result.status == "failed"
        assert result.failure.operation == "apt-get update"


# ── Step 2 ───────────────────────────────────────────────────────────


class TestInstallDeps:
    def test_installs_go_when_missing(self, context, mock_adapter, make_session, host):
        _deploy_through(make_session, "system-prepare")
        host.go_version = None

        result = run_step(make_session(), "install-deps")

        assert result.status == "ok", result.failure
        assert any("go.dev/dl/go1.23.5.linux-arm64.tar.gz" in c for c in mock_adapter.commands)
        assert context.go_bin.is_file()
        assert file_mode(context.go_profile) == 0o755

    def test_old_go_is_replaced(self, mock_adapter, make_session, host):
        _deploy_through(make_session, "system-prepare")
        host.go_version = "1.9.2"

        result = run_step(make_session(), "install-deps")

        assert result.status == "ok"
        assert any("download https://go.dev/dl/" in c for c in mock_adapter.commands)

    def test_recent_go_is_kept(self, mock_adapter, make_session, host):
        _deploy_through(make_session, "install-deps")
        assert not any("go.dev/dl" in c for c in mock_adapter.commands)


# ── Step 3 ───────────────────────────────────────────────────────────


class TestBuildXray:
    def test_build_and_install(self, context, mock_adapter, make_session, host):
        _deploy_through(make_session, "build-xray")

        assert file_mode(context.xray_bin) == 0o755
        assert "xray" in host.users
        clone = next(c for c in mock_adapter.commands if c.startswith("git clone"))
        assert "--branch v25.12.8" in clone
        build = next(c for c in mock_adapter.commands if "go build" in c)
        assert "-trimpath" in build
        assert any(c.startswith("setcap cap_net_bind_service=+ep") for c in mock_adapter.commands)
        assert not context.path(context.build_dir).exists()

    def test_missing_binary_after_build(self, context, mock_adapter, make_session, host):
        _deploy_through(make_session, "install-deps")
        mock_adapter.on("go build", "")  # succeeds without producing a binary

        result = run_step(make_session(), "build-xray")

        assert result.status == "failed"
        assert "produced no binary" in result.failure.message
        assert not context.path(context.build_dir).exists()

    def test_wrong_architecture_warns(self, mock_adapter, make_session, host):
        _deploy_through(make_session, "install-deps")
        mock_adapter.on("file ", "ELF 64-bit LSB executable, x86-64")

        result = run_step(make_session(), "build-xray")

        assert result.status == "ok"
        assert any("architecture" in w for w in result.outcomes[0].warnings)


# ── Step 4 ───────────────────────────────────────────────────────────


class TestConfigureXray:
    def test_uuid_round_trip(self, context, make_session, host):
        _deploy_through(make_session, "configure-xray")

        config = XrayConfig.from_json(context.xray_config_file.read_text())
        record = load_record(context.record_file)
        assert is_client_uuid(config.client_uuid)
        assert record.uuid == config.client_uuid
        assert record.hostname_pending
        assert record.xray_version == "v25.12.8"
        assert file_mode(context.xray_config_file) == 0o640

    def test_rejected_document_leaves_live_config(self, context, mock_adapter, make_session, host):
        _deploy_through(make_session, "configure-xray")
        before = context.xray_config_file.read_bytes()
        mock_adapter.set_failure("test -config", error="Failed to start: invalid port")

        result = run_step(make_session(), "configure-xray", force=True)

        # Forced destructive re-run is declined by the default confirm
        assert result.status == "cancelled"

        result = run_step(make_session(confirm=_always_yes), "configure-xray", force=True)
        assert result.status == "failed"
        assert result.failure.message.startswith("Validation failed")
        assert "invalid port" in result.failure.detail
        assert context.xray_config_file.read_bytes() == before
        assert not context.xray_config_file.with_name(".xray.pending.json").exists()

    def test_declined_rerun_keeps_uuid(self, context, make_session, deployed):
        original = load_record(context.record_file).uuid

        result = run_step(make_session(), "configure-xray", force=True)

        assert result.status == "cancelled"
        assert load_record(context.record_file).uuid == original

    def test_confirmed_rerun_regenerates_uuid_and_keeps_tunnel(self, context, make_session, deployed):
        before = load_record(context.record_file)

        result = run_step(make_session(confirm=_always_yes), "configure-xray", force=True)

        assert result.status == "ok"
        after = load_record(context.record_file)
        assert after.uuid != before.uuid
        assert is_client_uuid(after.uuid)
        assert after.tunnel_hostname == before.tunnel_hostname
        assert after.tunnel_id == before.tunnel_id
        assert XrayConfig.from_json(context.xray_config_file.read_text()).client_uuid == after.uuid

    def test_rerender_keeps_existing_uuid(self, context, make_session, deployed):
        """A changed port re-renders the document but keeps the credential."""
        original = load_record(context.record_file).uuid
        moved = context.model_copy(update={"xray_port": 20808})

        result = run_step(make_session(context=moved), "configure-xray")

        assert result.status == "ok"
        config = XrayConfig.from_json(moved.xray_config_file.read_text())
        assert config.inbounds[0].port == 20808
        assert config.client_uuid == original

    def test_forced_rerun_with_drifted_config_asks_first(self, context, make_session, deployed):
        original = load_record(context.record_file).uuid
        moved = context.model_copy(update={"xray_port": 20808})
        asked = []

        def decline(question):
            asked.append(question)
            return False

        result = run_step(make_session(context=moved, confirm=decline), "configure-xray", force=True)

        assert result.status == "cancelled"
        assert len(asked) == 1
        assert "UUID" in asked[0]
        assert load_record(context.record_file).uuid == original
        assert XrayConfig.from_json(context.xray_config_file.read_text()).client_uuid == original

    def test_forced_rerun_asks_when_only_record_holds_uuid(self, context, make_session, deployed):
        original = load_record(context.record_file).uuid
        context.xray_config_file.unlink()

        result = run_step(make_session(), "configure-xray", force=True)

        assert result.status == "cancelled"
        assert load_record(context.record_file).uuid == original

    def test_missing_config_restored_with_recorded_uuid(self, context, make_session, deployed):
        original = load_record(context.record_file).uuid
        context.xray_config_file.unlink()

        result = run_step(make_session(), "configure-xray")

        assert result.status == "ok"
        assert XrayConfig.from_json(context.xray_config_file.read_text()).client_uuid == original


# ── Step 5 ───────────────────────────────────────────────────────────


class TestInstallCloudflared:
    def test_installs_binary(self, context, mock_adapter, make_session, host):
        _deploy_through(make_session, "install-cloudflared")

        assert file_mode(context.cloudflared_bin) == 0o755
        assert file_mode(context.path(context.cloudflared_config_dir)) == 0o750
        assert "cloudflared" in host.users
        assert any("cloudflared-linux-arm64" in c for c in mock_adapter.commands)

    def test_rejects_non_elf_download(self, context, mock_adapter, make_session, host):
        _deploy_through(make_session, "configure-xray")

        def html_page(ctx):
            Path(ctx.params["dest"]).parent.mkdir(parents=True, exist_ok=True)
            Path(ctx.params["dest"]).write_text("<html>rate limited</html>")
            return "25 bytes"

        mock_adapter.on("download https://github.com/cloudflare", html_page)
        result = run_step(make_session(), "install-cloudflared")

        assert result.status == "failed"
        assert "not an ELF binary" in result.failure.message
        assert not context.cloudflared_bin.exists()

    def test_unsupported_architecture(self, context, make_session, host):
        _deploy_through(make_session, "configure-xray")
        host.arch = "mips"

        result = run_step(make_session(), "install-cloudflared")

        assert result.status == "failed"
        assert result.failure.message.startswith("Unsupported platform")
        assert "mips" in result.failure.message


# ── Step 6 ───────────────────────────────────────────────────────────


class TestConfigureTunnel:
    def test_missing_token(self, context, make_session, host):
        _deploy_through(make_session, "install-cloudflared")

        result = run_step(make_session(context=context.model_copy(update={"api_token": None})), "configure-tunnel")

        assert result.status == "failed"
        assert result.failure.message == "Missing credential: CF_API_TOKEN is not set"
        assert "dash.cloudflare.com" in result.failure.detail

    def test_creates_tunnel_and_backfills_record(self, context, mock_adapter, make_session, host):
        _deploy_through(make_session, "configure-tunnel")

        tunnel_id = host.tunnels[context.tunnel_name]
        record = load_record(context.record_file)
        assert record.tunnel_id == tunnel_id
        assert record.tunnel_hostname == f"{tunnel_id}.cfargotunnel.com"
        assert record.tunnel_name == "rpi-exit-pi-test"
        assert is_client_uuid(record.uuid)

        creds = context.path(context.credentials_target(tunnel_id))
        assert file_mode(creds) == 0o600
        assert json.loads(creds.read_text())["TunnelID"] == tunnel_id

        config = TunnelConfig.from_yaml(context.tunnel_config_file.read_text())
        assert config.tunnel == tunnel_id
        assert config.ingress[0].service == "tcp://127.0.0.1:10808"
        assert file_mode(context.tunnel_config_file) == 0o640

    def test_create_failure_explains_token(self, context, mock_adapter, make_session, host):
        _deploy_through(make_session, "install-cloudflared")
        mock_adapter.set_failure("tunnel create", error="Unauthorized: Invalid API token", return_code=1)

        result = run_step(make_session(), "configure-tunnel")

        assert result.status == "failed"
        assert "Unauthorized" in result.failure.detail
        assert "Cloudflare Tunnel: Read, Edit" in result.failure.detail
        assert load_record(context.record_file).hostname_pending

    def test_existing_tunnel_reused_by_default(self, context, mock_adapter, make_session, host):
        _deploy_through(make_session, "install-cloudflared")
        self._existing(context, host, "11111111-2222-4333-8444-555555555555")

        result = run_step(make_session(), "configure-tunnel")

        assert result.status == "ok"
        assert not any("tunnel create" in c for c in mock_adapter.commands)
        assert load_record(context.record_file).tunnel_id == "11111111-2222-4333-8444-555555555555"

    def test_existing_tunnel_recreated_on_confirm(self, context, mock_adapter, make_session, host):
        _deploy_through(make_session, "install-cloudflared")
        self._existing(context, host, "11111111-2222-4333-8444-555555555555")

        result = run_step(make_session(confirm=_always_yes), "configure-tunnel")

        assert result.status == "ok"
        commands = mock_adapter.commands
        delete = next(i for i, c in enumerate(commands) if "tunnel delete -f rpi-exit-pi-test" in c)
        create = next(i for i, c in enumerate(commands) if "tunnel create rpi-exit-pi-test" in c)
        assert delete < create
        assert load_record(context.record_file).tunnel_id == host.tunnels[context.tunnel_name]
        assert host.tunnels[context.tunnel_name] != "11111111-2222-4333-8444-555555555555"

    def test_backfill_without_record_warns(self, context, make_session, host):
        _deploy_through(make_session, "install-cloudflared")
        context.record_file.unlink()

        result = run_step(make_session(), "configure-tunnel")

        assert result.status == "ok"
        assert any("No node record" in w for w in result.outcomes[0].warnings)
        assert not load_record(context.record_file).hostname_pending

    def test_is_done_after_provisioning(self, context, make_session, host):
        _deploy_through(make_session, "configure-tunnel")
        result = run_step(make_session(), "configure-tunnel")
        assert result.skipped == ["configure-tunnel"]

    @staticmethod
    def _existing(context, host, tunnel_id: str) -> None:
        host.tunnels[context.tunnel_name] = tunnel_id
        creds = context.path(f"/root/.cloudflared/{tunnel_id}.json")
        creds.parent.mkdir(parents=True, exist_ok=True)
        creds.write_text(json.dumps({"TunnelID": tunnel_id}))


# ── Step 7 ───────────────────────────────────────────────────────────


class TestEnableServices:
    def test_units_written(self, context, deployed):
        unit = context.unit_file("xray.service").read_text()
        assert "ExecStart=/opt/xray-exit/bin/xray run -config /etc/xray-exit/xray.json" in unit
        assert file_mode(context.unit_file("cloudflared.service")) == 0o644

    def test_primary_not_listening(self, context, mock_adapter, make_session, host):
        _deploy_through(make_session, "configure-tunnel")
        host.binds_port = False

        result = run_step(make_session(), "enable-services")

        assert result.status == "failed"
        assert "not listening on 127.0.0.1:10808" in result.failure.message
        assert "xray[1234]" in result.failure.detail
        assert not any("systemctl start cloudflared.service" in c for c in mock_adapter.commands)

    def test_start_failure_carries_journal(self, context, make_session, host):
        _deploy_through(make_session, "configure-tunnel")
        host.failing_units.add("cloudflared.service")

        result = run_step(make_session(), "enable-services")

        assert result.status == "failed"
        assert result.failure.message == "External tool failed: Failed to start cloudflared.service"
        assert "cloudflared[1234]" in result.failure.detail

    def test_primary_started_before_tunnel(self, mock_adapter, deployed):
        commands = mock_adapter.commands
        start_xray = commands.index("systemctl start xray.service")
        listen_check = next(i for i, c in enumerate(commands) if c == "ss -tlnH" and i > start_xray)
        start_tunnel = commands.index("systemctl start cloudflared.service")
        assert start_xray < listen_check < start_tunnel

