"""
End-to-end scenarios: fresh install, resume, uninstall and reinstall.

Each scenario drives the use cases the CLI calls, on the fake host.
"""

import pytest

from exitnode.core.engine.commands import CommandRunner
from exitnode.core.models.pipeline import PipelineState
from exitnode.core.observability import health
from exitnode.core.observability.health import check_node_health
from exitnode.core.persistence.record_file import load_record
from exitnode.core.steps import step_names
from exitnode.core.use_cases.deploy import deploy
from exitnode.core.use_cases.uninstall import tear_down

pytestmark = pytest.mark.scenario


@pytest.fixture(autouse=True)
def _roomy_disk(monkeypatch):
    monkeypatch.setattr(health, "_disk_usage", lambda _path: (100_000, 10_000, 90_000))


class TestFreshInstall:
    def test_deploy_then_healthy(self, context, registry, deployed):
        node = check_node_health(context, CommandRunner(registry))

        assert node.status == "healthy", node.to_dict()
        record = load_record(context.record_file)
        assert not record.hostname_pending
        assert node.get("node_record").message == record.tunnel_hostname
        assert node.get("service:xray").status == "healthy"
        assert node.get("process:cloudflared").details["pid"] == 1234

    def test_run_log_orders_services(self, make_session, host):
        session = make_session()
        result = deploy(session)
        assert result.status == "ok"

        entries = [e for e in session.run_log.read_all() if e.operation_id == session.operation_id]
        events = [(e.event, e.message, e.context.get("unit")) for e in entries]

        listening = events.index(("primary_listening", "", "xray.service"))
        tunnel_start = next(
            i for i, (event, message, _) in enumerate(events)
            if event == "command" and message == "systemctl start cloudflared.service"
        )
        assert listening < tunnel_start
        assert ("service_started", "", "cloudflared.service") in events[tunnel_start:]

        step_order = [e.step for e in entries if e.event == "step_ok"]
        assert step_order == step_names()


class TestResume:
    def test_missing_token_then_resume(self, context, make_session, host):
        no_token = context.model_copy(update={"api_token": None})

        first = deploy(make_session(context=no_token))

        assert first.status == "failed"
        assert first.failure.step == "configure-tunnel"
        assert first.failure.message.startswith("Missing credential")
        assert first.final_state == PipelineState.TUNNEL_DAEMON_INSTALLED
        assert load_record(context.record_file).hostname_pending

        second = deploy(make_session(context=context))

        assert second.status == "ok"
        assert second.skipped == step_names()[:5]
        assert second.executed == ["configure-tunnel", "enable-services"]
        assert not load_record(context.record_file).hostname_pending

    def test_uuid_survives_resume(self, context, make_session, host):
        no_token = context.model_copy(update={"api_token": None})
        deploy(make_session(context=no_token))
        uuid_before = load_record(context.record_file).uuid

        deploy(make_session(context=context))

        assert load_record(context.record_file).uuid == uuid_before


class TestUninstall:
    def test_not_confirmed_touches_nothing(self, context, mock_adapter, make_session, deployed):
        mock_adapter.call_log.clear()

        result = tear_down(make_session(kind="uninstall"), confirmed=False)

        assert result.status == "cancelled"
        assert mock_adapter.commands == []
        assert context.xray_bin.is_file()

    def test_removes_everything(self, context, host, make_session, deployed):
        result = tear_down(make_session(kind="uninstall"), confirmed=True)

        assert result.status == "ok", result.failure
        assert host.active == set()
        assert host.enabled == set()
        assert host.users == set()
        assert host.tunnels == {}
        for path in context.removable_dirs:
            assert not path.exists()
        assert not context.cloudflared_bin.exists()
        assert not context.unit_file("xray.service").exists()
        assert not context.sysctl_file.exists()
        # Go stays unless asked for
        assert context.go_profile.is_file()

    def test_remove_toolchain(self, context, make_session, deployed):
        result = tear_down(make_session(kind="uninstall"), confirmed=True, remove_toolchain=True)

        assert result.status == "ok"
        assert not context.go_profile.exists()

    def test_second_uninstall_skips(self, make_session, deployed):
        tear_down(make_session(kind="uninstall"), confirmed=True)
        result = tear_down(make_session(kind="uninstall"), confirmed=True)

        assert result.status == "ok"
        # Without cloudflared the tunnel cannot be looked up, only reported
        assert result.executed == ["delete-tunnel"]
        assert result.skipped == [
            "stop-services",
            "disable-services",
            "remove-units",
            "remove-files",
            "remove-binaries",
            "remove-users",
        ]

    def test_without_token_asks_for_manual_cleanup(self, context, host, make_session, deployed):
        no_token = context.model_copy(update={"api_token": None})

        result = tear_down(make_session(context=no_token, kind="uninstall"), confirmed=True)

        assert result.status == "ok"
        tunnel = next(o for o in result.outcomes if o.step == "delete-tunnel")
        assert any("dash.cloudflare.com" in w for w in tunnel.warnings)
        assert context.tunnel_name in host.tunnels

    def test_reinstall_gets_new_uuid(self, context, make_session, deployed):
        old = load_record(context.record_file)
        tear_down(make_session(kind="uninstall"), confirmed=True)

        result = deploy(make_session())

        assert result.status == "ok"
        # Go was kept, so only the toolchain step is already done
        assert result.skipped == ["install-deps"]
        new = load_record(context.record_file)
        assert new.uuid != old.uuid
        assert new.tunnel_id != old.tunnel_id
