"""
Tests for observability — node health checks and logging setup.
"""

import logging

import pytest

from exitnode.core.observability import health
from exitnode.core.observability.health import (
    ComponentHealth,
    NodeHealth,
    band,
    check_config,
    check_connectivity,
    check_disk,
    check_load,
    check_memory,
    check_node_health,
    check_node_record,
    check_process,
    check_service,
    check_temperature,
)
from exitnode.core.observability.logging_config import resolve_level, setup_logging
from exitnode.core.persistence.record_file import save_record
from exitnode.core.models.record import NodeRecord


def _write(context, target: str, text: str) -> None:
    path = context.path(target)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


# ── Aggregation ──────────────────────────────────────────────────────


class TestNodeHealth:
    def test_empty_is_healthy(self):
        assert NodeHealth().status == "healthy"

    def test_worst_component_wins(self):
        node = NodeHealth()
        node.add(ComponentHealth("a", "healthy"))
        node.add(ComponentHealth("b", "degraded"))
        assert node.status == "degraded"
        assert node.ok
        node.add(ComponentHealth("c", "unhealthy"))
        assert node.status == "unhealthy"
        assert not node.ok

    def test_unknown_component(self):
        node = NodeHealth()
        node.add(ComponentHealth("a", "healthy"))
        node.add(ComponentHealth("b"))
        assert node.status == "unknown"

    def test_absent_sensor_ignored(self):
        node = NodeHealth()
        node.add(None)
        assert node.components == []

    def test_to_dict(self):
        node = NodeHealth()
        node.add(ComponentHealth("port", "healthy", "xray listening on 10808"))
        data = node.to_dict()
        assert data["status"] == "healthy"
        assert data["components"][0]["name"] == "port"
        assert data["timestamp"]


class TestBands:
    @pytest.mark.parametrize(
        "value, expected",
        [(50.0, "healthy"), (70.0, "healthy"), (75.0, "degraded"), (80.0, "degraded"), (80.1, "unhealthy")],
    )
    def test_temperature_bands(self, value, expected):
        assert band(value, health.TEMPERATURE_BANDS) == expected


# ── Individual checks ────────────────────────────────────────────────


class TestServiceChecks:
    def test_service_active(self, commands, host, mock_adapter):
        host.active.add("xray.service")
        component = check_service(commands, "xray.service")
        assert component.name == "service:xray"
        assert component.status == "healthy"
        assert component.details["active_since"].startswith("Mon")
        assert component.details["journal"]
        assert any("-n 10" in c for c in mock_adapter.commands if "journalctl" in c)

    def test_service_failed_includes_journal(self, commands, host):
        host.failing_units.add("cloudflared.service")
        component = check_service(commands, "cloudflared.service")
        assert component.status == "unhealthy"
        assert component.message == "failed"
        assert component.details["journal"]

    def test_process_running(self, commands, host):
        host.active.add("xray.service")
        component = check_process(commands, "xray")
        assert component.status == "healthy"
        assert component.details == {"pid": 1234, "memory_mb": 20.0, "cpu_percent": 1.5}

    def test_process_missing(self, commands, host):
        assert check_process(commands, "xray").status == "unhealthy"

    def test_connectivity_degraded(self, commands, host):
        host.online = False
        component = check_connectivity(commands)
        assert component.status == "degraded"
        assert "1.1.1.1" in component.message


class TestFileChecks:
    def test_config_missing(self, context):
        component = check_config(context)
        assert component.status == "unhealthy"
        assert "xray" in component.message

    def test_record_missing(self, context):
        assert check_node_record(context).status == "unhealthy"

    def test_record_corrupt(self, context):
        context.record_file.parent.mkdir(parents=True, exist_ok=True)
        context.record_file.write_text("{oops")
        assert check_node_record(context).status == "unhealthy"

    def test_record_pending_is_degraded(self, context):
        save_record(NodeRecord(uuid="0b3a4c1e-5f6d-4a7b-8c9d-0e1f2a3b4c5d"), context.record_file)
        component = check_node_record(context)
        assert component.status == "degraded"
        assert component.message == "Tunnel hostname pending"


class TestResourceChecks:
    def test_temperature_absent(self, context):
        assert check_temperature(context) is None

    @pytest.mark.parametrize(
        "millidegrees, expected",
        [("45000", "healthy"), ("75000", "degraded"), ("85000", "unhealthy")],
    )
    def test_temperature(self, context, millidegrees, expected):
        _write(context, "/sys/class/thermal/thermal_zone0/temp", millidegrees + "\n")
        component = check_temperature(context)
        assert component.status == expected

    def test_memory(self, context):
        _write(
            context,
            "/proc/meminfo",
            "MemTotal:        1000000 kB\nMemFree:          50000 kB\nMemAvailable:     150000 kB\n",
        )
        component = check_memory(context)
        assert component.details["used_percent"] == 85.0
        assert component.status == "degraded"

    def test_disk_critical(self, context, monkeypatch):
        monkeypatch.setattr(health, "_disk_usage", lambda _path: (1000, 950, 50))
        component = check_disk(context)
        assert component.status == "unhealthy"
        assert component.details["used_percent"] == 95.0

    def test_load(self, context):
        _write(context, "/proc/loadavg", "0.42 0.30 0.25 1/123 4567\n")
        assert check_load(context).message == "0.42 0.30 0.25"


class TestNodeHealthCheck:
    def test_nothing_deployed(self, context, commands, host, monkeypatch):
        monkeypatch.setattr(health, "_disk_usage", lambda _path: (1000, 100, 900))
        node = check_node_health(context, commands)
        assert node.status == "unhealthy"
        assert node.get("port").status == "unhealthy"
        assert node.get("connectivity").status == "healthy"

    def test_hot_but_running(self, context, commands, deployed, monkeypatch):
        monkeypatch.setattr(health, "_disk_usage", lambda _path: (1000, 100, 900))
        _write(context, "/sys/class/thermal/thermal_zone0/temp", "72500\n")

        node = check_node_health(context, commands)

        assert node.status == "degraded"
        assert node.ok
        assert node.get("temperature").message == "72.5°C"


# ── Logging ──────────────────────────────────────────────────────────


class TestLogging:
    def test_resolve_level(self):
        assert resolve_level(debug=True, verbose=True) == "DEBUG"
        assert resolve_level(verbose=True) == "INFO"
        assert resolve_level(quiet=True) == "ERROR"
        assert resolve_level(environ={"XRAY_EXIT_LOG_LEVEL": "INFO"}) == "INFO"
        assert resolve_level(environ={}) == "WARNING"

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "exitnode.log"
        setup_logging(level="WARNING", log_file=str(log_file), log_file_level="DEBUG")
        try:
            logging.getLogger("exitnode.test").debug("into the file only")
            for handler in logging.getLogger().handlers:
                handler.flush()
            assert "into the file only" in log_file.read_text()
        finally:
            for handler in list(logging.getLogger().handlers):
                if isinstance(handler, logging.FileHandler):
                    handler.close()
                    logging.getLogger().removeHandler(handler)

    def test_bad_level_falls_back(self):
        setup_logging(level="LOUD")
        assert logging.getLogger().level == logging.WARNING
