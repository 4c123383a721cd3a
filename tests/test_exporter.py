"""
Exporter Host Tests

Covers:
1. Program configuration loading, validation and reload
2. Check registry
3. Collection scheduling and statistics
4. Health endpoint responses

Run with:
    pytest tests/test_exporter.py -v
"""

import json
import logging
import os

import pytest
import yaml
from prometheus_client import CollectorRegistry
from unittest.mock import MagicMock

import systemd_metrics_exporter as exporter_module
from systemd_metrics_exporter import (
    CheckBase,
    HealthCheck,
    ListUnitsError,
    MetricsCollector,
    ProgramConfig,
    ProgramConfigurationError,
    ProgramSource,
    SenderManager,
    ServiceManagerError,
    UnitStatus,
    UnknownCheckError,
    get_check_factory,
    register_check,
    registered_checks,
)


LOGGER = logging.getLogger("tests.exporter")


# ============================================================================
# FIXTURES
# ============================================================================

def _write_config(path, config, bump_mtime=False):
    path.write_text(yaml.safe_dump(config))
    if bump_mtime:
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))


def _base_config(**checks):
    return {
        "exporter": {
            "metrics_port": 19101,
            "health_port": 19102,
            "collection": {"poll_interval_sec": 1, "failure_threshold": 2},
        },
        "checks": checks or {
            "systemd": {"init_config": {}, "instances": [{"unit_names": ["a.service"]}]}
        },
    }


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "exporter.yml"
    _write_config(path, _base_config())
    return path


@pytest.fixture
def source(tmp_path, config_path):
    return ProgramSource(script_path=tmp_path / "exporter.py", config_file=config_path)


@pytest.fixture
def config(source):
    program_config = ProgramConfig(source)
    program_config.logger = LOGGER
    program_config.initialize()
    return program_config


class FakeProvider:
    def __init__(self, units=None):
        self.units = units if units is not None else [
            UnitStatus("a.service", "loaded", "active", "running"),
        ]
        self.fail = False
        self.closed = 0

    def open(self):
        return self

    def list_units(self):
        if self.fail:
            raise ServiceManagerError("list failed")
        return self.units

    def close(self, connection):
        self.closed += 1


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def collector(config, registry, provider):
    return MetricsCollector(
        config,
        LOGGER,
        SenderManager(LOGGER, registry),
        provider,
        registry,
    )


# ============================================================================
# PROGRAM CONFIG
# ============================================================================

class TestProgramConfig:

    def test_loads_exporter_and_checks(self, config):
        assert config.metrics_port == 19101
        assert config.health_port == 19102
        assert config.poll_interval == 1
        assert config.failure_threshold == 2
        assert config.command_timeout == ProgramConfig.DEFAULT_COMMAND_TIMEOUT
        assert config.logging["level"] == ProgramConfig.DEFAULT_LOG_LEVEL
        assert config.checks["systemd"]["instances"] == [{"unit_names": ["a.service"]}]

    def test_missing_checks_section(self, source, config_path):
        _write_config(config_path, {"exporter": {}})
        program_config = ProgramConfig(source)
        with pytest.raises(ProgramConfigurationError):
            program_config.initialize()

    @pytest.mark.parametrize("exporter", [
        {"metrics_port": 0},
        {"health_port": "9102"},
        {"metrics_port": 9200, "health_port": 9200},
    ])
    def test_invalid_ports(self, source, config_path, exporter):
        config = _base_config()
        config["exporter"] = exporter
        _write_config(config_path, config)
        with pytest.raises(ProgramConfigurationError):
            ProgramConfig(source).initialize()

    def test_invalid_check_entries_skipped(self, source, config_path):
        _write_config(config_path, _base_config(
            systemd={"instances": [{"unit_names": []}, "not-a-mapping"]},
            broken={"instances": []},
            other="nope",
        ))
        program_config = ProgramConfig(source)
        program_config.initialize()

        assert list(program_config.checks) == ["systemd"]
        assert program_config.checks["systemd"]["instances"] == [{"unit_names": []}]
        assert program_config.checks["systemd"]["init_config"] == {}

    def test_reload_triggers_callback(self, config, config_path):
        callback = MagicMock()
        config.register_reload_callback(callback)

        new_config = _base_config(systemd={"instances": [{"unit_names": ["b.service"]}]})
        new_config["exporter"]["metrics_port"] = 29101
        _write_config(config_path, new_config, bump_mtime=True)
        config.check_reload()

        callback.assert_called_once()
        assert config.checks["systemd"]["instances"] == [{"unit_names": ["b.service"]}]
        # exporter section only read on first load
        assert config.metrics_port == 19101

    def test_reload_failure_keeps_config(self, config, config_path):
        config_path.write_text("checks: [unclosed")
        stat = config_path.stat()
        os.utime(config_path, (stat.st_atime, stat.st_mtime + 10))

        config.check_reload()

        assert config.checks["systemd"]["instances"] == [{"unit_names": ["a.service"]}]


# ============================================================================
# REGISTRY
# ============================================================================

class TestRegistry:

    def test_unknown_check(self):
        with pytest.raises(UnknownCheckError):
            get_check_factory("does-not-exist")

    def test_register_and_list(self, monkeypatch):
        monkeypatch.setattr(exporter_module, "_check_factories", {})
        factory = MagicMock()

        register_check("dummy", factory)

        assert get_check_factory("dummy") is factory
        assert registered_checks() == ["dummy"]

    def test_overwrite_warns(self, monkeypatch, caplog):
        monkeypatch.setattr(exporter_module, "_check_factories", {})
        register_check("dummy", MagicMock())
        second = MagicMock()

        with caplog.at_level(logging.WARNING):
            register_check("dummy", second)

        assert get_check_factory("dummy") is second
        assert any("dummy" in r.getMessage() for r in caplog.records)


# ============================================================================
# COLLECTION
# ============================================================================

class TestMetricsCollector:

    def test_builds_configured_instances(self, collector):
        assert len(collector.scheduled) == 1
        check = collector.scheduled[0].check
        assert check.name == "systemd"
        assert check.config.instance.unit_names == ("a.service",)

    def test_run_publishes_and_counts(self, collector, registry, provider):
        assert collector.collect_all_metrics() is True

        check = collector.scheduled[0].check
        assert registry.get_sample_value(
            "systemd_unit_active_count", {"check_id": check.check_id}
        ) == 1.0
        assert collector.stats.successful == 1
        assert collector.stats.errors == 0
        assert registry.get_sample_value("exporter_collection_successful_total") == 1.0
        assert provider.closed == 1

    def test_interval_respected(self, collector, provider):
        collector.collect_all_metrics()
        collector.collect_all_metrics()

        assert collector.scheduled[0].runs == 1
        assert provider.closed == 1

    def test_failures_tracked(self, collector, provider):
        provider.fail = True

        assert collector.collect_all_metrics() is False

        scheduled = collector.scheduled[0]
        assert scheduled.failures == 1
        assert "list failed" in scheduled.last_error
        assert collector.stats.errors == 1
        assert collector.stats.consecutive_failures == 1
        assert provider.closed == 1

    def test_consecutive_failures_reset(self, collector, provider):
        provider.fail = True
        collector.collect_all_metrics()
        collector.scheduled[0].last_run = None
        provider.fail = False
        collector.collect_all_metrics()

        assert collector.stats.consecutive_failures == 0
        assert collector.scheduled[0].last_error is None

    def test_invalid_instance_skipped(self, source, config_path, registry, provider):
        _write_config(config_path, _base_config(systemd={"instances": [
            {"unit_names": "oops"},
            {"unit_regex": ["[", "ok.*"]},
        ]}))
        program_config = ProgramConfig(source)
        program_config.initialize()

        collector = MetricsCollector(
            program_config, LOGGER, SenderManager(LOGGER, registry), provider, registry
        )

        assert len(collector.scheduled) == 1
        assert collector.scheduled[0].check.config.instance.unit_regex_strings == ("[", "ok.*")

    def test_unknown_check_skipped(self, source, config_path, registry, provider):
        _write_config(config_path, _base_config(
            systemd={"instances": [{}]},
            nosuch={"instances": [{}]},
        ))
        program_config = ProgramConfig(source)
        program_config.initialize()

        collector = MetricsCollector(
            program_config, LOGGER, SenderManager(LOGGER, registry), provider, registry
        )

        assert [s.check.name for s in collector.scheduled] == ["systemd"]

    def test_reload_rebuilds_checks(self, collector, config_path):
        _write_config(
            config_path,
            _base_config(systemd={"instances": [{"unit_names": ["x.service"]}, {}]}),
            bump_mtime=True,
        )

        collector.collect_all_metrics()

        assert len(collector.scheduled) == 2
        assert collector.scheduled[0].check.config.instance.unit_names == ("x.service",)
        assert all(s.runs == 1 for s in collector.scheduled)

    def test_reload_drops_series_of_removed_checks(self, collector, config_path, registry, provider):
        collector.collect_all_metrics()
        old_id = collector.scheduled[0].check.check_id
        assert registry.get_sample_value(
            "systemd_unit_active_count", {"check_id": old_id}
        ) == 1.0

        provider.units = []
        _write_config(
            config_path,
            _base_config(systemd={"instances": [{"unit_names": ["b.service"]}]}),
            bump_mtime=True,
        )
        collector.collect_all_metrics()

        new_id = collector.scheduled[0].check.check_id
        assert new_id != old_id
        assert registry.get_sample_value("systemd_unit_active_count", {"check_id": old_id}) is None
        assert registry.get_sample_value("systemd_unit_cpu", {"check_id": old_id}) is None
        assert registry.get_sample_value(
            "systemd_unit_active_count", {"check_id": new_id}
        ) == 0.0

    def test_check_base_is_abstract(self):
        with pytest.raises(TypeError):
            CheckBase("incomplete", LOGGER)

    def test_custom_check_factory(self, monkeypatch, source, config_path, registry, provider):
        class CountingCheck(CheckBase):
            def __init__(self, logger, sender_manager, connection_provider):
                super().__init__("counting", logger)
                self.calls = 0

            def configure(self, raw_instance, raw_init_config):
                self.interval = self.common_configure(raw_instance)

            def run(self):
                self.calls += 1
                raise ListUnitsError("boom")

        monkeypatch.setitem(exporter_module._check_factories, "counting", CountingCheck)
        _write_config(config_path, _base_config(counting={"instances": [{}]}))
        program_config = ProgramConfig(source)
        program_config.initialize()

        collector = MetricsCollector(
            program_config, LOGGER, SenderManager(LOGGER, registry), provider, registry
        )
        collector.collect_all_metrics()

        assert collector.scheduled[0].check.calls == 1
        assert collector.scheduled[0].last_error == "boom"


# ============================================================================
# HEALTH
# ============================================================================

class TestHealthCheck:

    def _call(self, app, path):
        captured = {}

        def start_response(status, headers):
            captured["status"] = status
            captured["headers"] = dict(headers)

        body = b"".join(app({"PATH_INFO": path}, start_response))
        return captured["status"], json.loads(body)

    def test_healthy(self, config, collector):
        collector.collect_all_metrics()
        app = HealthCheck(config, collector, LOGGER).create_wsgi_app()

        status, body = self._call(app, "/health")

        assert status == "200 OK"
        assert body["service"]["status"] == "healthy"
        assert body["stats"]["collection"]["successful"] == 1
        assert body["checks"][0]["check"] == "systemd"
        assert body["checks"][0]["last_error"] is None

    def test_unhealthy_after_threshold(self, config, collector, provider):
        provider.fail = True
        for _ in range(config.failure_threshold):
            collector.scheduled[0].last_run = None
            collector.collect_all_metrics()
        app = HealthCheck(config, collector, LOGGER).create_wsgi_app()

        status, body = self._call(app, "/health")

        assert status == "503 Service Unavailable"
        assert body["service"]["status"] == "unhealthy"
        assert "list failed" in body["checks"][0]["last_error"]

    def test_config_file_removed(self, config, collector, config_path):
        collector.collect_all_metrics()
        config_path.unlink()
        app = HealthCheck(config, collector, LOGGER).create_wsgi_app()

        status, body = self._call(app, "/health")

        assert status == "200 OK"
        assert body["stats"]["configuration"]["config_path"] == str(config_path)

    def test_stop_shuts_down_server(self, config, collector):
        health = HealthCheck(config, collector, LOGGER)
        server, thread = MagicMock(), MagicMock()
        thread.is_alive.return_value = False
        health._server, health._thread = server, thread

        health.stop()
        health.stop()

        server.shutdown.assert_called_once()
        server.server_close.assert_called_once()
        thread.join.assert_called_once_with(timeout=5)
        assert health._server is None

    def test_stop_error_logged(self, config, collector, caplog):
        health = HealthCheck(config, collector, LOGGER)
        health._server = MagicMock()
        health._server.shutdown.side_effect = OSError("bad fd")

        with caplog.at_level(logging.ERROR, logger=LOGGER.name):
            health.stop()

        assert any("bad fd" in r.getMessage() for r in caplog.records)
        assert health._server is None

    def test_not_found(self, config, collector):
        app = HealthCheck(config, collector, LOGGER).create_wsgi_app()

        status, body = self._call(app, "/metrics")

        assert status == "404 Not Found"
        assert body["error"] == "Not Found"
