"""Tests for FastAPI lifespan behaviour in main application."""

from datetime import datetime, timezone

from fastapi.testclient import TestClient

from cimgate import main
from cimgate.core import config as app_config, config_validation
from cimgate.core.host_config import HostConfiguration
from cimgate.core.models import Protocol


def _clean_result():
    return config_validation.ConfigValidationResult(checked_at=datetime.now(timezone.utc))


def test_startup_applies_host_configuration_file(monkeypatch, tmp_path):
    path = tmp_path / "hosts.yaml"
    path.write_text("hosts:\n  sql05:\n    enabled_protocols: [Wmi]\n", encoding="utf-8")

    monkeypatch.setattr(main, "run_config_checks", _clean_result)
    monkeypatch.setattr(main.settings, "host_config_path", str(path))
    monkeypatch.setattr(main.connection_cache, "_host_configuration", HostConfiguration())

    with TestClient(main.app):
        record = main.connection_cache.checkout("SQL05")

    assert record.protocols.enabled_in_order() == [Protocol.WMI]


def test_unreadable_host_configuration_does_not_block_startup(monkeypatch, tmp_path):
    monkeypatch.setattr(main, "run_config_checks", _clean_result)
    monkeypatch.setattr(main.settings, "host_config_path", str(tmp_path / "missing.yaml"))
    monkeypatch.setattr(main.connection_cache, "_host_configuration", HostConfiguration())

    with TestClient(main.app) as client:
        assert client.get("/healthz").status_code == 200

    record = main.connection_cache.checkout("sql05")
    assert record.protocols.enabled_in_order() == main.connection_cache._default_protocols


def test_startup_with_configuration_errors_reports_not_ready(monkeypatch):
    monkeypatch.setattr(app_config, "_config_validation_result", None, raising=False)

    config_result = _clean_result()
    config_result.errors.append(config_validation.ConfigIssue(message="keytab missing"))
    app_config.set_config_validation_result(config_result)

    monkeypatch.setattr(main, "run_config_checks", lambda: config_result)

    with TestClient(main.app) as client:
        cached_result = app_config.get_config_validation_result()
        assert cached_result is config_result
        assert cached_result.has_errors is True

        response = client.get("/readyz")

    assert response.status_code == 200
    assert response.json()["status"] == "config_error"
