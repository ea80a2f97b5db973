"""
Tests for configuration module.
"""
import os
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from cimgate.core import config_validation
from cimgate.core.config import Settings


@pytest.mark.unit
class TestSettings:
    """Test configuration settings."""

    def test_default_settings(self):
        """Test that default settings are loaded correctly."""
        settings = Settings()

        assert settings.app_name == "CimGate"
        assert settings.debug is False
        assert settings.connection_cache_enabled is True
        assert settings.prefer_good_credential is False
        assert settings.prefer_implicit_credential is False
        assert settings.get_enabled_protocol_names() == [
            "CimRM",
            "CimDCOM",
            "Wmi",
            "PowerShellRemoting",
        ]

    def test_settings_from_env(self):
        """Test that settings can be loaded from environment variables."""
        env_vars = {
            "CIMGATE_DEBUG": "true",
            "CIMGATE_CONNECTION_CACHE_ENABLED": "false",
            "CIMGATE_ENABLED_PROTOCOLS": "CimRM, Wmi",
            "CIMGATE_NEGOTIATION_CONCURRENCY": "3",
            "CIMGATE_PROTOCOL_ATTEMPT_TIMEOUT": "12.5",
            "CIMGATE_WINRM_PORT": "5986",
        }

        with patch.dict(os.environ, env_vars):
            settings = Settings()

            assert settings.debug is True
            assert settings.connection_cache_enabled is False
            assert settings.get_enabled_protocol_names() == ["CimRM", "Wmi"]
            assert settings.negotiation_concurrency == 3
            assert settings.protocol_attempt_timeout == 12.5
            assert settings.winrm_port == 5986

    def test_empty_protocol_list(self):
        with patch.dict(os.environ, {"CIMGATE_ENABLED_PROTOCOLS": ""}):
            settings = Settings()

        assert settings.get_enabled_protocol_names() == []

    def test_kerberos_requires_principal_and_keytab(self):
        with patch.dict(os.environ, {"CIMGATE_WINRM_KERBEROS_PRINCIPAL": "svc@EXAMPLE.COM"}):
            assert Settings().has_kerberos_config() is False

        env_vars = {
            "CIMGATE_WINRM_KERBEROS_PRINCIPAL": "svc@EXAMPLE.COM",
            "CIMGATE_WINRM_KERBEROS_KEYTAB": "/etc/cimgate/svc.keytab",
        }
        with patch.dict(os.environ, env_vars):
            assert Settings().has_kerberos_config() is True


def _validation_settings(**overrides):
    values = dict(
        enabled_protocols="CimRM,CimDCOM,Wmi,PowerShellRemoting",
        powershell_executable="pwsh",
        winrm_kerberos_principal=None,
        winrm_kerberos_keytab=None,
        host_config_path=None,
        negotiation_concurrency=8,
        protocol_attempt_timeout=None,
        connection_cache_enabled=True,
    )
    values.update(overrides)
    namespace = SimpleNamespace(**values)
    namespace.get_enabled_protocol_names = lambda: [
        p.strip() for p in namespace.enabled_protocols.split(",") if p.strip()
    ]
    namespace.has_kerberos_config = lambda: bool(
        namespace.winrm_kerberos_principal and namespace.winrm_kerberos_keytab
    )
    return namespace


@pytest.fixture
def stub_settings(monkeypatch):
    def _apply(**overrides):
        stub = _validation_settings(**overrides)
        monkeypatch.setattr(config_validation, "settings", stub)
        return stub

    monkeypatch.setattr(config_validation.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(config_validation, "set_config_validation_result", lambda result: None)
    return _apply


@pytest.mark.unit
class TestConfigValidation:
    def test_clean_configuration_has_no_issues(self, stub_settings):
        stub_settings()

        result = config_validation.run_config_checks(force=True)

        assert not result.has_errors
        assert not result.has_warnings

    def test_unknown_protocol_is_an_error(self, stub_settings):
        stub_settings(enabled_protocols="CimRM,Telnet")

        result = config_validation.run_config_checks(force=True)

        assert result.has_errors
        assert "Telnet" in result.errors[0].message

    def test_no_enabled_protocols_is_an_error(self, stub_settings):
        stub_settings(enabled_protocols="")

        result = config_validation.run_config_checks(force=True)

        assert any("does not enable any protocol" in issue.message for issue in result.errors)

    def test_missing_powershell_warns_only_when_dcom_protocols_enabled(
        self, stub_settings, monkeypatch
    ):
        monkeypatch.setattr(config_validation.shutil, "which", lambda name: None)

        stub_settings(enabled_protocols="CimDCOM,Wmi")
        result = config_validation.run_config_checks(force=True)
        assert any("was not found on PATH" in issue.message for issue in result.warnings)

        stub_settings(enabled_protocols="CimRM,PowerShellRemoting")
        result = config_validation.run_config_checks(force=True)
        assert not result.has_warnings

    def test_principal_without_keytab_warns(self, stub_settings):
        stub_settings(winrm_kerberos_principal="svc@EXAMPLE.COM")

        result = config_validation.run_config_checks(force=True)

        assert not result.has_errors
        assert "KEYTAB is missing" in result.warnings[0].message

    def test_missing_keytab_file_is_an_error(self, stub_settings, tmp_path):
        stub_settings(
            winrm_kerberos_principal="svc@EXAMPLE.COM",
            winrm_kerberos_keytab=str(tmp_path / "missing.keytab"),
        )

        result = config_validation.run_config_checks(force=True)

        assert any("Kerberos keytab not found" in issue.message for issue in result.errors)

    def test_unreadable_host_config_is_an_error(self, stub_settings, tmp_path):
        broken = tmp_path / "hosts.yaml"
        broken.write_text("hosts:\n  sql01:\n    enabled_protocols: [Gopher]\n", encoding="utf-8")
        stub_settings(host_config_path=str(broken))

        result = config_validation.run_config_checks(force=True)

        assert result.has_errors
        assert "Invalid host configuration" in result.errors[0].message

    def test_disabled_cache_warns(self, stub_settings):
        stub_settings(connection_cache_enabled=False)

        result = config_validation.run_config_checks(force=True)

        assert any("cache is disabled" in issue.message for issue in result.warnings)

    def test_cached_result_is_reused(self, monkeypatch):
        sentinel = config_validation.ConfigValidationResult(checked_at=None)
        monkeypatch.setattr(config_validation, "get_config_validation_result", lambda: sentinel)

        assert config_validation.run_config_checks() is sentinel
