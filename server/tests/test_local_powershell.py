"""Unit tests for the CimDCOM and Wmi transports (local PowerShell)."""

import base64
import json
import subprocess
from types import SimpleNamespace

import pytest

from cimgate.core.errors import ClassifiedError
from cimgate.core.models import Credential, ErrorCategory, Protocol
from cimgate.services.transports import local_powershell as lp_module
from cimgate.services.transports.local_powershell import CimDcomAdapter, WmiAdapter
from cimgate.services.transports.scripts import PASSWORD_ENV, RESULT_SENTINEL, USERNAME_ENV


def _completed(envelope=None, returncode=0, stdout="", stderr=""):
    if envelope is not None:
        stdout = stdout + RESULT_SENTINEL + json.dumps(envelope) + "\n"
    return SimpleNamespace(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def fake_run(monkeypatch):
    calls = []
    outcome = {"result": _completed({"ok": True, "rows": []})}

    def _run(command, **kwargs):
        calls.append(SimpleNamespace(command=command, **kwargs))
        result = outcome["result"]
        if isinstance(result, BaseException):
            raise result
        return result

    monkeypatch.setattr(lp_module.subprocess, "run", _run)
    monkeypatch.setenv(USERNAME_ENV, "leaked\\user")

    def _set(result):
        outcome["result"] = result

    _run.calls = calls
    _run.returns = _set
    return _run


def _decode_script(command):
    return base64.b64decode(command[-1]).decode("utf-16-le")


def test_dcom_fetch_class_returns_rows(fake_run):
    fake_run.returns(
        _completed(
            {"ok": True, "rows": [{"Name": "MSSQLSERVER", "State": "Running"}]},
            stdout="WARNING: something\n",
        )
    )
    credential = Credential(username="DOMAIN\\svc", password="s3cret")

    rows = CimDcomAdapter().fetch_class("sql01", credential, "Win32_Service", "root\\cimv2")

    assert rows == [{"Name": "MSSQLSERVER", "State": "Running"}]
    call = fake_run.calls[0]
    assert call.command[:4] == [lp_module.settings.powershell_executable, "-NoProfile", "-NonInteractive", "-EncodedCommand"]
    assert "s3cret" not in " ".join(call.command)
    assert call.env[USERNAME_ENV] == "DOMAIN\\svc"
    assert call.env[PASSWORD_ENV] == "s3cret"
    script = _decode_script(call.command)
    assert "New-CimSessionOption -Protocol Dcom" in script
    assert "-ClassName 'Win32_Service'" in script


def test_implicit_credential_strips_inherited_variables(fake_run):
    WmiAdapter().fetch_class("sql01", None, "Win32_Service", "root\\cimv2")

    env = fake_run.calls[0].env
    assert USERNAME_ENV not in env
    assert PASSWORD_ENV not in env


def test_wmi_query_script(fake_run):
    WmiAdapter().run_query("sql01", None, "SELECT * FROM Win32_Service", "WQL", "root\\cimv2")

    script = _decode_script(fake_run.calls[0].command)
    assert "Get-WmiObject @wmiArgs" in script
    assert "Query = 'SELECT * FROM Win32_Service'" in script


def test_wmi_rejects_cql_without_running(fake_run):
    with pytest.raises(ClassifiedError) as excinfo:
        WmiAdapter().run_query("sql01", None, "SELECT * FROM CIM_Service", "CQL", "root\\cimv2")

    assert excinfo.value.category is ErrorCategory.UNSUPPORTED_OPERATION
    assert fake_run.calls == []


def test_dcom_accepts_cql(fake_run):
    CimDcomAdapter().run_query("sql01", None, "SELECT * FROM CIM_Service", "cql", "root\\cimv2")

    assert "-QueryDialect 'CQL'" in _decode_script(fake_run.calls[0].command)


@pytest.mark.parametrize(
    ("adapter_cls", "envelope", "category"),
    [
        (
            CimDcomAdapter,
            {"ok": False, "name": "InvalidClass", "hresult": -2146233088, "message": "Invalid class"},
            ErrorCategory.INVALID_TARGET,
        ),
        (
            CimDcomAdapter,
            {"ok": False, "name": "AccessDenied", "hresult": -2147024891, "message": "Access denied"},
            ErrorCategory.AUTHENTICATION_FAILURE,
        ),
        (
            WmiAdapter,
            {"ok": False, "name": "AccessDenied", "hresult": -2146233087, "message": "Access denied"},
            ErrorCategory.PERMISSION_DENIED,
        ),
        (
            WmiAdapter,
            {"ok": False, "name": None, "hresult": -2147023174, "message": "The RPC server is unavailable."},
            ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,
        ),
        (
            WmiAdapter,
            {"ok": False, "name": None, "hresult": -2147024891, "message": "Access is denied."},
            ErrorCategory.AUTHENTICATION_FAILURE,
        ),
    ],
)
def test_native_errors_are_classified(fake_run, adapter_cls, envelope, category):
    fake_run.returns(_completed(envelope, returncode=1))

    with pytest.raises(ClassifiedError) as excinfo:
        adapter_cls().fetch_class("sql01", None, "Win32_Service", "root\\cimv2")

    error = excinfo.value
    assert error.category is category
    assert error.protocol is adapter_cls.protocol
    assert error.payload == envelope


def test_missing_envelope_is_transient(fake_run):
    fake_run.returns(_completed(returncode=1, stderr="pwsh: fatal error"))

    with pytest.raises(ClassifiedError) as excinfo:
        CimDcomAdapter().fetch_class("sql01", None, "Win32_Service", "root\\cimv2")

    assert excinfo.value.category is ErrorCategory.TRANSIENT_PROTOCOL_FAILURE
    assert "pwsh: fatal error" in excinfo.value.message
    assert excinfo.value.native_code == 1


def test_missing_powershell_is_transient(fake_run):
    fake_run.returns(FileNotFoundError("pwsh"))

    with pytest.raises(ClassifiedError) as excinfo:
        WmiAdapter().fetch_class("sql01", None, "Win32_Service", "root\\cimv2")

    assert excinfo.value.category is ErrorCategory.TRANSIENT_PROTOCOL_FAILURE
    assert excinfo.value.native_name == "PowerShellNotFound"


def test_subprocess_timeout_is_timeout(fake_run):
    fake_run.returns(subprocess.TimeoutExpired(cmd="pwsh", timeout=60))

    with pytest.raises(ClassifiedError) as excinfo:
        WmiAdapter().fetch_class("sql01", None, "Win32_Service", "root\\cimv2")

    assert excinfo.value.category is ErrorCategory.TIMEOUT
    assert excinfo.value.protocol is Protocol.WMI
    assert excinfo.value.is_protocol_switchable


@pytest.mark.parametrize(
    "exc",
    [
        PermissionError(13, "Permission denied"),
        OSError(8, "Exec format error"),
        subprocess.SubprocessError("pipe closed"),
    ],
)
def test_launch_failures_are_transient(fake_run, exc):
    fake_run.returns(exc)

    with pytest.raises(ClassifiedError) as excinfo:
        CimDcomAdapter().fetch_class("sql01", None, "Win32_Service", "root\\cimv2")

    error = excinfo.value
    assert error.category is ErrorCategory.TRANSIENT_PROTOCOL_FAILURE
    assert error.protocol is Protocol.CIM_DCOM
    assert error.native_name == type(exc).__name__
    assert error.__cause__ is exc
    assert error.is_protocol_switchable
