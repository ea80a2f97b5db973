"""PowerShell payloads that fetch CIM/WMI data and report a JSON envelope.

Every script writes exactly one line prefixed with ``RESULT_SENTINEL`` that
holds either ``{"ok": true, "rows": [...]}`` or the native error details
(exception type, HResult, CIM/WMI status name, message).
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Optional

RESULT_SENTINEL = "__CIMGATE_RESULT__:"

# Environment variables carrying explicit credentials to local PowerShell.
USERNAME_ENV = "CIMGATE_USERNAME"
PASSWORD_ENV = "CIMGATE_PASSWORD"

_CIM_EXCLUDED_PROPERTIES = ("CimClass", "CimInstanceProperties", "CimSystemProperties")
_WMI_EXCLUDED_PROPERTIES = (
    "__*",
    "Scope",
    "Path",
    "Options",
    "ClassPath",
    "Properties",
    "SystemProperties",
    "Qualifiers",
    "Site",
    "Container",
)


class ScriptMode(str, Enum):
    """Where and how the CIM data is fetched."""

    CIM_DCOM = "cim-dcom"  # local PowerShell, CIM session over DCOM
    WMI = "wmi"  # local PowerShell, Get-WmiObject over DCOM
    CIM_LOCAL = "cim-local"  # runs on the target inside a remote runspace


def ps_quote(value: str) -> str:
    """Return a single-quoted PowerShell literal."""

    escaped = (value or "").replace("'", "''")
    return f"'{escaped}'"


def build_fetch_script(
    mode: ScriptMode,
    *,
    host: str,
    namespace: str,
    class_name: Optional[str] = None,
    query: Optional[str] = None,
    dialect: str = "WQL",
) -> str:
    """Build the script for a class fetch (``class_name``) or a query."""

    if bool(class_name) == bool(query):
        raise ValueError("Exactly one of class_name or query is required")

    if mode is ScriptMode.WMI:
        target = (
            f"Class = {ps_quote(class_name)}" if class_name else f"Query = {ps_quote(query or '')}"
        )
        body = [
            f"$wmiArgs = @{{ ComputerName = $CimGateHost; Namespace = $CimGateNamespace; {target}; ErrorAction = 'Stop' }}",
            "if ($CimGateCredential) { $wmiArgs.Credential = $CimGateCredential }",
            "$rows = Get-WmiObject @wmiArgs",
        ]
        excluded = _WMI_EXCLUDED_PROPERTIES
    else:
        if class_name:
            fetch = f"-ClassName {ps_quote(class_name)}"
        else:
            fetch = f"-Query {ps_quote(query or '')} -QueryDialect {ps_quote(dialect)}"

        if mode is ScriptMode.CIM_DCOM:
            body = [
                "$option = New-CimSessionOption -Protocol Dcom",
                "$sessionArgs = @{ ComputerName = $CimGateHost; SessionOption = $option; ErrorAction = 'Stop' }",
                "if ($CimGateCredential) { $sessionArgs.Credential = $CimGateCredential }",
                "$session = New-CimSession @sessionArgs",
                "try {",
                f"    $rows = Get-CimInstance -CimSession $session -Namespace $CimGateNamespace {fetch} -ErrorAction Stop",
                "} finally {",
                "    Remove-CimSession -CimSession $session -ErrorAction SilentlyContinue",
                "}",
            ]
        else:
            body = [
                f"$rows = Get-CimInstance -Namespace $CimGateNamespace {fetch} -ErrorAction Stop",
            ]
        excluded = _CIM_EXCLUDED_PROPERTIES

    credential_lines: List[str] = []
    if mode is not ScriptMode.CIM_LOCAL:
        credential_lines = [
            f"if ($env:{USERNAME_ENV}) {{",
            f"    $plain = [string]$env:{PASSWORD_ENV}",
            "    if ($plain) {",
            "        $secure = ConvertTo-SecureString -String $plain -AsPlainText -Force",
            "    } else {",
            "        $secure = New-Object System.Security.SecureString",
            "    }",
            f"    $CimGateCredential = New-Object System.Management.Automation.PSCredential($env:{USERNAME_ENV}, $secure)",
            "}",
        ]

    exclude_literal = ", ".join(ps_quote(name) for name in excluded)
    lines = [
        "$ErrorActionPreference = 'Stop'",
        "$ProgressPreference = 'SilentlyContinue'",
        f"$CimGateHost = {ps_quote(host)}",
        f"$CimGateNamespace = {ps_quote(namespace)}",
        "$CimGateCredential = $null",
        "$CimGateResult = $null",
        "try {",
        *("    " + line for line in credential_lines),
        *("    " + line for line in body),
        f"    $selected = @($rows | Select-Object -Property * -ExcludeProperty {exclude_literal})",
        "    $CimGateResult = @{ ok = $true; rows = $selected }",
        "} catch {",
        "    $ex = $_.Exception",
        "    $probe = $ex",
        "    while ($probe) {",
        "        if ($probe.PSObject.Properties['NativeErrorCode'] -or $probe.PSObject.Properties['ErrorCode']) { $ex = $probe; break }",
        "        $probe = $probe.InnerException",
        "    }",
        "    $name = $null",
        "    if ($ex.PSObject.Properties['NativeErrorCode']) { $name = [string]$ex.NativeErrorCode }",
        "    elseif ($ex.PSObject.Properties['ErrorCode']) { $name = [string]$ex.ErrorCode }",
        "    $status = $null",
        "    if ($ex.PSObject.Properties['StatusCode']) { $status = [int64]$ex.StatusCode }",
        "    $CimGateResult = @{",
        "        ok = $false",
        "        name = $name",
        "        hresult = $ex.HResult",
        "        status = $status",
        "        type = $ex.GetType().FullName",
        "        message = $ex.Message",
        "        fqid = [string]$_.FullyQualifiedErrorId",
        "    }",
        "}",
        f"Write-Output ('{RESULT_SENTINEL}' + (ConvertTo-Json -InputObject $CimGateResult -Depth 4 -Compress))",
    ]
    return "\n".join(lines)


def extract_envelope(output: str) -> Optional[Dict[str, Any]]:
    """Return the last result envelope found in script output, if any."""

    envelope: Optional[Dict[str, Any]] = None
    for line in (output or "").splitlines():
        text = line.strip()
        if not text.startswith(RESULT_SENTINEL):
            continue
        try:
            parsed = json.loads(text[len(RESULT_SENTINEL):])
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            envelope = parsed
    return envelope


def envelope_rows(envelope: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Normalise the ``rows`` member of a successful envelope."""

    rows = envelope.get("rows")
    if rows is None:
        return []
    if isinstance(rows, dict):
        return [rows]
    return [row if isinstance(row, dict) else {"Value": row} for row in rows]


__all__ = [
    "PASSWORD_ENV",
    "RESULT_SENTINEL",
    "ScriptMode",
    "USERNAME_ENV",
    "build_fetch_script",
    "envelope_rows",
    "extract_envelope",
    "ps_quote",
]
