"""Configuration validation utilities."""
from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .config import (
    settings,
    set_config_validation_result,
    get_config_validation_result,
)
from .host_config import HostConfigError, load_host_configuration, parse_protocol_names
from .models import Protocol


@dataclass
class ConfigIssue:
    """Represents a single configuration issue."""

    message: str
    hint: Optional[str] = None


@dataclass
class ConfigValidationResult:
    """Outcome of running configuration checks."""

    checked_at: datetime
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def _warn(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.warnings.append(ConfigIssue(message=message, hint=hint))


def _error(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.errors.append(ConfigIssue(message=message, hint=hint))


def run_config_checks(force: bool = False) -> ConfigValidationResult:
    """Validate configuration combinations and cache the result."""

    if not force:
        cached = get_config_validation_result()
        if cached is not None:
            return cached

    result = ConfigValidationResult(checked_at=datetime.now(timezone.utc))

    # Default protocol set for new host records.
    protocols: List[Protocol] = []
    try:
        protocols = parse_protocol_names(settings.get_enabled_protocol_names())
    except ValueError as exc:
        _error(
            result,
            f"CIMGATE_ENABLED_PROTOCOLS is invalid: {exc}",
            "Use a comma-separated subset of CimRM, CimDCOM, Wmi, PowerShellRemoting.",
        )
    else:
        if not protocols:
            _error(
                result,
                "CIMGATE_ENABLED_PROTOCOLS does not enable any protocol.",
                "Every negotiation will fail until at least one protocol is enabled.",
            )

    # CimDCOM and Wmi shell out to a local PowerShell.
    needs_powershell = {Protocol.CIM_DCOM, Protocol.WMI} & set(protocols)
    if needs_powershell and shutil.which(settings.powershell_executable) is None:
        names = ", ".join(p.value for p in protocols if p in needs_powershell)
        _warn(
            result,
            f"PowerShell executable '{settings.powershell_executable}' was not found on PATH.",
            f"{names} attempts will fail over to the next protocol. "
            "Install PowerShell or set CIMGATE_POWERSHELL_EXECUTABLE.",
        )

    # Kerberos for the implicit identity - warn when partially configured.
    if settings.winrm_kerberos_principal and not settings.winrm_kerberos_keytab:
        _warn(
            result,
            "CIMGATE_WINRM_KERBEROS_PRINCIPAL is set but CIMGATE_WINRM_KERBEROS_KEYTAB is missing.",
            "Without a keytab the implicit identity relies on an existing ticket cache.",
        )
    elif settings.winrm_kerberos_keytab and not settings.winrm_kerberos_principal:
        _warn(
            result,
            "CIMGATE_WINRM_KERBEROS_KEYTAB is set but CIMGATE_WINRM_KERBEROS_PRINCIPAL is missing.",
            "Set CIMGATE_WINRM_KERBEROS_PRINCIPAL to the principal name (e.g., user@REALM).",
        )
    elif settings.has_kerberos_config():
        keytab_path = Path(str(settings.winrm_kerberos_keytab).strip())
        if not keytab_path.is_file():
            _error(
                result,
                f"Kerberos keytab not found at {keytab_path}.",
                "Point CIMGATE_WINRM_KERBEROS_KEYTAB at a readable keytab file.",
            )

    if settings.host_config_path:
        try:
            load_host_configuration(settings.host_config_path)
        except HostConfigError as exc:
            _error(
                result,
                str(exc),
                "Fix or remove CIMGATE_HOST_CONFIG_PATH; per-host settings are not applied.",
            )

    if settings.negotiation_concurrency < 1:
        _warn(
            result,
            "CIMGATE_NEGOTIATION_CONCURRENCY is below 1; hosts will be negotiated one at a time.",
        )

    if settings.protocol_attempt_timeout is not None and settings.protocol_attempt_timeout <= 0:
        _warn(
            result,
            "CIMGATE_PROTOCOL_ATTEMPT_TIMEOUT is not positive; attempts are not bounded.",
            "Unset it or provide a positive number of seconds.",
        )

    if not settings.connection_cache_enabled:
        _warn(
            result,
            "Connection cache is disabled; protocol and credential outcomes are not remembered.",
        )

    set_config_validation_result(result)
    return result
