"""CimDCOM and Wmi transports driven through a local PowerShell process."""
from __future__ import annotations

import base64
import logging
import os
import subprocess
from time import perf_counter
from typing import Dict, Mapping, Optional

from ...core.config import settings
from ...core.errors import ClassifiedError
from ...core.models import Credential, ErrorCategory, Protocol
from .base import (
    CIM_STATUS_CATEGORIES,
    MANAGEMENT_STATUS_CATEGORIES,
    RowSet,
    TransportAdapter,
    check_dialect,
    classify_native_error,
)
from .scripts import (
    PASSWORD_ENV,
    USERNAME_ENV,
    ScriptMode,
    build_fetch_script,
    envelope_rows,
    extract_envelope,
)

logger = logging.getLogger(__name__)


def _preview(text: str, max_length: int = 400) -> str:
    sanitized = (text or "").replace("\r\n", "\n").strip()
    if len(sanitized) > max_length:
        return sanitized[: max_length - 3] + "..."
    return sanitized


class LocalPowerShellAdapter(TransportAdapter):
    """Run a generated script with the local PowerShell and read its envelope."""

    mode: ScriptMode
    name_table: Mapping[str, ErrorCategory]

    def fetch_class(
        self,
        host: str,
        credential: Optional[Credential],
        class_name: str,
        namespace: str,
    ) -> RowSet:
        script = build_fetch_script(
            self.mode, host=host, namespace=namespace, class_name=class_name
        )
        logger.info(
            "Fetching %s from %s on %s via %s", class_name, namespace, host, self.protocol.value
        )
        return self._run(host, credential, script)

    def run_query(
        self,
        host: str,
        credential: Optional[Credential],
        query: str,
        dialect: str,
        namespace: str,
    ) -> RowSet:
        dialect = self._check_dialect(host, dialect)
        script = build_fetch_script(
            self.mode, host=host, namespace=namespace, query=query, dialect=dialect
        )
        logger.info("Running %s query on %s via %s", dialect, host, self.protocol.value)
        logger.debug("Query for %s: %s", host, query)
        return self._run(host, credential, script)

    def _check_dialect(self, host: str, dialect: str) -> str:
        return check_dialect(host, self.protocol, dialect)

    def _environment(self, credential: Optional[Credential]) -> Dict[str, str]:
        env = os.environ.copy()
        env.pop(USERNAME_ENV, None)
        env.pop(PASSWORD_ENV, None)
        if credential is not None:
            env[USERNAME_ENV] = credential.username
            env[PASSWORD_ENV] = credential.password.get_secret_value()
        return env

    def _run(self, host: str, credential: Optional[Credential], script: str) -> RowSet:
        encoded = base64.b64encode(script.encode("utf-16-le")).decode("ascii")
        command = [
            settings.powershell_executable,
            "-NoProfile",
            "-NonInteractive",
            "-EncodedCommand",
            encoded,
        ]
        timeout = max(1.0, float(settings.local_powershell_timeout))

        start_time = perf_counter()
        try:
            result = subprocess.run(
                command,
                env=self._environment(credential),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ClassifiedError(
                ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,
                f"[{host}] {self.protocol.value}: PowerShell executable "
                f"'{settings.powershell_executable}' not found on PATH",
                host=host,
                protocol=self.protocol,
                native_name="PowerShellNotFound",
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise ClassifiedError(
                ErrorCategory.TIMEOUT,
                f"[{host}] {self.protocol.value}: PowerShell did not finish within {timeout:.0f}s",
                host=host,
                protocol=self.protocol,
                native_name="TimeoutExpired",
            ) from exc
        except (OSError, subprocess.SubprocessError) as exc:
            raise ClassifiedError(
                ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,
                f"[{host}] {self.protocol.value}: could not start PowerShell: {exc}",
                host=host,
                protocol=self.protocol,
                native_code=getattr(exc, "errno", None),
                native_name=type(exc).__name__,
            ) from exc

        duration = perf_counter() - start_time
        envelope = extract_envelope(result.stdout)
        if envelope is None:
            stderr_preview = _preview(result.stderr) or _preview(result.stdout) or "no output"
            logger.warning(
                "%s script on %s exited with %s without a result: %s",
                self.protocol.value,
                host,
                result.returncode,
                stderr_preview,
            )
            raise ClassifiedError(
                ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,
                f"[{host}] {self.protocol.value}: PowerShell exited with code "
                f"{result.returncode} without a result ({stderr_preview})",
                host=host,
                protocol=self.protocol,
                native_code=result.returncode,
                payload={"stdout": result.stdout, "stderr": result.stderr},
            )

        if not envelope.get("ok"):
            raise classify_native_error(
                host,
                self.protocol,
                str(envelope.get("message") or "unknown error"),
                code=envelope.get("hresult"),
                name=envelope.get("name"),
                name_table=self.name_table,
                payload=envelope,
            )

        rows = envelope_rows(envelope)
        logger.info(
            "%s on %s returned %d row(s) in %.2fs",
            self.protocol.value,
            host,
            len(rows),
            duration,
        )
        return rows


class CimDcomAdapter(LocalPowerShellAdapter):
    """CIM session over DCOM (``New-CimSessionOption -Protocol Dcom``)."""

    protocol = Protocol.CIM_DCOM
    mode = ScriptMode.CIM_DCOM
    name_table = CIM_STATUS_CATEGORIES


class WmiAdapter(LocalPowerShellAdapter):
    """Legacy ``Get-WmiObject`` over DCOM."""

    protocol = Protocol.WMI
    mode = ScriptMode.WMI
    name_table = MANAGEMENT_STATUS_CATEGORIES

    def _check_dialect(self, host: str, dialect: str) -> str:
        canonical = super()._check_dialect(host, dialect)
        if canonical != "WQL":
            raise ClassifiedError(
                ErrorCategory.UNSUPPORTED_OPERATION,
                f"[{host}] {self.protocol.value}: Get-WmiObject only accepts WQL queries",
                host=host,
                protocol=self.protocol,
                native_name="QueryLanguageNotSupported",
            )
        return canonical


__all__ = ["CimDcomAdapter", "LocalPowerShellAdapter", "WmiAdapter"]
