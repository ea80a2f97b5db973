"""PowerShellRemoting transport: Get-CimInstance inside a remote PSRP runspace."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Iterator, List, Optional

from pypsrp.exceptions import PSInvocationState
from pypsrp.powershell import PowerShell, RunspacePool
from pypsrp.wsman import WSMan

from ...core.config import settings
from ...core.errors import ClassifiedError
from ...core.models import Credential, ErrorCategory, Protocol
from .base import (
    CIM_STATUS_CATEGORIES,
    RowSet,
    TransportAdapter,
    check_dialect,
    classify_native_error,
)
from .scripts import ScriptMode, build_fetch_script, envelope_rows, extract_envelope
from .wsman_session import WSManSessionFactory, wsman_sessions

logger = logging.getLogger(__name__)


@dataclass
class _PSRPStreamCursor:
    """Track consumption of PowerShell pipeline output and error streams."""

    hostname: str
    output_index: int = 0
    error_index: int = 0
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)

    def drain(self, ps: Any) -> None:
        """Collect new output/error records as text."""

        for item in ps.output[self.output_index :]:
            text = self._stringify(item)
            if text:
                self.stdout.append(text)
        self.output_index = len(ps.output)

        for item in ps.streams.error[self.error_index :]:
            text = self._stringify(item)
            if text:
                self.stderr.append(text)
        self.error_index = len(ps.streams.error)

    @property
    def output_text(self) -> str:
        return "\n".join(self.stdout)

    @property
    def error_text(self) -> str:
        return "\n".join(self.stderr)

    @staticmethod
    def _stringify(item: Any) -> str:
        """Best-effort string conversion for PSRP data."""

        if item is None:
            return ""
        if isinstance(item, str):
            return item

        formatter = getattr(item, "to_string", None)
        if callable(formatter):
            try:
                text = formatter()
                if text:
                    return text
            except Exception:  # pragma: no cover
                logger.debug("Failed to format PSRP object via to_string", exc_info=True)
        elif isinstance(formatter, str) and formatter.strip():
            return formatter

        message = getattr(item, "message", None)
        if isinstance(message, str) and message.strip():
            return message
        return str(item)


class PSRemotingAdapter(TransportAdapter):
    """Run the CIM fetch on the target itself through a PSRP runspace pool.

    Connection, authentication and transport failures cannot be told apart
    reliably at this layer, so all of them are TransientProtocolFailure. Only
    errors reported by the remote CIM cmdlet, after the runspace opened, are
    classified, and those never count against the credential.
    """

    protocol = Protocol.POWERSHELL_REMOTING

    def __init__(self, session_factory: Optional[WSManSessionFactory] = None) -> None:
        self._sessions = session_factory or wsman_sessions

    def fetch_class(
        self,
        host: str,
        credential: Optional[Credential],
        class_name: str,
        namespace: str,
    ) -> RowSet:
        script = build_fetch_script(
            ScriptMode.CIM_LOCAL, host=host, namespace=namespace, class_name=class_name
        )
        logger.info("Fetching %s from %s on %s via PowerShell remoting", class_name, namespace, host)
        return self._execute(host, credential, script)

    def run_query(
        self,
        host: str,
        credential: Optional[Credential],
        query: str,
        dialect: str,
        namespace: str,
    ) -> RowSet:
        canonical = check_dialect(host, self.protocol, dialect)
        script = build_fetch_script(
            ScriptMode.CIM_LOCAL, host=host, namespace=namespace, query=query, dialect=canonical
        )
        logger.info("Running %s query on %s via PowerShell remoting", canonical, host)
        logger.debug("Query for %s: %s", host, query)
        return self._execute(host, credential, script)

    def _execute(self, host: str, credential: Optional[Credential], script: str) -> RowSet:
        cursor = _PSRPStreamCursor(hostname=host)
        try:
            with self._session(host, credential) as pool:
                duration = self._invoke(pool, host, script, cursor)
        except ClassifiedError:
            raise
        except Exception as exc:
            logger.warning("PowerShell remoting to %s failed: %s", host, exc)
            raise ClassifiedError(
                ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,
                f"[{host}] PowerShellRemoting: {exc}",
                host=host,
                protocol=self.protocol,
                native_name=type(exc).__name__,
            ) from exc

        envelope = extract_envelope(cursor.output_text)
        if envelope is None:
            detail = cursor.error_text.strip() or "no result returned"
            raise ClassifiedError(
                ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,
                f"[{host}] PowerShellRemoting: {detail}",
                host=host,
                protocol=self.protocol,
                payload={"stdout": cursor.output_text, "stderr": cursor.error_text},
            )

        if not envelope.get("ok"):
            error = classify_native_error(
                host,
                self.protocol,
                str(envelope.get("message") or "unknown error"),
                code=envelope.get("hresult"),
                name=envelope.get("name"),
                name_table=CIM_STATUS_CATEGORIES,
                payload=envelope,
            )
            if error.category is ErrorCategory.AUTHENTICATION_FAILURE:
                error.category = ErrorCategory.TRANSIENT_PROTOCOL_FAILURE
            raise error

        rows = envelope_rows(envelope)
        logger.info(
            "PowerShellRemoting on %s returned %d row(s) in %.2fs", host, len(rows), duration
        )
        return rows

    @contextmanager
    def _session(self, hostname: str, credential: Optional[Credential]) -> Iterator[RunspacePool]:
        """Yield an opened runspace pool for the target host."""

        wsman = self._sessions.create(hostname, credential)
        pool = self._open_runspace_pool(hostname, wsman)
        try:
            yield pool
        finally:
            try:
                pool.close()
            finally:
                self._sessions.dispose(wsman)

    def _open_runspace_pool(self, hostname: str, wsman: WSMan) -> RunspacePool:
        """Open a runspace pool, disposing the session when that fails."""

        start_time = perf_counter()
        pool = RunspacePool(wsman)
        try:
            pool.open()
        except Exception:
            self._sessions.dispose(wsman)
            raise

        logger.debug(
            "Runspace pool on %s opened in %.2fs", hostname, perf_counter() - start_time
        )
        return pool

    def _invoke(
        self,
        pool: RunspacePool,
        hostname: str,
        script: str,
        cursor: _PSRPStreamCursor,
    ) -> float:
        """Run the script in the pool, polling until it completes."""

        ps = PowerShell(pool)
        ps.add_script(script)

        start_time = perf_counter()
        completed = False
        poll_timeout = int(
            max(1.0, min(float(settings.winrm_poll_interval_seconds), float(settings.winrm_operation_timeout)))
        )
        try:
            ps.begin_invoke()
            while True:
                ps.poll_invoke(timeout=poll_timeout)
                cursor.drain(ps)
                if self._state_complete(getattr(ps, "state", None)):
                    break
            ps.end_invoke()
            completed = True
            cursor.drain(ps)
        finally:
            if not completed:
                try:
                    ps.end_invoke()
                except Exception:  # pragma: no cover - best effort cleanup
                    logger.debug("Failed to end PowerShell invocation cleanly", exc_info=True)

        duration = perf_counter() - start_time
        logger.debug(
            "PowerShell invocation on %s finished in %.2fs (state=%s, had_errors=%s)",
            hostname,
            duration,
            self._normalize_state(getattr(ps, "state", None)),
            getattr(ps, "had_errors", False),
        )
        return duration

    @staticmethod
    def _normalize_state(state: object) -> str:
        """Return a normalized string representation of a PS invocation state."""

        if state is None:
            return "unknown"
        name = getattr(state, "name", None)
        if isinstance(name, str):
            return name.lower()
        return str(state).lower()

    @staticmethod
    def _state_complete(state: object) -> bool:
        """Return True when the invocation state indicates completion."""

        terminal_states = {
            getattr(PSInvocationState, "COMPLETED", None),
            getattr(PSInvocationState, "FAILED", None),
            getattr(PSInvocationState, "STOPPED", None),
            getattr(PSInvocationState, "DISCONNECTED", None),
        }
        terminal_states.discard(None)
        if state in terminal_states:
            return True
        return PSRemotingAdapter._normalize_state(state) in {
            "completed",
            "failed",
            "stopped",
            "disconnected",
        }


__all__ = ["PSRemotingAdapter"]
