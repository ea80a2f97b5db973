"""WS-Management sessions shared by the CimRM and PowerShellRemoting transports."""
from __future__ import annotations

import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

from pypsrp.wsman import WSMan

from ...core.config import settings
from ...core.models import Credential

logger = logging.getLogger(__name__)


class KerberosTicketError(RuntimeError):
    """Raised when the implicit identity cannot obtain a Kerberos ticket."""


class WSManSessionFactory:
    """Create per-operation WSMan sessions for explicit or implicit credentials.

    The implicit identity authenticates with Kerberos from the process
    credential cache, kept fresh by a ``KerberosTicketCache`` when a principal
    and keytab are configured.
    """

    def __init__(self) -> None:
        self._tickets_lock = threading.Lock()
        self._tickets: Optional[KerberosTicketCache] = None

    def create(self, hostname: str, credential: Optional[Credential]) -> WSMan:
        """Create a new WSMan session using the supplied credential."""

        connection_timeout = int(max(1.0, float(settings.winrm_connection_timeout)))
        operation_timeout = int(max(1.0, float(settings.winrm_operation_timeout)))
        read_timeout = int(max(1.0, float(settings.winrm_read_timeout)))

        if credential is None:
            self.ensure_kerberos_ticket()
            auth = "kerberos"
            username = settings.winrm_kerberos_principal or None
            password = None
        else:
            auth = settings.winrm_auth
            username = credential.username
            password = credential.password.get_secret_value()

        logger.info(
            "Creating WSMan session to %s (port=%s, transport=%s, username=%s)",
            hostname,
            settings.winrm_port,
            auth,
            username or "<implicit>",
        )
        logger.debug(
            "WSMan timeouts for %s -> connection=%ss, operation=%ss, read=%ss",
            hostname,
            connection_timeout,
            operation_timeout,
            read_timeout,
        )

        return WSMan(
            hostname,
            port=settings.winrm_port,
            username=username,
            password=password,
            auth=auth,
            ssl=settings.winrm_port == 5986,
            cert_validation=settings.winrm_cert_validation,
            connection_timeout=connection_timeout,
            operation_timeout=operation_timeout,
            read_timeout=read_timeout,
        )

    @staticmethod
    def dispose(session: WSMan) -> None:
        """Attempt to close transport resources for a WSMan session."""

        closer = getattr(session, "close", None)
        if callable(closer):
            try:
                closer()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Failed to close WSMan session cleanly", exc_info=True)

    def ensure_kerberos_ticket(self) -> None:
        """Make sure the implicit identity holds a ticket when a keytab is configured."""

        tickets = KerberosTicketCache.from_settings(settings)
        if tickets is None:
            return
        with self._tickets_lock:
            if self._tickets is None or self._tickets.key != tickets.key:
                self._tickets = tickets
            current = self._tickets
        current.ensure()


class KerberosTicketCache:
    """Keytab-backed credential cache for one service principal.

    ``ensure`` is cheap while ``klist -s`` reports a usable ticket; otherwise
    ``kinit`` is run against the keytab and the process environment is pointed
    at the resulting cache so pypsrp's Kerberos auth picks it up.
    """

    DEFAULT_CCACHE = "/tmp/cimgate_krb5_ccache"
    COMMAND_TIMEOUT = 30.0

    def __init__(self, principal: str, keytab: str, ccache: Optional[str] = None) -> None:
        self.principal = principal.strip()
        self.keytab = Path(keytab.strip())
        self.ccache = Path((ccache or "").strip() or self.DEFAULT_CCACHE)
        self._lock = threading.Lock()
        self._obtained = False
        self._can_verify = True

    @classmethod
    def from_settings(cls, config) -> Optional[KerberosTicketCache]:
        if not config.has_kerberos_config():
            return None
        return cls(
            config.winrm_kerberos_principal,
            config.winrm_kerberos_keytab,
            config.winrm_kerberos_ccache,
        )

    @property
    def key(self) -> Tuple[str, str, str]:
        return self.principal, str(self.keytab), str(self.ccache)

    @property
    def environment(self) -> Dict[str, str]:
        return {"KRB5CCNAME": str(self.ccache), "KRB5_CLIENT_KTNAME": str(self.keytab)}

    def ensure(self) -> None:
        with self._lock:
            if self._obtained and self._ticket_usable():
                return
            self._obtain()

    def _ticket_usable(self) -> bool:
        if not self._can_verify:
            return True
        try:
            check = subprocess.run(
                ["klist", "-s"],
                env={**os.environ, **self.environment},
                capture_output=True,
                timeout=self.COMMAND_TIMEOUT,
                check=False,
            )
        except FileNotFoundError:
            logger.warning(
                "klist not installed; assuming the ticket for %s stays valid", self.principal
            )
            self._can_verify = False
            return True
        except subprocess.TimeoutExpired:
            logger.warning("klist timed out; renewing the ticket for %s", self.principal)
            return False

        if check.returncode != 0:
            logger.info(
                "Ticket for %s is missing or expired (klist exit %s)",
                self.principal,
                check.returncode,
            )
        return check.returncode == 0

    def _obtain(self) -> None:
        if not self.keytab.is_file():
            raise KerberosTicketError(f"Keytab {self.keytab} does not exist")
        try:
            self.ccache.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise KerberosTicketError(
                f"Cannot create credential cache directory {self.ccache.parent}: {exc}"
            ) from exc

        environment = self.environment
        logger.info("Running kinit for %s (ccache=%s)", self.principal, self.ccache)
        try:
            completed = subprocess.run(
                ["kinit", "-k", "-t", str(self.keytab), self.principal],
                env={**os.environ, **environment},
                capture_output=True,
                text=True,
                timeout=self.COMMAND_TIMEOUT,
                check=False,
            )
        except FileNotFoundError as exc:
            raise KerberosTicketError("kinit is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise KerberosTicketError(
                f"kinit for {self.principal} did not finish within {self.COMMAND_TIMEOUT:.0f}s"
            ) from exc

        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or "").strip()
            raise KerberosTicketError(
                f"kinit for {self.principal} failed with exit {completed.returncode}: "
                f"{detail or 'no output'}"
            )

        os.environ.update(environment)
        self._obtained = True
        logger.info("Kerberos ticket for %s stored in %s", self.principal, self.ccache)


# Shared session factory
wsman_sessions = WSManSessionFactory()

__all__ = ["KerberosTicketCache", "KerberosTicketError", "WSManSessionFactory", "wsman_sessions"]
