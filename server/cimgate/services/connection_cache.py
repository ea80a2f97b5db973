"""Process-wide cache of per-host connection records."""
from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional

from ..core.config import Settings, settings
from ..core.connection_record import ConnectionRecord, normalize_hostname
from ..core.host_config import HostConfiguration, parse_protocol_names
from ..core.models import PROTOCOL_ORDER, Protocol

logger = logging.getLogger(__name__)


class ConnectionCache:
    """Map from normalized hostname to ``ConnectionRecord``.

    Records handed out are copies; callers mutate them locally and write them
    back with :meth:`store`. The lock only guards map access, so no lock is
    held while a transport call is in flight. Writes are last-write-wins and
    are skipped entirely while the cache is disabled.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        default_protocols: Optional[Iterable[Protocol]] = None,
        prefer_good_credential: bool = False,
        prefer_implicit_credential: bool = False,
        host_configuration: Optional[HostConfiguration] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, ConnectionRecord] = {}
        self._enabled = enabled
        self._default_protocols: List[Protocol] = list(
            PROTOCOL_ORDER if default_protocols is None else default_protocols
        )
        self._prefer_good_credential = prefer_good_credential
        self._prefer_implicit_credential = prefer_implicit_credential
        self._host_configuration = host_configuration or HostConfiguration()

    @classmethod
    def from_settings(cls, config: Settings) -> "ConnectionCache":
        try:
            protocols = parse_protocol_names(config.get_enabled_protocol_names())
        except ValueError as exc:
            logger.error("Ignoring invalid CIMGATE_ENABLED_PROTOCOLS: %s", exc)
            protocols = list(PROTOCOL_ORDER)

        return cls(
            enabled=config.connection_cache_enabled,
            default_protocols=protocols,
            prefer_good_credential=config.prefer_good_credential,
            prefer_implicit_credential=config.prefer_implicit_credential,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = True
        logger.info("Connection cache enabled")

    def disable(self) -> None:
        self._enabled = False
        logger.info("Connection cache disabled; negotiation state will not persist between calls")

    def set_host_configuration(self, configuration: HostConfiguration) -> None:
        """Replace administrative per-host defaults.

        Records already cached keep their health and credentials but pick up
        the administrative settings.
        """

        with self._lock:
            self._host_configuration = configuration
            for key, record in self._records.items():
                self._apply_administrative_settings(record, key)

    def new_record(self, hostname: str) -> ConnectionRecord:
        """Build a default record for a host that has never been contacted."""

        key = normalize_hostname(hostname)
        record = ConnectionRecord.create(
            key,
            self._default_protocols,
            prefer_good_credential=self._prefer_good_credential,
            prefer_implicit_credential=self._prefer_implicit_credential,
        )
        self._apply_administrative_settings(record, key)
        return record

    def checkout(self, hostname: str) -> ConnectionRecord:
        """Return a private copy of the host's record, creating one lazily."""

        key = normalize_hostname(hostname)
        if self._enabled:
            with self._lock:
                existing = self._records.get(key)
                if existing is not None:
                    return existing.copy()
        return self.new_record(key)

    def store(self, record: ConnectionRecord) -> bool:
        """Persist a record. Returns False when caching is disabled."""

        if not self._enabled:
            return False
        with self._lock:
            self._records[normalize_hostname(record.computer_name)] = record.copy()
        return True

    def get_record(self, hostname: str) -> Optional[ConnectionRecord]:
        with self._lock:
            record = self._records.get(normalize_hostname(hostname))
            return record.copy() if record is not None else None

    def remove(self, hostname: str) -> bool:
        with self._lock:
            removed = self._records.pop(normalize_hostname(hostname), None)
        if removed is not None:
            logger.info("Removed cached connection record for %s", removed.computer_name)
        return removed is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._records)
            self._records.clear()
        logger.info("Cleared %d cached connection record(s)", count)
        return count

    def records(self) -> List[ConnectionRecord]:
        with self._lock:
            return [self._records[key].copy() for key in sorted(self._records)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _apply_administrative_settings(self, record: ConnectionRecord, key: str) -> None:
        overrides = self._host_configuration.for_host(key)
        if overrides is None:
            return
        if overrides.enabled_protocols is not None:
            record.protocols.enabled = set(overrides.enabled_protocols)
        if overrides.prefer_good_credential is not None:
            record.credentials.prefer_good_override = overrides.prefer_good_credential
        if overrides.prefer_implicit_credential is not None:
            record.credentials.prefer_implicit_override = overrides.prefer_implicit_credential


# Global connection cache instance
connection_cache = ConnectionCache.from_settings(settings)

__all__ = ["ConnectionCache", "connection_cache"]
