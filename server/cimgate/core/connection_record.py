"""Per-host connection knowledge: credential ledger and protocol capability set."""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from .errors import BadCredentialError
from .models import (
    IMPLICIT_IDENTITY,
    PROTOCOL_ORDER,
    ConnectionRecordView,
    Credential,
    Protocol,
    ProtocolHealth,
    credential_identity,
)

logger = logging.getLogger(__name__)


def normalize_hostname(hostname: str) -> str:
    """Return the cache key for a host."""

    return (hostname or "").strip().lower()


@dataclass
class CredentialLedger:
    """Credentials known to work or fail against a single host.

    ``good`` maps identity to the credential that authenticated (``None`` for
    the implicit identity) so it can be substituted on later calls. An identity
    is never in ``good`` and ``bad`` at the same time.
    """

    host: str
    good: Dict[str, Optional[Credential]] = field(default_factory=dict)
    bad: Set[str] = field(default_factory=set)
    prefer_good_override: bool = False
    prefer_implicit_override: bool = False

    def resolve(self, credential: Optional[Credential]) -> Optional[Credential]:
        """Return the credential to use, or raise if it is known to fail."""

        identity = credential_identity(credential)
        if identity in self.bad:
            raise BadCredentialError(self.host, identity)

        if self.prefer_good_override:
            explicit = [cred for key, cred in self.good.items() if key != IMPLICIT_IDENTITY]
            if explicit:
                chosen = explicit[-1]
                if chosen is not None and chosen.identity != identity:
                    logger.debug(
                        "[%s] Substituting known-good credential %s for %s",
                        self.host,
                        chosen.identity,
                        identity,
                    )
                return chosen

        if self.prefer_implicit_override and IMPLICIT_IDENTITY in self.good:
            if identity != IMPLICIT_IDENTITY:
                logger.debug(
                    "[%s] Substituting implicit credential for %s", self.host, identity
                )
            return None

        return credential

    def record_success(self, credential: Optional[Credential]) -> None:
        identity = credential_identity(credential)
        self.bad.discard(identity)
        # Re-insert so the most recently confirmed credential is last
        self.good.pop(identity, None)
        self.good[identity] = credential

    def record_failure(self, credential: Optional[Credential]) -> None:
        identity = credential_identity(credential)
        self.good.pop(identity, None)
        self.bad.add(identity)

    def is_bad(self, credential: Optional[Credential]) -> bool:
        return credential_identity(credential) in self.bad

    def is_good(self, credential: Optional[Credential]) -> bool:
        return credential_identity(credential) in self.good


@dataclass
class ProtocolCapabilitySet:
    """Administratively enabled protocols and their observed health."""

    enabled: Set[Protocol] = field(default_factory=lambda: set(PROTOCOL_ORDER))
    health: Dict[Protocol, ProtocolHealth] = field(
        default_factory=lambda: {p: ProtocolHealth.UNTESTED for p in PROTOCOL_ORDER}
    )

    def is_enabled(self, protocol: Protocol) -> bool:
        return protocol in self.enabled

    def health_of(self, protocol: Protocol) -> ProtocolHealth:
        return self.health.get(protocol, ProtocolHealth.UNTESTED)

    def record_success(self, protocol: Protocol) -> None:
        self.health[protocol] = ProtocolHealth.LAST_SUCCEEDED

    def record_failure(self, protocol: Protocol) -> None:
        self.health[protocol] = ProtocolHealth.LAST_FAILED

    def failed_protocols(self) -> List[Protocol]:
        return [p for p in PROTOCOL_ORDER if self.health_of(p) is ProtocolHealth.LAST_FAILED]

    def enabled_in_order(self) -> List[Protocol]:
        return [p for p in PROTOCOL_ORDER if p in self.enabled]


@dataclass
class ConnectionRecord:
    """Everything learned about one host, stored in the connection cache."""

    computer_name: str
    credentials: CredentialLedger
    protocols: ProtocolCapabilitySet
    last_protocol: Optional[Protocol] = None
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        hostname: str,
        enabled_protocols: Optional[Iterable[Protocol]] = None,
        *,
        prefer_good_credential: bool = False,
        prefer_implicit_credential: bool = False,
    ) -> "ConnectionRecord":
        """Build a fresh record: every protocol untested, no known credentials."""

        name = normalize_hostname(hostname)
        enabled = set(PROTOCOL_ORDER if enabled_protocols is None else enabled_protocols)
        return cls(
            computer_name=name,
            credentials=CredentialLedger(
                host=name,
                prefer_good_override=prefer_good_credential,
                prefer_implicit_override=prefer_implicit_credential,
            ),
            protocols=ProtocolCapabilitySet(enabled=enabled),
        )

    def mark_protocol_success(self, protocol: Protocol) -> None:
        self.protocols.record_success(protocol)
        self.last_protocol = protocol
        self.last_success = datetime.now(timezone.utc)

    def mark_protocol_failure(self, protocol: Protocol) -> None:
        self.protocols.record_failure(protocol)
        self.last_failure = datetime.now(timezone.utc)

    def copy(self) -> "ConnectionRecord":
        return copy.deepcopy(self)

    def to_view(self) -> ConnectionRecordView:
        return ConnectionRecordView(
            computer_name=self.computer_name,
            enabled_protocols=self.protocols.enabled_in_order(),
            protocol_health={p: self.protocols.health_of(p) for p in PROTOCOL_ORDER},
            good_credentials=list(self.credentials.good.keys()),
            bad_credentials=sorted(self.credentials.bad),
            prefer_good_credential_override=self.credentials.prefer_good_override,
            prefer_implicit_credential_override=self.credentials.prefer_implicit_override,
            last_protocol=self.last_protocol,
            last_success=self.last_success,
            last_failure=self.last_failure,
        )


__all__ = [
    "ConnectionRecord",
    "CredentialLedger",
    "ProtocolCapabilitySet",
    "normalize_hostname",
]
