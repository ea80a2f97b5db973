"""Deterministic choice of the next transport protocol to try."""
from __future__ import annotations

from typing import AbstractSet, Mapping, Optional

from ..core.models import PROTOCOL_ORDER, Protocol, ProtocolHealth


def next_protocol(
    enabled: AbstractSet[Protocol],
    excluded: AbstractSet[Protocol],
    health: Mapping[Protocol, ProtocolHealth],
    force: bool = False,
) -> Optional[Protocol]:
    """Return the first usable protocol in priority order, or ``None``.

    The order is CimRM, CimDCOM, Wmi, PowerShellRemoting. ``force`` skips the
    health gate only; disabled and excluded protocols are never returned.
    """

    for protocol in PROTOCOL_ORDER:
        if protocol not in enabled or protocol in excluded:
            continue
        if not force and health.get(protocol) is ProtocolHealth.LAST_FAILED:
            continue
        return protocol
    return None


__all__ = ["next_protocol"]
