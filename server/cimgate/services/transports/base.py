"""Shared contract and native error tables for transport adapters."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

from ...core.errors import ClassifiedError
from ...core.models import Credential, ErrorCategory, Protocol

logger = logging.getLogger(__name__)

RowSet = List[Dict[str, Any]]

_AUTH = ErrorCategory.AUTHENTICATION_FAILURE
_DENIED = ErrorCategory.PERMISSION_DENIED
_INVALID = ErrorCategory.INVALID_TARGET
_UNSUPPORTED = ErrorCategory.UNSUPPORTED_OPERATION
_TRANSIENT = ErrorCategory.TRANSIENT_PROTOCOL_FAILURE

# WMI status codes and Win32 HRESULTs, as unsigned 32-bit values.
WBEM_STATUS_CATEGORIES: Mapping[int, ErrorCategory] = {
    0x80041002: _INVALID,  # WBEM_E_NOT_FOUND
    0x80041003: _DENIED,  # WBEM_E_ACCESS_DENIED
    0x80041008: _INVALID,  # WBEM_E_INVALID_PARAMETER
    0x8004100C: _UNSUPPORTED,  # WBEM_E_NOT_SUPPORTED
    0x8004100E: _INVALID,  # WBEM_E_INVALID_NAMESPACE
    0x80041010: _INVALID,  # WBEM_E_INVALID_CLASS
    0x80041017: _INVALID,  # WBEM_E_INVALID_QUERY
    0x80041018: _INVALID,  # WBEM_E_INVALID_QUERY_TYPE
    0x80041024: _UNSUPPORTED,  # WBEM_E_PROVIDER_NOT_CAPABLE
    0x80070005: _AUTH,  # E_ACCESSDENIED
    0x8007052E: _AUTH,  # ERROR_LOGON_FAILURE
    0x800706BA: _TRANSIENT,  # RPC_S_SERVER_UNAVAILABLE
}

# CimException.NativeErrorCode names (MI result codes).
CIM_STATUS_CATEGORIES: Mapping[str, ErrorCategory] = {
    "AccessDenied": _AUTH,
    "InvalidNamespace": _INVALID,
    "InvalidClass": _INVALID,
    "NotFound": _INVALID,
    "InvalidQuery": _INVALID,
    "QueryLanguageNotSupported": _INVALID,
    "InvalidParameter": _INVALID,
    "NotSupported": _UNSUPPORTED,
}

# System.Management.ManagementStatus names raised by Get-WmiObject.
MANAGEMENT_STATUS_CATEGORIES: Mapping[str, ErrorCategory] = {
    "AccessDenied": _DENIED,
    "InvalidNamespace": _INVALID,
    "InvalidClass": _INVALID,
    "NotFound": _INVALID,
    "InvalidQuery": _INVALID,
    "InvalidQueryType": _INVALID,
    "InvalidParameter": _INVALID,
    "NotSupported": _UNSUPPORTED,
    "ProviderNotCapable": _UNSUPPORTED,
}

SUPPORTED_DIALECTS = ("WQL", "CQL")


def normalize_hresult(code: Any) -> Optional[int]:
    """Return an HRESULT as an unsigned 32-bit int.

    .NET reports HResult as a signed Int32, WS-Management as unsigned, and
    both appear as decimal or hex strings in text payloads.
    """

    if code is None or isinstance(code, bool):
        return None
    if isinstance(code, str):
        text = code.strip()
        if not text:
            return None
        try:
            code = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            return None
    if not isinstance(code, int):
        return None
    return code & 0xFFFFFFFF


def classify_native_error(
    host: str,
    protocol: Protocol,
    message: str,
    *,
    code: Any = None,
    name: Optional[str] = None,
    name_table: Optional[Mapping[str, ErrorCategory]] = None,
    code_table: Mapping[int, ErrorCategory] = WBEM_STATUS_CATEGORIES,
    default: ErrorCategory = _TRANSIENT,
    payload: Any = None,
) -> ClassifiedError:
    """Look up a native error in the adapter's tables.

    Names are checked before numeric codes; anything not listed falls back to
    ``default``.
    """

    category: Optional[ErrorCategory] = None
    if name and name_table:
        category = name_table.get(name)

    hresult = normalize_hresult(code)
    if category is None and hresult is not None:
        category = code_table.get(hresult)

    if category is None:
        category = default

    native_code = f"0x{hresult:08X}" if hresult is not None and hresult > 0xFFFF else hresult
    logger.debug(
        "[%s] %s native error classified as %s (code=%s, name=%s)",
        host,
        protocol.value,
        category.value,
        native_code,
        name,
    )
    return ClassifiedError(
        category,
        f"[{host}] {protocol.value}: {message}",
        host=host,
        protocol=protocol,
        native_code=native_code,
        native_name=name,
        payload=payload,
    )


def check_dialect(host: str, protocol: Protocol, dialect: str) -> str:
    """Return the canonical dialect name or raise ``InvalidTarget``."""

    canonical = (dialect or "WQL").strip().upper()
    if canonical not in SUPPORTED_DIALECTS:
        raise ClassifiedError(
            ErrorCategory.INVALID_TARGET,
            f"[{host}] {protocol.value}: unsupported query dialect '{dialect}'",
            host=host,
            protocol=protocol,
            native_name="InvalidQueryDialect",
        )
    return canonical


class TransportAdapter(ABC):
    """One transport protocol. Stateless; every failure is a ``ClassifiedError``."""

    protocol: Protocol

    @abstractmethod
    def fetch_class(
        self,
        host: str,
        credential: Optional[Credential],
        class_name: str,
        namespace: str,
    ) -> RowSet:
        """Return every instance of ``class_name`` in ``namespace``."""

    @abstractmethod
    def run_query(
        self,
        host: str,
        credential: Optional[Credential],
        query: str,
        dialect: str,
        namespace: str,
    ) -> RowSet:
        """Run ``query`` written in ``dialect`` against ``namespace``."""


__all__ = [
    "CIM_STATUS_CATEGORIES",
    "MANAGEMENT_STATUS_CATEGORIES",
    "RowSet",
    "SUPPORTED_DIALECTS",
    "TransportAdapter",
    "WBEM_STATUS_CATEGORIES",
    "check_dialect",
    "classify_native_error",
    "normalize_hresult",
]
