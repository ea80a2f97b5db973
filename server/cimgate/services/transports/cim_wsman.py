"""CimRM transport: CIM instances enumerated over WS-Management (WinRM)."""
from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from time import perf_counter
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import requests
from pypsrp.exceptions import (
    AuthenticationError,
    WinRMError,
    WinRMTransportError as PyWinRMTransportError,
    WSManFaultError,
)

from ...core.config import settings
from ...core.errors import ClassifiedError
from ...core.models import Credential, ErrorCategory, Protocol
from .base import (
    WBEM_STATUS_CATEGORIES,
    RowSet,
    TransportAdapter,
    check_dialect,
    classify_native_error,
    normalize_hresult,
)
from .wsman_session import KerberosTicketError, WSManSessionFactory, wsman_sessions

logger = logging.getLogger(__name__)

NS_WSEN = "http://schemas.xmlsoap.org/ws/2004/09/enumeration"
NS_WSMAN = "http://schemas.dmtf.org/wbem/wsman/1/wsman.xsd"
NS_XSI = "http://www.w3.org/2001/XMLSchema-instance"

WMI_RESOURCE_ROOT = "http://schemas.microsoft.com/wbem/wsman/1/wmi"

DIALECT_URIS: Mapping[str, str] = {
    "WQL": "http://schemas.microsoft.com/wbem/wsman/1/WQL",
    "CQL": "http://schemas.dmtf.org/wbem/cql/1/dsp0202.pdf",
}

# WS-Management fault codes (decimal as reported by WinRM).
WSMAN_FAULT_CATEGORIES: Mapping[int, ErrorCategory] = {
    5: ErrorCategory.AUTHENTICATION_FAILURE,  # ERROR_ACCESS_DENIED
    1326: ErrorCategory.AUTHENTICATION_FAILURE,  # ERROR_LOGON_FAILURE
    0x8033801A: ErrorCategory.INVALID_TARGET,  # resource URI (namespace/class) not found
    0x80338012: ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,  # cannot connect to destination
    0x80338126: ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,  # destination unreachable
    **WBEM_STATUS_CATEGORIES,
}

_EMBEDDED_CODE = re.compile(r"(?:Code=\"(\d+)\"|\b(0x8004[0-9A-Fa-f]{4})\b)")


def resource_uri(namespace: str, class_name: Optional[str] = None) -> str:
    """Return the WMI resource URI for a namespace and optional class."""

    path = (namespace or "root/cimv2").replace("\\", "/").strip("/")
    return f"{WMI_RESOURCE_ROOT}/{path}/{class_name or '*'}"


def build_enumerate_body(
    max_elements: int, query: Optional[str] = None, dialect_uri: Optional[str] = None
) -> ET.Element:
    """Build an optimized ``wsen:Enumerate`` body with an optional filter."""

    enumerate_el = ET.Element(f"{{{NS_WSEN}}}Enumerate")
    ET.SubElement(enumerate_el, f"{{{NS_WSMAN}}}OptimizeEnumeration")
    ET.SubElement(enumerate_el, f"{{{NS_WSMAN}}}MaxElements").text = str(max_elements)
    if query is not None:
        filter_el = ET.SubElement(
            enumerate_el, f"{{{NS_WSMAN}}}Filter", {"Dialect": dialect_uri or DIALECT_URIS["WQL"]}
        )
        filter_el.text = query
    return enumerate_el


def build_pull_body(context: str, max_elements: int) -> ET.Element:
    pull_el = ET.Element(f"{{{NS_WSEN}}}Pull")
    ET.SubElement(pull_el, f"{{{NS_WSEN}}}EnumerationContext").text = context
    ET.SubElement(pull_el, f"{{{NS_WSEN}}}MaxElements").text = str(max_elements)
    return pull_el


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _element_value(element: ET.Element) -> Any:
    if element.get(f"{{{NS_XSI}}}nil") == "true":
        return None
    children = list(element)
    if not children:
        return element.text
    # Datetime/interval wrappers carry a single text child.
    if len(children) == 1 and not list(children[0]):
        return children[0].text
    return element_to_row(element)


def element_to_row(item: ET.Element) -> Dict[str, Any]:
    """Convert one CIM instance element into a row."""

    row: Dict[str, Any] = {}
    for child in item:
        name = _local_name(child.tag)
        value = _element_value(child)
        if name in row:
            existing = row[name]
            if not isinstance(existing, list):
                existing = [existing]
            existing.append(value)
            row[name] = existing
        else:
            row[name] = value
    return row


def parse_enumeration_response(response: ET.Element) -> Tuple[RowSet, Optional[str], bool]:
    """Return ``(rows, enumeration_context, end_of_sequence)`` for a response."""

    rows: RowSet = []
    for namespace in (NS_WSMAN, NS_WSEN):
        for items in response.iter(f"{{{namespace}}}Items"):
            rows.extend(element_to_row(item) for item in items)

    context: Optional[str] = None
    for context_el in response.iter(f"{{{NS_WSEN}}}EnumerationContext"):
        if context_el.text and context_el.text.strip():
            context = context_el.text.strip()

    end_of_sequence = any(
        True
        for namespace in (NS_WSMAN, NS_WSEN)
        for _ in response.iter(f"{{{namespace}}}EndOfSequence")
    )
    return rows, context, end_of_sequence


def _embedded_wmi_code(texts: Iterable[Any]) -> Optional[int]:
    for text in texts:
        if not text:
            continue
        for decimal, hexadecimal in _EMBEDDED_CODE.findall(str(text)):
            code = normalize_hresult(decimal or hexadecimal)
            if code in WBEM_STATUS_CATEGORIES:
                return code
    return None


class CimWsmanAdapter(TransportAdapter):
    """Enumerate CIM instances with WS-Enumeration through pypsrp's WSMan."""

    protocol = Protocol.CIM_RM

    def __init__(self, session_factory: Optional[WSManSessionFactory] = None) -> None:
        self._sessions = session_factory or wsman_sessions

    def fetch_class(
        self,
        host: str,
        credential: Optional[Credential],
        class_name: str,
        namespace: str,
    ) -> RowSet:
        logger.info("Fetching %s from %s on %s via CimRM", class_name, namespace, host)
        return self._enumerate(host, credential, resource_uri(namespace, class_name))

    def run_query(
        self,
        host: str,
        credential: Optional[Credential],
        query: str,
        dialect: str,
        namespace: str,
    ) -> RowSet:
        canonical = check_dialect(host, self.protocol, dialect)
        logger.info("Running %s query on %s via CimRM", canonical, host)
        logger.debug("Query for %s: %s", host, query)
        return self._enumerate(
            host,
            credential,
            resource_uri(namespace),
            query=query,
            dialect_uri=DIALECT_URIS[canonical],
        )

    def _enumerate(
        self,
        host: str,
        credential: Optional[Credential],
        uri: str,
        *,
        query: Optional[str] = None,
        dialect_uri: Optional[str] = None,
    ) -> RowSet:
        max_elements = max(1, int(settings.winrm_max_elements))
        start_time = perf_counter()
        session = None
        try:
            session = self._sessions.create(host, credential)
            response = session.enumerate(
                uri, resource=build_enumerate_body(max_elements, query, dialect_uri)
            )
            rows, context, finished = parse_enumeration_response(response)
            while context and not finished:
                response = session.pull(uri, resource=build_pull_body(context, max_elements))
                batch, next_context, finished = parse_enumeration_response(response)
                rows.extend(batch)
                context = None if finished else next_context
        except ClassifiedError:
            raise
        except Exception as exc:
            raise self.classify(host, exc) from exc
        finally:
            if session is not None:
                self._sessions.dispose(session)

        logger.info(
            "CimRM on %s returned %d row(s) in %.2fs", host, len(rows), perf_counter() - start_time
        )
        return rows

    def classify(self, host: str, exc: BaseException) -> ClassifiedError:
        """Translate pypsrp/requests failures into the shared taxonomy."""

        protocol = self.protocol
        if isinstance(exc, AuthenticationError):
            logger.error("Authentication failed while connecting to %s: %s", host, exc)
            return ClassifiedError(
                ErrorCategory.AUTHENTICATION_FAILURE,
                f"[{host}] CimRM: authentication failed: {exc}",
                host=host,
                protocol=protocol,
                native_name="AuthenticationError",
            )

        if isinstance(exc, WSManFaultError):
            code = normalize_hresult(getattr(exc, "code", None))
            texts = (
                getattr(exc, "provider_fault", None),
                getattr(exc, "reason", None),
                str(exc),
            )
            if code is None or code not in WSMAN_FAULT_CATEGORIES:
                code = _embedded_wmi_code(texts) or code
            reason = getattr(exc, "reason", None) or str(exc)
            return classify_native_error(
                host,
                protocol,
                str(reason).strip(),
                code=code,
                code_table=WSMAN_FAULT_CATEGORIES,
                payload={
                    "machine": getattr(exc, "machine", None),
                    "provider": getattr(exc, "provider", None),
                    "provider_fault": getattr(exc, "provider_fault", None),
                },
            )

        if isinstance(exc, PyWinRMTransportError):
            status_code = getattr(exc, "code", None)
            category = (
                ErrorCategory.AUTHENTICATION_FAILURE
                if status_code == 401
                else ErrorCategory.TRANSIENT_PROTOCOL_FAILURE
            )
            logger.error("WinRM transport error talking to %s: %s", host, exc)
            return ClassifiedError(
                category,
                f"[{host}] CimRM: transport error: {exc}",
                host=host,
                protocol=protocol,
                native_code=status_code,
                native_name="WinRMTransportError",
            )

        if isinstance(exc, requests.exceptions.Timeout):
            return ClassifiedError(
                ErrorCategory.TIMEOUT,
                f"[{host}] CimRM: timed out: {exc}",
                host=host,
                protocol=protocol,
                native_name=type(exc).__name__,
            )

        if isinstance(exc, (requests.exceptions.ConnectionError, WinRMError, KerberosTicketError)):
            logger.error("CimRM connection to %s failed: %s", host, exc)
            return ClassifiedError(
                ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,
                f"[{host}] CimRM: connection failed: {exc}",
                host=host,
                protocol=protocol,
                native_name=type(exc).__name__,
            )

        logger.exception("Unexpected CimRM failure on %s", host)
        return ClassifiedError(
            ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,
            f"[{host}] CimRM: {exc}",
            host=host,
            protocol=protocol,
            native_name=type(exc).__name__,
        )


__all__ = [
    "CimWsmanAdapter",
    "DIALECT_URIS",
    "WSMAN_FAULT_CATEGORIES",
    "build_enumerate_body",
    "build_pull_body",
    "element_to_row",
    "parse_enumeration_response",
    "resource_uri",
]
