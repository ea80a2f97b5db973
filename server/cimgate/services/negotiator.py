"""Per-host protocol negotiation.

Each host runs a small state machine: select a protocol, resolve the
credential, execute the request through that protocol's transport, then act on
the outcome:

- Success: record protocol and credential success, persist, stop.
- Retry: the protocol failed transiently or timed out; mark it failed, exclude
  it for the rest of the call, persist, select again.
- Terminal: authentication failed (credential recorded as bad), the request
  itself is wrong, or no protocol is left.

Hosts are independent. ``negotiate`` runs them one after another and
``negotiate_concurrently`` runs one worker per host under a semaphore.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    AbstractSet,
    AsyncIterator,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Set,
)

from ..core.config import settings
from ..core.connection_record import ConnectionRecord, normalize_hostname
from ..core.errors import BadCredentialError, ClassifiedError, NoViableProtocolError
from ..core.models import (
    ClassRequest,
    CimRequest,
    Credential,
    ErrorCategory,
    NegotiationAttemptView,
    NegotiationErrorView,
    NegotiationResultView,
    Protocol,
)
from .connection_cache import ConnectionCache, connection_cache
from .protocol_selector import next_protocol
from .transports.base import RowSet, TransportAdapter
from .transports.cim_wsman import CimWsmanAdapter
from .transports.local_powershell import CimDcomAdapter, WmiAdapter
from .transports.psremoting import PSRemotingAdapter

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Result of one Execute step."""

    SUCCESS = "success"
    RETRY = "retry"
    TERMINAL = "terminal"


@dataclass
class NegotiationAttempt:
    protocol: Protocol
    outcome: Outcome
    category: Optional[ErrorCategory] = None


@dataclass
class NegotiationResult:
    """Rows or a classified error for one host."""

    host: str
    protocol: Optional[Protocol] = None
    rows: RowSet = field(default_factory=list)
    error: Optional[ClassifiedError] = None
    attempts: List[NegotiationAttempt] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None

    def to_view(self) -> NegotiationResultView:
        error_view = None
        if self.error is not None:
            error_view = NegotiationErrorView(
                category=self.error.category,
                message=self.error.message,
                protocol=self.error.protocol,
                native_code=self.error.native_code,
            )
        return NegotiationResultView(
            host=self.host,
            success=self.success,
            protocol=self.protocol,
            rows=self.rows,
            error=error_view,
            attempts=[
                NegotiationAttemptView(
                    protocol=attempt.protocol,
                    outcome=attempt.outcome.value,
                    category=attempt.category,
                )
                for attempt in self.attempts
            ],
        )


def default_adapters() -> Dict[Protocol, TransportAdapter]:
    return {
        Protocol.CIM_RM: CimWsmanAdapter(),
        Protocol.CIM_DCOM: CimDcomAdapter(),
        Protocol.WMI: WmiAdapter(),
        Protocol.POWERSHELL_REMOTING: PSRemotingAdapter(),
    }


class _HostNegotiation:
    """State of one host's negotiation within a single call."""

    def __init__(
        self,
        host: str,
        record: ConnectionRecord,
        credential: Optional[Credential],
        excluded: AbstractSet[Protocol],
        force: bool,
        available: AbstractSet[Protocol],
        persist,
    ) -> None:
        self.host = host
        self.record = record
        self.credential = credential
        self.requested_exclusions: Set[Protocol] = set(excluded)
        self.excluded: Set[Protocol] = set(excluded)
        self.force = force
        self.available = available
        self._persist = persist
        self.result = NegotiationResult(host=host)
        self.done = False
        self._last_error: Optional[ClassifiedError] = None

    def begin_attempt(self):
        """Select a protocol and resolve the credential.

        Returns ``(protocol, credential)`` or ``None`` once the host is done.
        """

        enabled = self.record.protocols.enabled & self.available
        protocol = next_protocol(
            enabled, self.excluded, self.record.protocols.health, force=self.force
        )
        if protocol is None:
            error = NoViableProtocolError(
                self.host,
                enabled,
                self.requested_exclusions,
                self.record.protocols.failed_protocols(),
                last_error=self._last_error,
            )
            logger.error("%s", error.message)
            self._finish(error)
            return None

        logger.debug("[%s] Selected protocol %s", self.host, protocol.value)

        try:
            credential = self.record.credentials.resolve(self.credential)
        except BadCredentialError as exc:
            logger.warning("%s", exc.message)
            self._finish(exc)
            return None

        return protocol, credential

    def succeed(self, protocol: Protocol, credential: Optional[Credential], rows: RowSet) -> None:
        self.record.mark_protocol_success(protocol)
        self.record.credentials.record_success(credential)
        self._persist(self.record)
        self.result.attempts.append(NegotiationAttempt(protocol, Outcome.SUCCESS))
        self.result.protocol = protocol
        self.result.rows = rows
        self.done = True
        logger.info(
            "[%s] %s succeeded with %d row(s)", self.host, protocol.value, len(rows)
        )

    def fail(
        self, protocol: Protocol, credential: Optional[Credential], error: ClassifiedError
    ) -> Outcome:
        if error.protocol is None:
            error.protocol = protocol
        if error.host is None:
            error.host = self.host

        if error.category is ErrorCategory.AUTHENTICATION_FAILURE:
            self.record.credentials.record_failure(credential)
            self._persist(self.record)
            outcome = Outcome.TERMINAL
            logger.warning(
                "[%s] Authentication failed via %s; credential recorded as bad",
                self.host,
                protocol.value,
            )
        elif error.is_protocol_switchable:
            self.record.mark_protocol_failure(protocol)
            self.excluded.add(protocol)
            self._persist(self.record)
            outcome = Outcome.RETRY
            logger.warning(
                "[%s] %s failed (%s); trying the next protocol",
                self.host,
                protocol.value,
                error.category.value,
            )
        else:
            outcome = Outcome.TERMINAL
            logger.error("%s", error.message)

        self.result.attempts.append(NegotiationAttempt(protocol, outcome, error.category))
        self._last_error = error
        if outcome is Outcome.TERMINAL:
            self._finish(error)
        return outcome

    def _finish(self, error: ClassifiedError) -> None:
        self.result.error = error
        self.done = True


class Negotiator:
    """Drive requests across hosts, choosing a working protocol for each."""

    def __init__(
        self,
        cache: Optional[ConnectionCache] = None,
        adapters: Optional[Mapping[Protocol, TransportAdapter]] = None,
    ) -> None:
        self._cache = cache if cache is not None else connection_cache
        self._adapters: Dict[Protocol, TransportAdapter] = dict(
            default_adapters() if adapters is None else adapters
        )

    @property
    def cache(self) -> ConnectionCache:
        return self._cache

    def negotiate(
        self,
        hosts: Iterable[str],
        credential: Optional[Credential],
        request: CimRequest,
        namespace: Optional[str] = None,
        excluded: Iterable[Protocol] = (),
        force: bool = False,
    ) -> Iterator[NegotiationResult]:
        """Yield one result per host, in input order."""

        working: Dict[str, ConnectionRecord] = {}
        excluded_set = frozenset(excluded)
        for host in hosts:
            yield self.negotiate_host(
                host,
                credential,
                request,
                namespace,
                excluded_set,
                force,
                working=working,
            )

    def negotiate_host(
        self,
        host: str,
        credential: Optional[Credential],
        request: CimRequest,
        namespace: Optional[str] = None,
        excluded: Iterable[Protocol] = (),
        force: bool = False,
        *,
        working: Optional[Dict[str, ConnectionRecord]] = None,
    ) -> NegotiationResult:
        state = self._start(host, credential, excluded, force, working)
        namespace = namespace or settings.default_namespace

        while not state.done:
            attempt = state.begin_attempt()
            if attempt is None:
                break
            protocol, resolved = attempt
            logger.info("[%s] Attempting %s", host, protocol.value)
            try:
                rows = self._execute(protocol, host, resolved, request, namespace)
            except ClassifiedError as exc:
                state.fail(protocol, resolved, exc)
            except Exception as exc:
                state.fail(protocol, resolved, self._unexpected(host, protocol, exc))
            else:
                state.succeed(protocol, resolved, rows)

        return state.result

    async def negotiate_concurrently(
        self,
        hosts: Iterable[str],
        credential: Optional[Credential],
        request: CimRequest,
        namespace: Optional[str] = None,
        excluded: Iterable[Protocol] = (),
        force: bool = False,
        *,
        concurrency: Optional[int] = None,
        attempt_timeout: Optional[float] = None,
    ) -> AsyncIterator[NegotiationResult]:
        """Negotiate hosts in parallel, yielding results as they complete.

        Protocols for a single host are still tried one at a time, and a host
        listed more than once is negotiated by one entry after another. Transport
        calls run in worker threads; ``attempt_timeout`` bounds each attempt
        and an expired attempt counts as a Timeout for that protocol.
        """

        limit = max(1, int(concurrency or settings.negotiation_concurrency))
        if attempt_timeout is None:
            attempt_timeout = settings.protocol_attempt_timeout
        semaphore = asyncio.Semaphore(limit)
        working: Dict[str, ConnectionRecord] = {}
        host_locks: Dict[str, asyncio.Lock] = {}
        excluded_set = frozenset(excluded)

        async def worker(host: str, host_lock: asyncio.Lock) -> NegotiationResult:
            async with host_lock, semaphore:
                return await self._negotiate_host_async(
                    host,
                    credential,
                    request,
                    namespace,
                    excluded_set,
                    force,
                    working,
                    attempt_timeout,
                )

        tasks = []
        for host in hosts:
            host_lock = host_locks.setdefault(normalize_hostname(host), asyncio.Lock())
            tasks.append(
                asyncio.create_task(worker(host, host_lock), name=f"negotiate-{host}")
            )
        logger.debug("Negotiating %d host(s) with concurrency %d", len(tasks), limit)
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def _negotiate_host_async(
        self,
        host: str,
        credential: Optional[Credential],
        request: CimRequest,
        namespace: Optional[str],
        excluded: AbstractSet[Protocol],
        force: bool,
        working: Dict[str, ConnectionRecord],
        attempt_timeout: Optional[float],
    ) -> NegotiationResult:
        state = self._start(host, credential, excluded, force, working)
        namespace = namespace or settings.default_namespace

        while not state.done:
            attempt = state.begin_attempt()
            if attempt is None:
                break
            protocol, resolved = attempt
            logger.info("[%s] Attempting %s", host, protocol.value)
            call = asyncio.to_thread(
                self._execute, protocol, host, resolved, request, namespace
            )
            try:
                if attempt_timeout:
                    rows = await asyncio.wait_for(call, timeout=attempt_timeout)
                else:
                    rows = await call
            except asyncio.TimeoutError as exc:
                error = ClassifiedError(
                    ErrorCategory.TIMEOUT,
                    f"[{host}] {protocol.value}: no response within {attempt_timeout:.1f}s",
                    host=host,
                    protocol=protocol,
                    native_name="AttemptDeadlineExceeded",
                )
                error.__cause__ = exc
                state.fail(protocol, resolved, error)
            except ClassifiedError as exc:
                state.fail(protocol, resolved, exc)
            except Exception as exc:
                state.fail(protocol, resolved, self._unexpected(host, protocol, exc))
            else:
                state.succeed(protocol, resolved, rows)

        return state.result

    def _start(
        self,
        host: str,
        credential: Optional[Credential],
        excluded: Iterable[Protocol],
        force: bool,
        working: Optional[Dict[str, ConnectionRecord]],
    ) -> _HostNegotiation:
        if working is None:
            working = {}
        key = normalize_hostname(host)
        record = working.get(key)
        if record is None:
            record = self._cache.checkout(key)
            working[key] = record

        def persist(updated: ConnectionRecord) -> None:
            working[key] = updated
            self._cache.store(updated)

        return _HostNegotiation(
            host,
            record,
            credential,
            frozenset(excluded),
            force,
            frozenset(self._adapters),
            persist,
        )

    def _execute(
        self,
        protocol: Protocol,
        host: str,
        credential: Optional[Credential],
        request: CimRequest,
        namespace: str,
    ) -> RowSet:
        adapter = self._adapters[protocol]
        if isinstance(request, ClassRequest):
            return adapter.fetch_class(host, credential, request.class_name, namespace)
        return adapter.run_query(host, credential, request.query, request.dialect, namespace)

    @staticmethod
    def _unexpected(host: str, protocol: Protocol, exc: Exception) -> ClassifiedError:
        logger.exception("[%s] Unexpected failure in %s transport", host, protocol.value)
        error = ClassifiedError(
            ErrorCategory.UNKNOWN,
            f"[{host}] {protocol.value}: unexpected error: {exc}",
            host=host,
            protocol=protocol,
            native_name=type(exc).__name__,
        )
        error.__cause__ = exc
        return error


# Global negotiator instance
negotiator = Negotiator()

__all__ = [
    "NegotiationAttempt",
    "NegotiationResult",
    "Negotiator",
    "Outcome",
    "default_adapters",
    "negotiator",
]
