"""API route handlers."""
import logging
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, HTTPException, Response, status

from ..core.config import settings, get_config_validation_result
from ..core.models import (
    CacheStatusResponse,
    ConnectionRecordView,
    HealthResponse,
    NegotiateRequest,
    NegotiationResultView,
)
from ..services.connection_cache import connection_cache
from ..services.negotiator import negotiator

logger = logging.getLogger(__name__)

router = APIRouter()


def _cache_status() -> CacheStatusResponse:
    return CacheStatusResponse(enabled=connection_cache.enabled, hosts=len(connection_cache))


@router.get("/healthz", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/readyz", response_model=HealthResponse, tags=["Health"])
async def readiness_check(response: Response):
    """Readiness check endpoint."""

    # Configuration errors are reported in the body; the service still
    # answers so operators can inspect connection state.
    config_result = get_config_validation_result()
    response.status_code = status.HTTP_200_OK
    if config_result and config_result.has_errors:
        return HealthResponse(
            status="config_error",
            version=settings.app_version,
            timestamp=datetime.now(timezone.utc),
        )

    return HealthResponse(
        status="ready",
        version=settings.app_version,
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/api/v1/connections",
    response_model=List[ConnectionRecordView],
    tags=["Connections"],
)
async def list_connections():
    """List every cached connection record."""
    return [record.to_view() for record in connection_cache.records()]


@router.get(
    "/api/v1/connections/{host}",
    response_model=ConnectionRecordView,
    tags=["Connections"],
)
async def get_connection(host: str):
    """Get the cached connection record for a host."""
    record = connection_cache.get_record(host)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No connection record cached for {host}",
        )
    return record.to_view()


@router.delete(
    "/api/v1/connections",
    response_model=CacheStatusResponse,
    tags=["Connections"],
)
async def clear_connections():
    """Forget everything learned about every host."""
    removed = connection_cache.clear()
    logger.info("Connection cache cleared through the API (%d record(s))", removed)
    return _cache_status()


@router.delete(
    "/api/v1/connections/{host}",
    response_model=CacheStatusResponse,
    tags=["Connections"],
)
async def remove_connection(host: str):
    """Forget what was learned about one host."""
    if not connection_cache.remove(host):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No connection record cached for {host}",
        )
    return _cache_status()


@router.post(
    "/api/v1/connections/cache/enable",
    response_model=CacheStatusResponse,
    tags=["Connections"],
)
async def enable_cache():
    connection_cache.enable()
    return _cache_status()


@router.post(
    "/api/v1/connections/cache/disable",
    response_model=CacheStatusResponse,
    tags=["Connections"],
)
async def disable_cache():
    connection_cache.disable()
    return _cache_status()


@router.post(
    "/api/v1/negotiate",
    response_model=List[NegotiationResultView],
    tags=["Negotiation"],
)
async def negotiate(request: NegotiateRequest):
    """Fetch a class or run a query on each host over the first protocol that works.

    Hosts are negotiated concurrently and results are returned in the order
    the hosts were given. Per-host failures are reported in each result's
    ``error`` rather than as an HTTP error.
    """

    logger.info(
        "Negotiating %s across %d host(s)",
        request.class_name or "query",
        len(request.hosts),
    )
    completed = [
        result
        async for result in negotiator.negotiate_concurrently(
            request.hosts,
            request.credential,
            request.to_cim_request(),
            request.namespace,
            request.excluded_protocols,
            request.force,
        )
    ]

    # Completion order to input order; duplicate hosts keep their relative order.
    pending = list(completed)
    ordered: List[NegotiationResultView] = []
    for host in request.hosts:
        for index, result in enumerate(pending):
            if result.host == host:
                ordered.append(result.to_view())
                del pending[index]
                break
    return ordered
