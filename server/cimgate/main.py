"""Main application entry point."""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request

from .core.config import settings
from .core.config_validation import run_config_checks
from .core.host_config import HostConfigError, load_host_configuration
from .api.routes import router
from .services.connection_cache import connection_cache

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def _load_host_configuration() -> None:
    """Apply per-host connection settings from the configured file, if any."""

    if not settings.host_config_path:
        return
    try:
        configuration = load_host_configuration(settings.host_config_path)
    except HostConfigError as exc:
        logger.error("Per-host connection settings not applied: %s", exc)
        return
    connection_cache.set_host_configuration(configuration)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting CimGate")
    logger.info("Version: %s", settings.app_version)
    logger.info("Debug mode: %s", settings.debug)
    logger.info("Connection cache enabled: %s", connection_cache.enabled)

    config_result = run_config_checks()

    if config_result.has_errors:
        for issue in config_result.errors:
            logger.error("Configuration error: %s", issue.message)
            if issue.hint:
                logger.error("Hint: %s", issue.hint)

    if config_result.has_warnings:
        for issue in config_result.warnings:
            logger.warning("Configuration warning: %s", issue.message)
            if issue.hint:
                logger.warning("Hint: %s", issue.hint)

    _load_host_configuration()

    try:
        yield
    finally:
        logger.info("Shutting down application")
        logger.info("Application stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Remote management connection negotiator for SQL Server hosts",
    lifespan=lifespan,
)


@app.middleware("http")
async def audit_middleware(request: Request, call_next):
    """Audit log every request."""
    start_time = time.time()
    client_ip = request.client.host if request.client else "unknown"

    logger.info(
        "Request started: %s %s from %s", request.method, request.url.path, client_ip
    )

    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            "Request failed: %s %s Error: %s Time: %.4fs",
            request.method,
            request.url.path,
            str(e)[:200],
            process_time,
        )
        raise

    process_time = time.time() - start_time
    logger.info(
        "Request completed: %s %s Status: %s Time: %.4fs",
        request.method,
        request.url.path,
        response.status_code,
        process_time,
    )
    return response


app.include_router(router)


def main() -> None:
    """Run the API server."""
    uvicorn.run(
        "cimgate.main:app",
        host="0.0.0.0",
        port=8000,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
