"""Test configuration for server test suite."""

import os

import pytest

# Disable Kerberos and per-host configuration in the test environment.
# This must happen before any imports that might read the settings.
os.environ.setdefault("CIMGATE_WINRM_KERBEROS_PRINCIPAL", "")
os.environ.setdefault("CIMGATE_WINRM_KERBEROS_KEYTAB", "")
os.environ.setdefault("CIMGATE_HOST_CONFIG_PATH", "")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def client():
    """TestClient over the application with an empty, enabled connection cache."""

    from fastapi.testclient import TestClient

    from cimgate import main
    from cimgate.services.connection_cache import connection_cache

    connection_cache.clear()
    connection_cache.enable()
    with TestClient(main.app) as test_client:
        yield test_client
    connection_cache.clear()
    connection_cache.enable()
