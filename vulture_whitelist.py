# Vulture whitelist file
# This file contains false positives that vulture incorrectly flags as dead code.
# These are typically framework-registered functions, Pydantic fields, pytest fixtures, etc.
#
# Usage: python3 -m vulture server vulture_whitelist.py

# =============================================================================
# FastAPI Route Handlers (registered via @router.get/post/delete decorators)
# =============================================================================
# These functions are called by FastAPI when matching HTTP requests arrive.
# Vulture cannot see this because the registration happens via decorators.

health_check  # routes.py - GET /healthz
readiness_check  # routes.py - GET /readyz
list_connections  # routes.py - GET /api/v1/connections
get_connection  # routes.py - GET /api/v1/connections/{host}
clear_connections  # routes.py - DELETE /api/v1/connections
remove_connection  # routes.py - DELETE /api/v1/connections/{host}
enable_cache  # routes.py - POST /api/v1/connections/cache/enable
disable_cache  # routes.py - POST /api/v1/connections/cache/disable
negotiate  # routes.py - POST /api/v1/negotiate

# =============================================================================
# FastAPI Middleware and lifespan
# =============================================================================
audit_middleware  # main.py - request audit logging
lifespan  # main.py - application lifespan manager

# =============================================================================
# Pydantic Model Fields (accessed via JSON serialization/deserialization)
# =============================================================================
# These are schema fields that API clients read/write via JSON.
# Vulture sees them as unused class variables.

_.computer_name  # ConnectionRecordView
_.protocol_health  # ConnectionRecordView
_.good_credentials  # ConnectionRecordView
_.bad_credentials  # ConnectionRecordView
_.prefer_good_credential_override  # ConnectionRecordView
_.prefer_implicit_credential_override  # ConnectionRecordView
_.hosts  # CacheStatusResponse, NegotiateRequest, HostConfiguration
_.native_code  # NegotiationErrorView
_.outcome  # NegotiationAttemptView
_.timestamp  # HealthResponse

# =============================================================================
# Pydantic model_config (ConfigDict for Pydantic v2 configuration)
# =============================================================================
_.model_config  # Credential frozen configuration

# =============================================================================
# Pydantic Validators (called by Pydantic during model validation)
# =============================================================================
_._check_payload  # NegotiateRequest model validator
_._parse_protocols  # HostConnectionSettings field validator

# =============================================================================
# Pydantic Config class attributes
# =============================================================================
_.env_file  # Pydantic settings configuration
_.env_prefix  # Pydantic settings configuration
_.case_sensitive  # Pydantic settings configuration

# =============================================================================
# Enum Values (may be used by external systems or reserved for future use)
# =============================================================================
_.CIM_LOCAL  # ScriptMode enum value for remote runspaces

# =============================================================================
# Pytest Fixtures (discovered by pytest at runtime by name)
# =============================================================================
anyio_backend  # pytest-anyio fixture for async test backend configuration
client  # pytest fixture for the FastAPI TestClient
stub_settings  # pytest fixture for configuration validation tests
stub_negotiator  # pytest fixture for route tests
fake_run  # pytest fixture replacing subprocess.run
remoting  # pytest fixture replacing the PSRP runspace and pipeline
fake_commands  # pytest fixture replacing kinit and klist
keytab  # pytest fixture writing a placeholder keytab
recorded_wsman  # pytest fixture recording WSMan construction

# =============================================================================
# unittest.mock Magic Attributes (used to configure mock behavior)
# =============================================================================
_.return_value  # Mock return value configuration
_.side_effect  # Mock side effect configuration
