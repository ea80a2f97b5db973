"""Configuration management using Pydantic settings."""

from typing import List, Optional, TYPE_CHECKING

from pydantic_settings import BaseSettings


PROTOCOL_NAMES = ("CimRM", "CimDCOM", "Wmi", "PowerShellRemoting")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application settings
    app_name: str = "CimGate"
    app_version: str = "0.1.0"
    debug: bool = False

    # Connection cache settings
    connection_cache_enabled: bool = True
    enabled_protocols: str = ",".join(PROTOCOL_NAMES)  # Defaults for new host records
    prefer_good_credential: bool = False
    prefer_implicit_credential: bool = False
    host_config_path: Optional[str] = None  # YAML or JSON per-host overrides

    # Negotiation settings
    default_namespace: str = "root\\cimv2"
    negotiation_concurrency: int = 8  # Hosts negotiated in parallel
    protocol_attempt_timeout: Optional[float] = None  # Deadline per protocol attempt

    # WinRM connection settings
    winrm_port: int = 5985
    winrm_auth: str = "negotiate"  # Used for explicit credentials
    winrm_cert_validation: bool = False
    winrm_operation_timeout: float = 15.0  # seconds to wait for WinRM calls
    winrm_connection_timeout: float = 30.0  # network connect timeout in seconds
    winrm_read_timeout: float = 30.0  # HTTP read timeout in seconds
    winrm_poll_interval_seconds: float = 1.0  # how long to wait between poll cycles
    winrm_max_elements: int = 32000  # WS-Enumeration batch size

    # WinRM Kerberos settings for the implicit identity
    winrm_kerberos_principal: Optional[str] = None  # Service principal (e.g., user@REALM)
    winrm_kerberos_keytab: Optional[str] = None  # Path to keytab file
    winrm_kerberos_ccache: Optional[str] = None  # Credential cache location

    # Local PowerShell used for the DCOM based protocols
    powershell_executable: str = "pwsh"
    local_powershell_timeout: float = 60.0

    class Config:
        env_file = ".env"
        env_prefix = "CIMGATE_"
        case_sensitive = False

    def get_enabled_protocol_names(self) -> List[str]:
        """Parse comma-separated protocol list."""
        if not self.enabled_protocols:
            return []
        return [p.strip() for p in self.enabled_protocols.split(",") if p.strip()]

    def has_kerberos_config(self) -> bool:
        """Check if keytab based Kerberos authentication is configured."""
        return bool(self.winrm_kerberos_principal and self.winrm_kerberos_keytab)


settings = Settings()


if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .config_validation import ConfigValidationResult

# Cache of the configuration validation result so it can be reused across modules
_config_validation_result: Optional["ConfigValidationResult"] = None


def set_config_validation_result(result: "ConfigValidationResult") -> None:
    """Persist the configuration validation result for reuse."""

    global _config_validation_result
    _config_validation_result = result


def get_config_validation_result() -> Optional["ConfigValidationResult"]:
    """Return the cached configuration validation result, if available."""

    return _config_validation_result
