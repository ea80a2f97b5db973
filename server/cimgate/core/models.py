"""Data models for the application."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, SecretStr, model_validator


IMPLICIT_IDENTITY = "<implicit>"


class Protocol(str, Enum):
    """Remote management transport protocol, in priority order."""
    CIM_RM = "CimRM"
    CIM_DCOM = "CimDCOM"
    WMI = "Wmi"
    POWERSHELL_REMOTING = "PowerShellRemoting"


PROTOCOL_ORDER = (
    Protocol.CIM_RM,
    Protocol.CIM_DCOM,
    Protocol.WMI,
    Protocol.POWERSHELL_REMOTING,
)


class ProtocolHealth(str, Enum):
    """Observed health of a protocol against one host."""
    UNTESTED = "untested"
    LAST_SUCCEEDED = "last_succeeded"
    LAST_FAILED = "last_failed"


class ErrorCategory(str, Enum):
    """Shared failure taxonomy across every transport."""
    AUTHENTICATION_FAILURE = "AuthenticationFailure"
    PERMISSION_DENIED = "PermissionDenied"
    INVALID_TARGET = "InvalidTarget"
    TRANSIENT_PROTOCOL_FAILURE = "TransientProtocolFailure"
    UNSUPPORTED_OPERATION = "UnsupportedOperation"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class Credential(BaseModel):
    """Explicit Windows credential (DOMAIN\\user or user@REALM)."""

    model_config = {"frozen": True}

    username: str = Field(..., min_length=1)
    password: SecretStr = Field(default=SecretStr(""))

    @property
    def identity(self) -> str:
        return self.username.strip().lower()


def credential_identity(credential: Optional[Credential]) -> str:
    """Return the ledger key for a credential, or the implicit sentinel."""

    if credential is None:
        return IMPLICIT_IDENTITY
    return credential.identity


class ClassRequest(BaseModel):
    """Fetch every instance of a class."""

    class_name: str = Field(..., min_length=1)


class QueryRequest(BaseModel):
    """Run a query in the given dialect."""

    query: str = Field(..., min_length=1)
    dialect: str = "WQL"


CimRequest = Union[ClassRequest, QueryRequest]


class NegotiateRequest(BaseModel):
    """Body of the negotiate endpoint."""

    hosts: List[str] = Field(..., min_length=1)
    credential: Optional[Credential] = None
    class_name: Optional[str] = None
    query: Optional[str] = None
    dialect: str = "WQL"
    namespace: Optional[str] = None
    excluded_protocols: List[Protocol] = Field(default_factory=list)
    force: bool = False

    @model_validator(mode="after")
    def _check_payload(self) -> "NegotiateRequest":
        if bool(self.class_name) == bool(self.query):
            raise ValueError("Exactly one of class_name or query must be provided")
        return self

    def to_cim_request(self) -> CimRequest:
        if self.class_name:
            return ClassRequest(class_name=self.class_name)
        return QueryRequest(query=self.query or "", dialect=self.dialect)


class ConnectionRecordView(BaseModel):
    """Serializable snapshot of a connection record."""

    computer_name: str
    enabled_protocols: List[Protocol]
    protocol_health: Dict[Protocol, ProtocolHealth]
    good_credentials: List[str] = Field(default_factory=list)
    bad_credentials: List[str] = Field(default_factory=list)
    prefer_good_credential_override: bool = False
    prefer_implicit_credential_override: bool = False
    last_protocol: Optional[Protocol] = None
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None


class CacheStatusResponse(BaseModel):
    """Connection cache state."""

    enabled: bool
    hosts: int


class NegotiationErrorView(BaseModel):
    """Classified error as returned to API callers."""

    category: ErrorCategory
    message: str
    protocol: Optional[Protocol] = None
    native_code: Optional[Any] = None


class NegotiationAttemptView(BaseModel):
    protocol: Protocol
    outcome: str
    category: Optional[ErrorCategory] = None


class NegotiationResultView(BaseModel):
    """Outcome of negotiating one host."""

    host: str
    success: bool
    protocol: Optional[Protocol] = None
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[NegotiationErrorView] = None
    attempts: List[NegotiationAttemptView] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: datetime
