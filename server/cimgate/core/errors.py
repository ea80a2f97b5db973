"""Classified failures shared by every transport adapter and the negotiator."""
from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from .models import PROTOCOL_ORDER, ErrorCategory, Protocol

# Categories that describe the request itself; switching protocol cannot help.
REQUEST_SCOPED_CATEGORIES = frozenset(
    {
        ErrorCategory.INVALID_TARGET,
        ErrorCategory.PERMISSION_DENIED,
        ErrorCategory.UNSUPPORTED_OPERATION,
    }
)

# Categories that let the negotiator move on to the next protocol.
PROTOCOL_SWITCHABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,
        ErrorCategory.TIMEOUT,
    }
)


class ClassifiedError(RuntimeError):
    """A failure mapped into the shared taxonomy, with the native payload kept."""

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        *,
        host: Optional[str] = None,
        protocol: Optional[Protocol] = None,
        native_code: Any = None,
        native_name: Optional[str] = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.message = message
        self.host = host
        self.protocol = protocol
        self.native_code = native_code
        self.native_name = native_name
        self.payload = payload

    @property
    def is_request_scoped(self) -> bool:
        return self.category in REQUEST_SCOPED_CATEGORIES

    @property
    def is_protocol_switchable(self) -> bool:
        return self.category in PROTOCOL_SWITCHABLE_CATEGORIES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "host": self.host,
            "protocol": self.protocol.value if self.protocol else None,
            "native_code": self.native_code,
            "native_name": self.native_name,
        }

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(category={self.category.value!r}, "
            f"protocol={self.protocol.value if self.protocol else None!r}, "
            f"message={self.message!r})"
        )


class BadCredentialError(ClassifiedError):
    """Raised when a credential is already known to fail against a host."""

    def __init__(self, host: str, identity: str) -> None:
        super().__init__(
            ErrorCategory.AUTHENTICATION_FAILURE,
            f"[{host}] Credential '{identity}' is known to fail authentication; "
            "refusing to retry it. Clear the connection cache to try again.",
            host=host,
            native_name="BadCredential",
        )
        self.identity = identity


class NoViableProtocolError(ClassifiedError):
    """Raised when every enabled protocol is excluded or has failed."""

    def __init__(
        self,
        host: str,
        enabled: Iterable[Protocol],
        excluded: Iterable[Protocol],
        failed: Iterable[Protocol],
        last_error: Optional[ClassifiedError] = None,
    ) -> None:
        self.enabled = _ordered(enabled)
        self.excluded = _ordered(excluded)
        self.failed = _ordered(failed)
        self.last_error = last_error

        if not self.enabled:
            detail = "no protocols are enabled"
        else:
            detail = (
                f"enabled: {_names(self.enabled)}; "
                f"excluded: {_names(self.excluded) or 'none'}; "
                f"failed: {_names(self.failed) or 'none'}"
            )
        message = f"[{host}] No viable protocol left to connect ({detail})"
        if last_error is not None:
            message = f"{message}. Last error: {last_error.message}"

        super().__init__(
            last_error.category if last_error is not None else ErrorCategory.TRANSIENT_PROTOCOL_FAILURE,
            message,
            host=host,
            native_name="NoViableProtocol",
        )


def _ordered(protocols: Iterable[Protocol]) -> list[Protocol]:
    wanted = set(protocols)
    return [p for p in PROTOCOL_ORDER if p in wanted]


def _names(protocols: Iterable[Protocol]) -> str:
    return ", ".join(p.value for p in protocols)


__all__ = [
    "BadCredentialError",
    "ClassifiedError",
    "NoViableProtocolError",
    "PROTOCOL_SWITCHABLE_CATEGORIES",
    "REQUEST_SCOPED_CATEGORIES",
]
