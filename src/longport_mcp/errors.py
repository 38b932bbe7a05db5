"""
Error taxonomy for the LongPort MCP gateway.

Everything raised across component boundaries derives from GatewayError.
Only ToolError reaches protocol clients; the dispatcher translates the
rest into a ToolError with a stable kind.
"""

from enum import Enum
from typing import Optional


class GatewayError(Exception):
    """Base class for gateway errors."""


class ConfigError(GatewayError):
    """Missing or invalid startup configuration (fatal, before any connection)."""


class AuthError(GatewayError):
    """Backend rejected the credentials or the access token expired."""


class BackendError(GatewayError):
    """Failure while talking to the backend."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class TransientBackendError(BackendError):
    """Network level failure; read-only operations may be retried."""


class BackendRejectedError(BackendError):
    """The backend answered with a business error (bad order, no permission...)."""


class SubscriptionError(GatewayError):
    """Backend refused a subscribe or unsubscribe request."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class ErrorKind(str, Enum):
    """Stable error kinds exposed to protocol clients."""
    INVALID_ARGUMENT = "invalid_argument"
    UNKNOWN_TOOL = "unknown_tool"
    UNAUTHENTICATED = "unauthenticated"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    BACKEND_REJECTED = "backend_rejected"
    SUBSCRIPTION_FAILED = "subscription_failed"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class ToolError(GatewayError):
    """Protocol-facing tool failure."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_dict(self):
        return {"kind": self.kind.value, "message": self.message}
