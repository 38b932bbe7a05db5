"""
LongPort MCP Server
===================
Exposes LongPort OpenAPI trading, real-time quotes and portfolio queries as
Model Context Protocol tools over stdio or HTTP/SSE.
"""

from .config import API_VERSION, CredentialContext
from .errors import (
    AuthError,
    BackendError,
    BackendRejectedError,
    ConfigError,
    ErrorKind,
    SubscriptionError,
    ToolError,
    TransientBackendError,
)

__version__ = API_VERSION

__all__ = [
    "API_VERSION",
    "AuthError",
    "BackendError",
    "BackendRejectedError",
    "ConfigError",
    "CredentialContext",
    "ErrorKind",
    "SubscriptionError",
    "ToolError",
    "TransientBackendError",
    "__version__",
]
