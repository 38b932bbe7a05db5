"""
Configuration and constants
===========================
Credential loading, server settings and logging setup for the gateway.
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError

# ==========================================
# Constants
# ==========================================

SERVER_NAME = "longport-mcp"
API_VERSION = "1.0.0"

ENV_APP_KEY = "LONGPORT_APP_KEY"
ENV_APP_SECRET = "LONGPORT_APP_SECRET"
ENV_ACCESS_TOKEN = "LONGPORT_ACCESS_TOKEN"
ENV_HTTP_URL = "LONGPORT_HTTP_URL"
ENV_QUOTE_WS_URL = "LONGPORT_QUOTE_WS_URL"
ENV_TRADE_WS_URL = "LONGPORT_TRADE_WS_URL"
ENV_QUEUE_SIZE = "LONGPORT_MCP_QUEUE_SIZE"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
DEFAULT_QUEUE_SIZE = 1000

# Backoff for connect/reconnect: 0.1s, 0.2s, 0.4s, 0.8s between 5 attempts
CONNECT_ATTEMPTS = 5
RETRY_INITIAL_DELAY = 0.1
RETRY_FACTOR = 2.0
REQUEST_TIMEOUT = 30.0

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE_NAME = "longport-mcp.log"

logger = logging.getLogger("longport-mcp.config")

# ==========================================
# Credential Context
# ==========================================

@dataclass(frozen=True)
class CredentialContext:
    """Resolved API credentials. Immutable for the process lifetime."""
    app_key: str
    app_secret: str = field(repr=False)
    access_token: str = field(repr=False)
    http_url: Optional[str] = None
    quote_ws_url: Optional[str] = None
    trade_ws_url: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None,
                 dotenv: bool = True) -> "CredentialContext":
        """
        Build the credential context from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)
            dotenv: Load a .env file into os.environ first

        Raises:
            ConfigError: if any of the three credentials is missing or blank
        """
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ

        values: Dict[str, str] = {}
        missing = []
        for name in (ENV_APP_KEY, ENV_APP_SECRET, ENV_ACCESS_TOKEN):
            value = (environ.get(name) or "").strip()
            if not value:
                missing.append(name)
            values[name] = value

        if missing:
            raise ConfigError(
                f"Missing required environment variable(s): {', '.join(missing)}"
            )

        return cls(
            app_key=values[ENV_APP_KEY],
            app_secret=values[ENV_APP_SECRET],
            access_token=values[ENV_ACCESS_TOKEN],
            http_url=environ.get(ENV_HTTP_URL) or None,
            quote_ws_url=environ.get(ENV_QUOTE_WS_URL) or None,
            trade_ws_url=environ.get(ENV_TRADE_WS_URL) or None,
        )

# ==========================================
# Server Settings
# ==========================================

def parse_bind(value: str) -> Tuple[str, int]:
    """Parse a HOST:PORT bind address."""
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"Invalid bind address '{value}', expected HOST:PORT")
    try:
        port_number = int(port)
    except ValueError:
        raise ConfigError(f"Invalid port in bind address '{value}'") from None
    if not 0 < port_number < 65536:
        raise ConfigError(f"Port out of range in bind address '{value}'")
    return host.strip("[]"), port_number


@dataclass
class ServerSettings:
    """Transport and logging options taken from the command line."""
    transport: str = "stdio"
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_dir: Optional[Path] = None
    log_level: str = "INFO"
    queue_size: int = DEFAULT_QUEUE_SIZE

    @property
    def bind(self) -> str:
        return f"{self.host}:{self.port}"


def queue_size_from_env(environ: Optional[Mapping[str, str]] = None) -> int:
    environ = os.environ if environ is None else environ
    raw = environ.get(ENV_QUEUE_SIZE)
    if not raw:
        return DEFAULT_QUEUE_SIZE
    try:
        size = int(raw)
    except ValueError:
        raise ConfigError(f"{ENV_QUEUE_SIZE} must be an integer, got '{raw}'") from None
    if size < 1:
        raise ConfigError(f"{ENV_QUEUE_SIZE} must be positive")
    return size

# ==========================================
# Logging
# ==========================================

def setup_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> None:
    """
    Configure process logging.

    Logs always go to stderr since stdout carries the stdio transport.
    A file handler is added when log_dir is given.
    """
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
