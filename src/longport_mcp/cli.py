"""Command line entry point for the LongPort MCP gateway."""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from .config import (
    API_VERSION,
    DEFAULT_HOST,
    DEFAULT_PORT,
    CredentialContext,
    ServerSettings,
    parse_bind,
    queue_size_from_env,
    setup_logging,
)
from .errors import ConfigError
from .longport_backend import LongportBackend
from .server import Gateway, run_sse, run_stdio

logger = logging.getLogger("longport-mcp")

EXIT_OK = 0
EXIT_AUTH = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="longport-mcp",
        description="LongPort OpenAPI trading, quote and portfolio tools over MCP",
    )
    parser.add_argument("--sse", action="store_true",
                        help="Serve over HTTP/SSE instead of stdio")
    parser.add_argument("--bind", default=f"{DEFAULT_HOST}:{DEFAULT_PORT}",
                        help="SSE bind address HOST:PORT (default: %(default)s)")
    parser.add_argument("--log-dir", type=Path, default=None,
                        help="Also write logs to DIR/longport-mcp.log")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log level (default: %(default)s)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {API_VERSION}")
    return parser


async def serve(settings: ServerSettings, credentials: CredentialContext,
                backend=None) -> int:
    """Run the gateway until the transport ends or authentication fails for good."""
    gateway = Gateway(credentials, backend or LongportBackend(), queue_size=settings.queue_size)
    logger.info(f"Starting LongPort MCP Server v{API_VERSION} ({settings.transport}), "
                f"{len(gateway.dispatcher)} tools")

    if settings.transport == "sse":
        transport = asyncio.create_task(run_sse(gateway, settings.host, settings.port))
    else:
        transport = asyncio.create_task(run_stdio(gateway))
    fatal = asyncio.create_task(gateway.wait_fatal())

    try:
        done, _ = await asyncio.wait({transport, fatal}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (transport, fatal):
            if not task.done():
                task.cancel()
        await asyncio.gather(transport, fatal, return_exceptions=True)
        await gateway.shutdown()

    if fatal in done:
        logger.error(f"Exiting: {gateway.fatal_error}")
        return EXIT_AUTH

    if transport.exception() is not None:
        raise transport.exception()
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_dir)

    try:
        host, port = parse_bind(args.bind)
        credentials = CredentialContext.from_env()
        queue_size = queue_size_from_env()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG

    settings = ServerSettings(
        transport="sse" if args.sse else "stdio",
        host=host,
        port=port,
        log_dir=args.log_dir,
        log_level=args.log_level,
        queue_size=queue_size,
    )

    try:
        return asyncio.run(serve(settings, credentials))
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        return EXIT_OK
