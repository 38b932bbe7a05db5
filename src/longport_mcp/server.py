"""
MCP Server and transports
=========================
The Gateway owns every component; stdio and SSE transports share it and
open one ProtocolSession per connected client.
"""

import asyncio
import contextvars
import json
import logging
from typing import Any, Dict, List, Optional, Set

import mcp.server.stdio
import mcp.types as types
import uvicorn
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions
from mcp.server.sse import SseServerTransport
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Mount, Route

from .adapter import BackendAdapter
from .backend import Backend
from .config import API_VERSION, DEFAULT_QUEUE_SIZE, SERVER_NAME, CredentialContext
from .dispatcher import ToolDispatcher
from .errors import AuthError, ErrorKind, ToolError
from .hub import EventHub
from .models import ToolInvocation
from .session import ProtocolSession
from .subscriptions import SubscriptionRegistry
from .tools import GatewayTools, build_dispatcher

logger = logging.getLogger("longport-mcp.server")

current_session: contextvars.ContextVar[ProtocolSession] = contextvars.ContextVar("current_session")

# ==========================================
# Gateway
# ==========================================

class Gateway:
    """Wires adapter, registry, hub and dispatcher together."""

    def __init__(self, credentials: CredentialContext, backend: Backend,
                 queue_size: int = DEFAULT_QUEUE_SIZE, **adapter_options):
        self.credentials = credentials
        self.queue_size = queue_size
        self.adapter = BackendAdapter(backend, credentials, **adapter_options)
        self.registry = SubscriptionRegistry(
            self.adapter,
            retry_attempts=self.adapter.max_attempts,
            retry_delay=self.adapter.initial_delay,
            retry_factor=self.adapter.backoff_factor,
        )
        self.hub = EventHub(self.registry)
        self.tools = GatewayTools(self.adapter, self.registry, self.hub)
        self.dispatcher: ToolDispatcher = build_dispatcher(self.tools)

        self.adapter.add_listener(self.hub.publish)
        self.adapter.set_reconnect_hook(self.registry.resubscribe_all)
        self.adapter.set_fatal_handler(self._on_fatal)

        self._fatal = asyncio.Event()
        self.fatal_error: Optional[AuthError] = None
        self._teardowns: Set[asyncio.Task] = set()

    def _on_fatal(self, error: AuthError) -> None:
        self.fatal_error = error
        self._fatal.set()

    async def wait_fatal(self) -> AuthError:
        await self._fatal.wait()
        return self.fatal_error

    # ==========================================
    # Sessions
    # ==========================================

    def open_session(self, transport: str) -> ProtocolSession:
        session = ProtocolSession(transport=transport, max_pending=self.queue_size)
        self.hub.attach(session)
        logger.info(f"Session {session.id} opened ({transport})")
        return session

    async def close_session(self, session: ProtocolSession) -> None:
        """Tear a session down and release all of its subscriptions."""
        session.close()
        self.hub.detach(session.id)
        # Runs to completion even when the transport cancels us (SSE client gone)
        teardown = asyncio.create_task(self.registry.remove_session(session.id))
        self._teardowns.add(teardown)
        teardown.add_done_callback(self._teardowns.discard)
        await asyncio.shield(teardown)
        logger.info(f"Session {session.id} closed "
                    f"(sent {session.sent_events}, dropped {session.dropped_events})")

    async def serve_session(self, server: Server, read_stream, write_stream,
                            transport: str) -> None:
        """Run one MCP session over the given streams."""
        session = self.open_session(transport)
        token = current_session.set(session)
        delivery = asyncio.create_task(session.run_delivery())
        try:
            await server.run(read_stream, write_stream, initialization_options(server))
        finally:
            current_session.reset(token)
            delivery.cancel()
            await self.close_session(session)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]],
                        session: ProtocolSession) -> List[types.TextContent]:
        """Dispatch a tool call and shape the result as MCP text content."""
        invocation = ToolInvocation(tool_name=name, arguments=arguments or {})
        try:
            result = await self.dispatcher.dispatch(invocation, session)
        except ToolError as e:
            logger.warning(f"[{session.id}] {name} failed: {e.kind.value}: {e.message}")
            return error_content(name, e)
        return [types.TextContent(
            type="text",
            text=json.dumps(result, indent=2, default=str)
        )]

    def status(self) -> Dict[str, Any]:
        return {
            "server": SERVER_NAME,
            "version": API_VERSION,
            "backend": self.adapter.status(),
            "hub": self.hub.stats(),
            "tools": len(self.dispatcher),
        }

    async def shutdown(self) -> None:
        if self._teardowns:
            await asyncio.gather(*self._teardowns, return_exceptions=True)
        await self.adapter.close()


def error_content(name: str, error: ToolError) -> List[types.TextContent]:
    return [types.TextContent(
        type="text",
        text=json.dumps({"error": error.to_dict(), "tool": name}, indent=2)
    )]

# ==========================================
# MCP Server Implementation
# ==========================================

def initialization_options(server: Server) -> InitializationOptions:
    return InitializationOptions(
        server_name=SERVER_NAME,
        server_version=API_VERSION,
        capabilities=server.get_capabilities(
            notification_options=NotificationOptions(),
            experimental_capabilities={},
        )
    )


def create_server(gateway: Gateway) -> Server:
    """Create the MCP server bound to a gateway."""
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        """List the static tool catalog."""
        return [spec.to_mcp_tool() for spec in gateway.dispatcher.catalog()]

    # Arguments are validated by the dispatcher so clients get our error kinds
    @server.call_tool(validate_input=False)
    async def handle_call_tool(
        name: str,
        arguments: dict | None
    ) -> list[types.TextContent]:
        """Handle tool calls."""
        session = current_session.get(None)
        if session is None:
            return error_content(name, ToolError(ErrorKind.INTERNAL, "No active session"))

        mcp_session = server.request_context.session

        async def send(notification: Dict[str, Any]) -> None:
            await mcp_session.send_log_message(
                level="info",
                data=notification,
                logger=notification["channel"],
            )

        session.attach(send)
        return await gateway.call_tool(name, arguments, session)

    return server

# ==========================================
# Transports
# ==========================================

async def run_stdio(gateway: Gateway) -> None:
    """Serve a single session over stdin/stdout."""
    server = create_server(gateway)
    async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
        logger.info("MCP stdio server started")
        await gateway.serve_session(server, read_stream, write_stream, transport="stdio")


def create_sse_app(gateway: Gateway) -> Starlette:
    """Starlette app: GET /sse opens a stream, POST /messages/ carries requests."""
    server = create_server(gateway)
    sse = SseServerTransport("/messages/")

    async def handle_sse(request: Request) -> Response:
        async with sse.connect_sse(request.scope, request.receive, request._send) as streams:
            await gateway.serve_session(server, streams[0], streams[1], transport="sse")
        return Response()

    async def handle_health(request: Request) -> JSONResponse:
        return JSONResponse(gateway.status())

    return Starlette(
        routes=[
            Route("/sse", endpoint=handle_sse, methods=["GET"]),
            Route("/health", endpoint=handle_health, methods=["GET"]),
            Mount("/messages/", app=sse.handle_post_message),
        ]
    )


async def run_sse(gateway: Gateway, host: str, port: int) -> None:
    """Serve one session per SSE connection."""
    app = create_sse_app(gateway)
    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    logger.info(f"MCP SSE server listening on http://{host}:{port}/sse")
    await uvicorn.Server(config).serve()
