"""
Tests for the MCP server, transports and process lifecycle
==========================================================
Run with: python -m pytest tests/test_server.py
"""

import asyncio
import contextlib
import json

import httpx
import mcp.types as types
import pytest
import uvicorn
from mcp.client.session import ClientSession
from mcp.client.sse import sse_client
from mcp.shared.memory import create_client_server_memory_streams

from conftest import FakeBackend, wait_until
from longport_mcp import cli
from longport_mcp.config import ServerSettings
from longport_mcp.errors import AuthError
from longport_mcp.models import Operation
from longport_mcp.server import create_server, create_sse_app


@pytest.mark.asyncio
async def test_call_tool_returns_json_text(gateway, backend):
    backend.responses[Operation.QUOTE] = [{"symbol": "AAPL.US", "last_done": "190.10"}]
    session = gateway.open_session("stdio")

    result = await gateway.call_tool("quote", {"symbols": ["AAPL.US"]}, session)

    assert len(result) == 1
    assert result[0].type == "text"
    data = json.loads(result[0].text)
    assert data["count"] == 1
    assert data["quotes"][0]["last_done"] == "190.10"


@pytest.mark.asyncio
async def test_call_tool_error_payload(gateway, backend):
    session = gateway.open_session("stdio")

    result = await gateway.call_tool("quote", {"symbols": []}, session)
    data = json.loads(result[0].text)

    assert data["tool"] == "quote"
    assert data["error"]["kind"] == "invalid_argument"
    assert backend.calls == []

    data = json.loads((await gateway.call_tool("nope", None, session))[0].text)
    assert data["error"]["kind"] == "unknown_tool"


@pytest.mark.asyncio
async def test_session_end_to_end(gateway, backend):
    """A client lists tools, subscribes, and receives a push as a notification."""
    server = create_server(gateway)
    received = []
    notified = asyncio.Event()

    async def on_log(params: types.LoggingMessageNotificationParams):
        received.append(params)
        notified.set()

    async with create_client_server_memory_streams() as (client_streams, server_streams):
        serving = asyncio.create_task(
            gateway.serve_session(server, server_streams[0], server_streams[1], transport="stdio")
        )
        async with ClientSession(client_streams[0], client_streams[1], logging_callback=on_log) as client:
            await client.initialize()

            listed = await client.list_tools()
            assert len(listed.tools) == len(gateway.dispatcher)
            assert backend.connect_calls == 0

            result = await client.call_tool("subscribe_quote", {"symbols": ["AAPL.US"]})
            ack = json.loads(result.content[0].text)
            assert ack["status"] == "subscribed"
            assert ack["channels"] == ["quote:AAPL.US"]

            backend.push("quote:AAPL.US", {"last_done": "190.10"})
            await asyncio.wait_for(notified.wait(), 5)

        await client_streams[1].aclose()
        await asyncio.wait_for(serving, 5)

    assert received[0].logger == "quote:AAPL.US"
    assert received[0].data["payload"] == {"last_done": "190.10"}
    # Session teardown released the subscription
    assert backend.subscribed == set()
    assert gateway.hub.session_count == 0

# ==========================================
# SSE app
# ==========================================

@pytest.mark.asyncio
async def test_sse_health(gateway):
    app = create_sse_app(gateway)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["server"] == "longport-mcp"
    assert body["backend"]["state"] == "disconnected"
    assert body["tools"] == 18


@pytest.mark.asyncio
async def test_sse_post_without_session_is_rejected(gateway):
    app = create_sse_app(gateway)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.post("/messages/", json={"jsonrpc": "2.0", "id": 1, "method": "ping"})

    assert response.status_code == 400


@contextlib.asynccontextmanager
async def running_sse_server(gateway):
    """Serve the SSE app with uvicorn on an ephemeral port."""
    config = uvicorn.Config(
        create_sse_app(gateway), host="127.0.0.1", port=0,
        log_level="warning", lifespan="off", timeout_graceful_shutdown=2,
    )
    server = uvicorn.Server(config)
    serving = asyncio.create_task(server.serve())
    await wait_until(lambda: server.started or serving.done(), timeout=5)
    if serving.done():
        serving.result()
    port = server.servers[0].sockets[0].getsockname()[1]
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        server.should_exit = True
        await asyncio.wait_for(serving, 10)


def tool_json(result: types.CallToolResult):
    return json.loads(result.content[0].text)


@pytest.mark.asyncio
async def test_sse_connections_get_own_sessions_and_release_on_disconnect(gateway, backend):
    async with running_sse_server(gateway) as base_url:
        async with sse_client(f"{base_url}/sse") as (read_stream, write_stream):
            async with ClientSession(read_stream, write_stream) as client:
                await client.initialize()
                ack = tool_json(await client.call_tool("subscribe_quote", {"symbols": ["AAPL.US"]}))
                assert ack["status"] == "subscribed"
                assert gateway.hub.session_count == 1

                async with sse_client(f"{base_url}/sse") as (other_read, other_write):
                    async with ClientSession(other_read, other_write) as other:
                        await other.initialize()
                        assert gateway.hub.session_count == 2
                        listed = tool_json(await other.call_tool("list_subscriptions", {}))
                        assert listed["channels"] == []
                        assert listed["session"]["session_id"] != ack["session_id"]
                        assert listed["session"]["transport"] == "sse"

                # Second client left; the first one's subscription stays
                await wait_until(lambda: gateway.hub.session_count == 1, timeout=5)
                assert backend.subscribed == {"quote:AAPL.US"}

        await wait_until(lambda: gateway.hub.session_count == 0, timeout=5)
        await wait_until(lambda: backend.subscribed == set(), timeout=5)

    assert backend.unsubscribe_calls == ["quote:AAPL.US"]

# ==========================================
# Process lifecycle
# ==========================================

@pytest.mark.asyncio
async def test_serve_exits_cleanly_when_transport_ends(credentials, monkeypatch):
    backend = FakeBackend()

    async def fake_stdio(gateway):
        await gateway.adapter.ensure_connected()

    monkeypatch.setattr(cli, "run_stdio", fake_stdio)
    code = await cli.serve(ServerSettings(), credentials, backend=backend)

    assert code == cli.EXIT_OK
    assert backend.close_calls == 1


@pytest.mark.asyncio
async def test_serve_exits_with_auth_code_when_credentials_rejected(credentials, monkeypatch):
    backend = FakeBackend()
    backend.connect_failures = 100
    backend.connect_error = AuthError("401003 invalid signature")

    async def fake_stdio(gateway):
        with pytest.raises(AuthError):
            await gateway.adapter.ensure_connected()
        await asyncio.Event().wait()

    monkeypatch.setattr(cli, "run_stdio", fake_stdio)
    code = await asyncio.wait_for(cli.serve(ServerSettings(), credentials, backend=backend), 10)

    assert code == cli.EXIT_AUTH
    assert backend.connect_calls == 5
