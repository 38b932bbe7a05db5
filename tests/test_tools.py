"""
Tests for the tool catalog and dispatcher
=========================================
Tools are exercised end to end through the Gateway against FakeBackend.
Run with: python -m pytest tests/test_tools.py
"""

import asyncio

import pytest
from pydantic import BaseModel

from conftest import wait_until
from longport_mcp.errors import (
    AuthError,
    BackendRejectedError,
    ErrorKind,
    ToolError,
    TransientBackendError,
)
from longport_mcp.models import Operation, ToolInvocation
from longport_mcp.schemas import SubmitOrderInput

EXPECTED_TOOLS = {
    "submit_order", "replace_order", "cancel_order", "today_orders",
    "history_orders", "today_executions", "order_detail", "quote",
    "candlesticks", "subscribe_quote", "unsubscribe_quote",
    "subscribe_order_updates", "unsubscribe_order_updates",
    "list_subscriptions", "account_balance", "stock_positions",
    "fund_positions", "connection_status",
}

LIMIT_BUY = {
    "symbol": "aapl.us",
    "order_type": "LO",
    "side": "Buy",
    "quantity": "10",
    "submitted_price": "190.50",
}


async def run_tool(gateway, session, name, arguments=None):
    return await gateway.dispatcher.dispatch(ToolInvocation(name, arguments or {}), session)

# ==========================================
# Catalog
# ==========================================

def test_catalog_is_complete_and_static(gateway, backend):
    names = {spec.name for spec in gateway.dispatcher.catalog()}
    assert names == EXPECTED_TOOLS
    assert backend.connect_calls == 0


def test_catalog_is_frozen(gateway):
    class Extra(BaseModel):
        pass

    async def handler(params, session):
        return {}

    with pytest.raises(RuntimeError):
        gateway.dispatcher.register("extra", Extra, handler)
    assert "extra" not in gateway.dispatcher


def test_order_tools_are_not_read_only(gateway):
    for name in ("submit_order", "replace_order", "cancel_order"):
        assert gateway.dispatcher.get(name).read_only is False
    assert gateway.dispatcher.get("quote").read_only is True


def test_mcp_tool_schema(gateway):
    tool = gateway.dispatcher.get("submit_order").to_mcp_tool()
    assert tool.name == "submit_order"
    assert tool.description
    assert set(tool.inputSchema["required"]) == {"symbol", "order_type", "side", "quantity"}
    assert tool.annotations.destructiveHint is True
    assert tool.annotations.readOnlyHint is False

    empty = gateway.dispatcher.get("connection_status").to_mcp_tool()
    assert empty.inputSchema["type"] == "object"
    assert empty.inputSchema["properties"] == {}

# ==========================================
# Validation
# ==========================================

def test_submit_order_input_requires_limit_price():
    with pytest.raises(ValueError):
        SubmitOrderInput(symbol="AAPL.US", order_type="LO", side="Buy", quantity=1)
    order = SubmitOrderInput(symbol="AAPL.US", order_type="MO", side="Sell", quantity=1)
    assert order.time_in_force == "Day"


@pytest.mark.asyncio
@pytest.mark.parametrize("arguments", [
    dict(LIMIT_BUY, quantity="-1"),
    dict(LIMIT_BUY, symbol="AAPL"),
    dict(LIMIT_BUY, side="Hold"),
    dict(LIMIT_BUY, submitted_price=None),
    dict(LIMIT_BUY, time_in_force="GoodTilDate"),
    dict(LIMIT_BUY, leverage=10),
    {},
])
async def test_invalid_order_never_reaches_backend(gateway, backend, arguments):
    session = gateway.open_session("stdio")
    with pytest.raises(ToolError) as exc:
        await run_tool(gateway, session, "submit_order", arguments)

    assert exc.value.kind is ErrorKind.INVALID_ARGUMENT
    assert backend.connect_calls == 0
    assert backend.calls == []


@pytest.mark.asyncio
async def test_unknown_tool(gateway, backend):
    session = gateway.open_session("stdio")
    with pytest.raises(ToolError) as exc:
        await run_tool(gateway, session, "margin_call")
    assert exc.value.kind is ErrorKind.UNKNOWN_TOOL
    assert backend.connect_calls == 0


@pytest.mark.asyncio
async def test_history_orders_range_checked(gateway, backend):
    session = gateway.open_session("stdio")
    with pytest.raises(ToolError) as exc:
        await run_tool(gateway, session, "history_orders", {
            "start_at": "2024-02-01T00:00:00Z",
            "end_at": "2024-01-01T00:00:00Z",
        })
    assert exc.value.kind is ErrorKind.INVALID_ARGUMENT
    assert "start_at" in exc.value.message

# ==========================================
# Trading and quote tools
# ==========================================

@pytest.mark.asyncio
async def test_submit_order(gateway, backend):
    backend.responses[Operation.SUBMIT_ORDER] = {"order_id": "701276261045858304"}
    session = gateway.open_session("stdio")

    result = await run_tool(gateway, session, "submit_order", LIMIT_BUY)

    assert result["status"] == "submitted"
    assert result["order_id"] == "701276261045858304"
    assert result["symbol"] == "AAPL.US"
    operation, params = backend.calls[0]
    assert operation is Operation.SUBMIT_ORDER
    assert params["symbol"] == "AAPL.US"
    assert str(params["submitted_price"]) == "190.50"


@pytest.mark.asyncio
async def test_submit_order_transient_error_reported_once(gateway, backend):
    backend.call_failures[Operation.SUBMIT_ORDER] = [TransientBackendError("request timeout")]
    session = gateway.open_session("stdio")

    with pytest.raises(ToolError) as exc:
        await run_tool(gateway, session, "submit_order", LIMIT_BUY)

    assert exc.value.kind is ErrorKind.BACKEND_UNAVAILABLE
    assert "outcome is unknown" in exc.value.message
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_read_only_tool_recovers_from_transient_error(gateway, backend):
    backend.call_failures[Operation.STOCK_POSITIONS] = [TransientBackendError("request timeout")]
    backend.responses[Operation.STOCK_POSITIONS] = [{"symbol": "700.HK", "quantity": "200"}]
    session = gateway.open_session("stdio")

    result = await run_tool(gateway, session, "stock_positions", {"symbols": ["700.hk"]})

    assert result == {"positions": [{"symbol": "700.HK", "quantity": "200"}]}
    assert len(backend.calls) == 2
    assert backend.calls[0][1] == {"symbols": ["700.HK"]}


@pytest.mark.asyncio
async def test_rejected_request_maps_to_backend_rejected(gateway, backend):
    backend.call_failures[Operation.CANCEL_ORDER] = [
        BackendRejectedError("order already filled: internal detail", code=603059)
    ]
    session = gateway.open_session("stdio")

    with pytest.raises(ToolError) as exc:
        await run_tool(gateway, session, "cancel_order", {"order_id": "42"})

    assert exc.value.kind is ErrorKind.BACKEND_REJECTED
    assert "603059" in exc.value.message
    assert "internal detail" not in exc.value.message


@pytest.mark.asyncio
async def test_auth_failure_maps_to_unauthenticated(gateway, backend):
    backend.call_failures[Operation.ACCOUNT_BALANCE] = [AuthError("401004 token expired")]
    session = gateway.open_session("stdio")

    with pytest.raises(ToolError) as exc:
        await run_tool(gateway, session, "account_balance", {"currency": "usd"})

    assert exc.value.kind is ErrorKind.UNAUTHENTICATED
    assert "token expired" not in exc.value.message
    assert gateway.fatal_error is not None


@pytest.mark.asyncio
async def test_unexpected_failure_maps_to_internal(gateway, backend):
    session = gateway.open_session("stdio")
    backend.call_failures[Operation.QUOTE] = [KeyError("last_done")]

    with pytest.raises(ToolError) as exc:
        await run_tool(gateway, session, "quote", {"symbols": ["AAPL.US"]})
    assert exc.value.kind is ErrorKind.INTERNAL


@pytest.mark.asyncio
async def test_candlesticks_defaults(gateway, backend):
    backend.responses[Operation.CANDLESTICKS] = [{"close": "190.1"}, {"close": "191.0"}]
    session = gateway.open_session("stdio")

    result = await run_tool(gateway, session, "candlesticks", {"symbol": "700.HK"})

    assert result["count"] == 2
    assert result["period"] == "Day"
    assert backend.calls[0][1]["count"] == 100


@pytest.mark.asyncio
async def test_connection_status_makes_no_backend_call(gateway, backend):
    session = gateway.open_session("stdio")
    result = await run_tool(gateway, session, "connection_status")

    assert result["backend"]["state"] == "disconnected"
    assert result["hub"]["sessions"] == 1
    assert backend.connect_calls == 0

# ==========================================
# Subscriptions
# ==========================================

@pytest.mark.asyncio
async def test_subscribe_quote_acknowledges_and_streams(gateway, backend):
    session = gateway.open_session("stdio")

    result = await run_tool(gateway, session, "subscribe_quote", {
        "symbols": ["AAPL.US", "700.HK"],
        "sub_types": ["quote", "depth"],
    })

    assert result["status"] == "subscribed"
    assert result["session_id"] == session.id
    assert result["channels"] == ["quote:AAPL.US", "depth:AAPL.US", "quote:700.HK", "depth:700.HK"]
    assert backend.subscribed == set(result["channels"])

    backend.push("quote:AAPL.US", {"last_done": "190.10"})
    backend.push("trades:AAPL.US", {"trades": []})
    assert session.pending == 1

    listed = await run_tool(gateway, session, "list_subscriptions")
    assert len(listed["channels"]) == 4
    assert listed["states"] == {channel: "active" for channel in listed["channels"]}


@pytest.mark.asyncio
async def test_subscribe_quote_accepts_sdk_sub_type_names(gateway, backend):
    session = gateway.open_session("stdio")

    result = await run_tool(gateway, session, "subscribe_quote", {
        "symbols": ["700.HK"],
        "sub_types": ["Trade", "Brokers", "trades"],
    })

    assert result["channels"] == ["trades:700.HK", "brokers:700.HK"]


@pytest.mark.asyncio
async def test_subscribe_quote_partial_refusal(gateway, backend):
    backend.refused.add("quote:700.HK")
    session = gateway.open_session("stdio")

    result = await run_tool(gateway, session, "subscribe_quote", {"symbols": ["AAPL.US", "700.HK"]})

    assert result["status"] == "partially_subscribed"
    assert result["channels"] == ["quote:AAPL.US"]
    assert result["failed"][0]["channel"] == "quote:700.HK"


@pytest.mark.asyncio
async def test_subscribe_quote_refused(gateway, backend):
    backend.refused.add("quote:AAPL.US")
    session = gateway.open_session("stdio")

    with pytest.raises(ToolError) as exc:
        await run_tool(gateway, session, "subscribe_quote", {"symbols": ["AAPL.US"]})

    assert exc.value.kind is ErrorKind.SUBSCRIPTION_FAILED
    assert gateway.registry.channels_for(session.id) == frozenset()


@pytest.mark.asyncio
async def test_subscribe_on_closed_session_is_cancelled(gateway, backend):
    session = gateway.open_session("stdio")
    session.close()

    with pytest.raises(ToolError) as exc:
        await run_tool(gateway, session, "subscribe_order_updates")

    assert exc.value.kind is ErrorKind.CANCELLED
    assert backend.subscribe_calls == []


@pytest.mark.asyncio
async def test_unsubscribe_quote_releases_channel(gateway, backend):
    s1 = gateway.open_session("stdio")
    s2 = gateway.open_session("sse")
    await run_tool(gateway, s1, "subscribe_quote", {"symbols": ["AAPL.US"]})
    await run_tool(gateway, s2, "subscribe_quote", {"symbols": ["AAPL.US"]})
    assert backend.subscribe_calls == ["quote:AAPL.US"]

    await run_tool(gateway, s1, "unsubscribe_quote", {"symbols": ["AAPL.US"]})
    assert "quote:AAPL.US" in backend.subscribed

    await run_tool(gateway, s2, "unsubscribe_quote", {"symbols": ["AAPL.US"]})
    assert backend.subscribed == set()


@pytest.mark.asyncio
async def test_order_updates_channel(gateway, backend):
    session = gateway.open_session("stdio")
    await run_tool(gateway, session, "subscribe_order_updates")
    assert "orders" in backend.subscribed

    backend.push("orders", {"order_id": "1", "status": "Filled"})
    assert session.pending == 1

    await run_tool(gateway, session, "unsubscribe_order_updates")
    assert backend.subscribed == set()


@pytest.mark.asyncio
async def test_subscription_survives_reconnect(gateway, backend):
    """Subscribed to AAPL.US; the backend drops and comes back."""
    session = gateway.open_session("stdio")
    await run_tool(gateway, session, "subscribe_quote", {"symbols": ["AAPL.US"]})

    backend.connect_failures = 1
    backend.drop_connection()
    assert gateway.adapter.state.value == "degraded"

    await wait_until(lambda: "quote:AAPL.US" in backend.subscribed)
    assert backend.subscribe_calls == ["quote:AAPL.US", "quote:AAPL.US"]
    assert gateway.adapter.reconnects == 1

    backend.push("quote:AAPL.US", {"last_done": "191.00"})
    assert session.pending == 1


@pytest.mark.asyncio
async def test_refused_replay_is_retried_after_reconnect(gateway, backend):
    session = gateway.open_session("stdio")
    await run_tool(gateway, session, "subscribe_quote", {"symbols": ["AAPL.US"]})

    backend.subscribe_failures["quote:AAPL.US"] = [
        BackendRejectedError("too many requests", code=429002),
    ]
    backend.drop_connection()

    await wait_until(lambda: "quote:AAPL.US" in backend.subscribed)
    assert backend.subscribe_calls.count("quote:AAPL.US") == 3

    listed = await run_tool(gateway, session, "list_subscriptions")
    assert listed["states"] == {"quote:AAPL.US": "active"}


@pytest.mark.asyncio
async def test_subscribe_while_reconnecting_completes(gateway, backend):
    first = gateway.open_session("stdio")
    second = gateway.open_session("stdio")
    await run_tool(gateway, first, "subscribe_quote", {"symbols": ["AAPL.US"]})

    backend.connect_failures = 1
    backend.drop_connection()
    result = await asyncio.wait_for(
        run_tool(gateway, second, "subscribe_quote", {"symbols": ["700.HK"]}), 2
    )

    assert result["channels"] == ["quote:700.HK"]
    await wait_until(lambda: backend.subscribed == {"quote:AAPL.US", "quote:700.HK"})


@pytest.mark.asyncio
async def test_closing_session_releases_subscriptions(gateway, backend):
    session = gateway.open_session("stdio")
    await run_tool(gateway, session, "subscribe_quote", {"symbols": ["AAPL.US", "700.HK"]})
    await run_tool(gateway, session, "subscribe_order_updates")

    await asyncio.gather(gateway.close_session(session), gateway.close_session(session))

    assert backend.subscribed == set()
    assert sorted(backend.unsubscribe_calls) == ["orders", "quote:700.HK", "quote:AAPL.US"]
    assert gateway.hub.session_count == 0
