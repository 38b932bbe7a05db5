"""
Tool catalog
============
Trading, quote and portfolio tools exposed to MCP clients. The catalog is
built once at startup and frozen.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from .adapter import BackendAdapter
from .config import API_VERSION, SERVER_NAME
from .dispatcher import ToolDispatcher
from .errors import AuthError, ErrorKind, GatewayError, SubscriptionError, ToolError
from .hub import EventHub
from .models import ORDERS_CHANNEL, Operation, market_channel
from .schemas import (
    AccountBalanceInput,
    CandlesticksInput,
    EmptyInput,
    FundPositionsInput,
    HistoryOrdersInput,
    OrderIdInput,
    PositionsInput,
    QuoteInput,
    ReplaceOrderInput,
    SubmitOrderInput,
    SubscribeQuoteInput,
    SubscriptionKind,
    TodayExecutionsInput,
    TodayOrdersInput,
)
from .session import ProtocolSession
from .subscriptions import SubscriptionRegistry

logger = logging.getLogger("longport-mcp.tools")

NOTIFICATION_METHOD = "notifications/message"


def _count(data: Any) -> int:
    return len(data) if isinstance(data, list) else 1


class GatewayTools:
    """Tool handlers. Each receives validated input and the calling session."""

    def __init__(self, adapter: BackendAdapter, registry: SubscriptionRegistry, hub: EventHub):
        self.adapter = adapter
        self.registry = registry
        self.hub = hub

    # ==========================================
    # Trading Tools
    # ==========================================

    async def submit_order(self, params: SubmitOrderInput, session: ProtocolSession) -> Dict[str, Any]:
        """
        Submit an order (real brokerage side effect). Never retried
        automatically; if the backend is unreachable the outcome is reported
        as unknown and must be checked with today_orders before resubmitting.
        """
        result = await self.adapter.call(Operation.SUBMIT_ORDER, params.model_dump())
        logger.info(f"Order submitted: {params.side} {params.quantity} {params.symbol} "
                    f"({params.order_type}) -> {result.get('order_id')}")
        return {
            "status": "submitted",
            "order_id": result.get("order_id"),
            "symbol": params.symbol,
            "side": params.side,
            "order_type": params.order_type,
            "quantity": params.quantity,
            "submitted_price": params.submitted_price,
            "time_in_force": params.time_in_force,
        }

    async def replace_order(self, params: ReplaceOrderInput, session: ProtocolSession) -> Dict[str, Any]:
        """Amend quantity and/or price of an open order."""
        await self.adapter.call(Operation.REPLACE_ORDER, params.model_dump())
        return {
            "status": "replace_requested",
            "order_id": params.order_id,
            "quantity": params.quantity,
            "price": params.price,
        }

    async def cancel_order(self, params: OrderIdInput, session: ProtocolSession) -> Dict[str, Any]:
        """Cancel an open order."""
        await self.adapter.call(Operation.CANCEL_ORDER, params.model_dump())
        return {"status": "cancel_requested", "order_id": params.order_id}

    async def today_orders(self, params: TodayOrdersInput, session: ProtocolSession) -> Dict[str, Any]:
        """List today's orders, optionally filtered."""
        orders = await self.adapter.call(Operation.TODAY_ORDERS, params.model_dump())
        return {"count": _count(orders), "orders": orders}

    async def history_orders(self, params: HistoryOrdersInput, session: ProtocolSession) -> Dict[str, Any]:
        """List historical orders in a time range."""
        orders = await self.adapter.call(Operation.HISTORY_ORDERS, params.model_dump())
        return {"count": _count(orders), "orders": orders}

    async def today_executions(self, params: TodayExecutionsInput, session: ProtocolSession) -> Dict[str, Any]:
        """List today's executions (fills)."""
        executions = await self.adapter.call(Operation.TODAY_EXECUTIONS, params.model_dump())
        return {"count": _count(executions), "executions": executions}

    async def order_detail(self, params: OrderIdInput, session: ProtocolSession) -> Any:
        """Get full details of one order."""
        return await self.adapter.call(Operation.ORDER_DETAIL, params.model_dump())

    # ==========================================
    # Quote Tools
    # ==========================================

    async def quote(self, params: QuoteInput, session: ProtocolSession) -> Dict[str, Any]:
        """Get a real-time quote snapshot for one or more symbols."""
        quotes = await self.adapter.call(Operation.QUOTE, params.model_dump())
        return {"count": _count(quotes), "quotes": quotes}

    async def candlesticks(self, params: CandlesticksInput, session: ProtocolSession) -> Dict[str, Any]:
        """Get historical candlesticks for a symbol."""
        candles = await self.adapter.call(Operation.CANDLESTICKS, params.model_dump())
        return {
            "symbol": params.symbol,
            "period": params.period,
            "adjust_type": params.adjust_type,
            "count": _count(candles),
            "candlesticks": candles,
        }

    async def _join(self, session: ProtocolSession, channel: str) -> str:
        if session.closed:
            raise ToolError(ErrorKind.CANCELLED, "Session closed")
        await self.registry.add_subscriber(session.id, channel)
        return channel

    async def _subscribe(self, session: ProtocolSession, channels: List[str]) -> Dict[str, Any]:
        results = await asyncio.gather(
            *(self._join(session, channel) for channel in channels),
            return_exceptions=True
        )

        subscribed, failed = [], []
        for channel, outcome in zip(channels, results):
            if isinstance(outcome, (AuthError, ToolError)):
                raise outcome
            if isinstance(outcome, SubscriptionError):
                failed.append({"channel": channel, "error": "refused by backend"})
            elif isinstance(outcome, GatewayError):
                failed.append({"channel": channel, "error": "backend unavailable"})
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                subscribed.append(channel)

        if failed and not subscribed:
            raise SubscriptionError(", ".join(f["channel"] for f in failed), "refused")

        return {
            "status": "subscribed" if not failed else "partially_subscribed",
            "session_id": session.id,
            "channels": subscribed,
            "failed": failed,
            "delivery": NOTIFICATION_METHOD,
        }

    async def _unsubscribe(self, session: ProtocolSession, channels: List[str]) -> Dict[str, Any]:
        for channel in channels:
            await self.registry.remove_subscriber(session.id, channel)
        return {"status": "unsubscribed", "session_id": session.id, "channels": channels}

    @staticmethod
    def _market_channels(params: SubscribeQuoteInput) -> List[str]:
        return [
            market_channel(SubscriptionKind(kind).value, symbol)
            for symbol in params.symbols
            for kind in dict.fromkeys(params.sub_types)
        ]

    async def subscribe_quote(self, params: SubscribeQuoteInput, session: ProtocolSession) -> Dict[str, Any]:
        """
        Subscribe to real-time market data. Returns immediately with an
        acknowledgment; updates arrive as notifications/message with the
        channel (e.g. quote:AAPL.US) as logger name.
        """
        return await self._subscribe(session, self._market_channels(params))

    async def unsubscribe_quote(self, params: SubscribeQuoteInput, session: ProtocolSession) -> Dict[str, Any]:
        """Stop real-time market data for this session."""
        return await self._unsubscribe(session, self._market_channels(params))

    async def subscribe_order_updates(self, params: EmptyInput, session: ProtocolSession) -> Dict[str, Any]:
        """Receive order status changes as notifications on the 'orders' channel."""
        return await self._subscribe(session, [ORDERS_CHANNEL])

    async def unsubscribe_order_updates(self, params: EmptyInput, session: ProtocolSession) -> Dict[str, Any]:
        """Stop order status notifications for this session."""
        return await self._unsubscribe(session, [ORDERS_CHANNEL])

    async def list_subscriptions(self, params: EmptyInput, session: ProtocolSession) -> Dict[str, Any]:
        """List this session's channels, their backend state and delivery counters."""
        channels = sorted(self.registry.channels_for(session.id))
        return {
            "channels": channels,
            "states": {channel: self.registry.state(channel).value for channel in channels},
            "session": session.stats(),
        }

    # ==========================================
    # Portfolio Tools
    # ==========================================

    async def account_balance(self, params: AccountBalanceInput, session: ProtocolSession) -> Dict[str, Any]:
        """Get account cash balances, buying power and net assets."""
        balances = await self.adapter.call(Operation.ACCOUNT_BALANCE, params.model_dump())
        return {"balances": balances}

    async def stock_positions(self, params: PositionsInput, session: ProtocolSession) -> Dict[str, Any]:
        """Get stock positions."""
        positions = await self.adapter.call(Operation.STOCK_POSITIONS, params.model_dump())
        return {"positions": positions}

    async def fund_positions(self, params: FundPositionsInput, session: ProtocolSession) -> Dict[str, Any]:
        """Get fund positions."""
        positions = await self.adapter.call(Operation.FUND_POSITIONS, params.model_dump())
        return {"positions": positions}

    # ==========================================
    # Server Tools
    # ==========================================

    async def connection_status(self, params: EmptyInput, session: ProtocolSession) -> Dict[str, Any]:
        """Report backend session state and fan-out counters (no backend call)."""
        return {
            "server": SERVER_NAME,
            "version": API_VERSION,
            "backend": self.adapter.status(),
            "hub": self.hub.stats(),
            "channels": self.registry.snapshot(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


def build_dispatcher(tools: GatewayTools) -> ToolDispatcher:
    """Register the full tool catalog and freeze it."""
    dispatcher = ToolDispatcher()
    catalog = [
        # (name, schema, handler, read_only)
        ("submit_order", SubmitOrderInput, tools.submit_order, False),
        ("replace_order", ReplaceOrderInput, tools.replace_order, False),
        ("cancel_order", OrderIdInput, tools.cancel_order, False),
        ("today_orders", TodayOrdersInput, tools.today_orders, True),
        ("history_orders", HistoryOrdersInput, tools.history_orders, True),
        ("today_executions", TodayExecutionsInput, tools.today_executions, True),
        ("order_detail", OrderIdInput, tools.order_detail, True),
        ("quote", QuoteInput, tools.quote, True),
        ("candlesticks", CandlesticksInput, tools.candlesticks, True),
        ("subscribe_quote", SubscribeQuoteInput, tools.subscribe_quote, True),
        ("unsubscribe_quote", SubscribeQuoteInput, tools.unsubscribe_quote, True),
        ("subscribe_order_updates", EmptyInput, tools.subscribe_order_updates, True),
        ("unsubscribe_order_updates", EmptyInput, tools.unsubscribe_order_updates, True),
        ("list_subscriptions", EmptyInput, tools.list_subscriptions, True),
        ("account_balance", AccountBalanceInput, tools.account_balance, True),
        ("stock_positions", PositionsInput, tools.stock_positions, True),
        ("fund_positions", FundPositionsInput, tools.fund_positions, True),
        ("connection_status", EmptyInput, tools.connection_status, True),
    ]
    for name, schema, handler, read_only in catalog:
        dispatcher.register(name, schema, handler, read_only=read_only)
    dispatcher.freeze()
    return dispatcher
