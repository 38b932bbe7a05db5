"""
LongPort OpenAPI backend
========================
Implements the Backend capability interface on top of the official
`longport` SDK. The SDK is blocking and pushes from its own threads, so
calls run in worker threads and pushes are handed to the event loop with
call_soon_threadsafe, which preserves the order the SDK emitted them in.
"""

import asyncio
import logging
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Optional

from longport.openapi import (
    AdjustType,
    Config,
    Market,
    OpenApiException,
    OrderSide,
    OrderType,
    OutsideRTH,
    Period,
    QuoteContext,
    SubType,
    TimeInForceType,
    TopicType,
    TradeContext,
)

from .backend import DisconnectHandler, PushHandler
from .config import REQUEST_TIMEOUT, CredentialContext
from .errors import (
    AuthError,
    BackendError,
    BackendRejectedError,
    GatewayError,
    TransientBackendError,
)
from .models import (
    MARKET_CHANNEL_KINDS,
    ORDERS_CHANNEL,
    Operation,
    PushEvent,
    market_channel,
    parse_channel,
)

logger = logging.getLogger("longport-mcp.backend")

# Error messages the SDK raises without a code once its socket is gone
DISCONNECT_MARKERS = ("disconnect", "connection closed", "not connected", "broken pipe")

MAX_JSON_DEPTH = 8

# ==========================================
# Conversions
# ==========================================

def to_jsonable(value: Any, _depth: int = 0) -> Any:
    """
    Convert SDK objects into plain JSON-able data.

    SDK classes expose their fields as read-only attributes; SDK enums are
    rendered by member name (e.g. OrderSide.Buy -> "Buy").
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.name
    if _depth >= MAX_JSON_DEPTH:
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v, _depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v, _depth + 1) for v in value]

    fields = {}
    for name in dir(value):
        if name.startswith("_"):
            continue
        try:
            attr = getattr(value, name)
        except Exception:
            continue
        # Enum members show up as class attributes of their own type
        if callable(attr) or isinstance(attr, type(value)):
            continue
        fields[name] = attr

    if not fields:
        return str(value).rsplit(".", 1)[-1]
    return {name: to_jsonable(attr, _depth + 1) for name, attr in fields.items()}


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _enum(enum_type: Any, name: Optional[str]) -> Any:
    if name is None:
        return None
    return getattr(enum_type, name)


def _drop_none(kwargs: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v is not None}


def translate_error(exc: Exception) -> Exception:
    """Map an SDK exception onto the gateway error taxonomy."""
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, OpenApiException):
        code = getattr(exc, "code", None)
        message = getattr(exc, "message", None) or str(exc)
        if code is None:
            return TransientBackendError(message)
        if int(code) // 1000 == 401:
            return AuthError(f"Backend rejected credentials (code {code})")
        return BackendRejectedError(message, code=int(code))
    if isinstance(exc, (OSError, asyncio.TimeoutError, TimeoutError)):
        return TransientBackendError(str(exc) or type(exc).__name__)
    return exc

# ==========================================
# Backend Implementation
# ==========================================

class LongportBackend:
    """Backend capability backed by longport.openapi Quote/Trade contexts."""

    def __init__(self, timeout: float = REQUEST_TIMEOUT,
                 config_factory: Optional[Callable[[CredentialContext], Any]] = None):
        self.timeout = timeout
        self._config_factory = config_factory or self._make_config
        self._quote_ctx: Optional[QuoteContext] = None
        self._trade_ctx: Optional[TradeContext] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._push_handler: Optional[PushHandler] = None
        self._disconnect_handler: Optional[DisconnectHandler] = None

    def set_push_handler(self, handler: PushHandler) -> None:
        self._push_handler = handler

    def set_disconnect_handler(self, handler: DisconnectHandler) -> None:
        self._disconnect_handler = handler

    @staticmethod
    def _make_config(credentials: CredentialContext) -> Config:
        overrides = _drop_none({
            "http_url": credentials.http_url,
            "quote_ws_url": credentials.quote_ws_url,
            "trade_ws_url": credentials.trade_ws_url,
        })
        from_apikey = getattr(Config, "from_apikey", None)
        if from_apikey is not None:
            return from_apikey(credentials.app_key, credentials.app_secret,
                               credentials.access_token, **overrides)
        return Config(app_key=credentials.app_key,
                      app_secret=credentials.app_secret,
                      access_token=credentials.access_token,
                      **overrides)

    async def connect(self, credentials: CredentialContext) -> None:
        """Create the quote and trade contexts (both authenticate on construction)."""
        self._loop = asyncio.get_running_loop()
        try:
            quote_ctx, trade_ctx = await asyncio.wait_for(
                asyncio.to_thread(self._open, credentials),
                timeout=self.timeout
            )
        except Exception as e:
            raise translate_error(e) from e

        self._quote_ctx = quote_ctx
        self._trade_ctx = trade_ctx
        logger.info("LongPort quote and trade contexts ready")

    def _open(self, credentials: CredentialContext):
        config = self._config_factory(credentials)
        quote_ctx = QuoteContext(config)
        trade_ctx = TradeContext(config)

        quote_ctx.set_on_quote(lambda symbol, event: self._on_market_push("quote", symbol, event))
        quote_ctx.set_on_depth(lambda symbol, event: self._on_market_push("depth", symbol, event))
        quote_ctx.set_on_trades(lambda symbol, event: self._on_market_push("trades", symbol, event))
        quote_ctx.set_on_brokers(lambda symbol, event: self._on_market_push("brokers", symbol, event))
        trade_ctx.set_on_order_changed(self._on_order_changed)
        return quote_ctx, trade_ctx

    async def close(self) -> None:
        self._quote_ctx = None
        self._trade_ctx = None

    # ==========================================
    # SDK Push Callbacks (SDK threads)
    # ==========================================

    def _on_market_push(self, kind: str, symbol: str, event: Any):
        self._emit(PushEvent(market_channel(kind, symbol), to_jsonable(event)))

    def _on_order_changed(self, event: Any):
        self._emit(PushEvent(ORDERS_CHANNEL, to_jsonable(event)))

    def _emit(self, event: PushEvent):
        loop = self._loop
        if loop is None or loop.is_closed() or self._push_handler is None:
            return
        loop.call_soon_threadsafe(self._push_handler, event)

    # ==========================================
    # Calls
    # ==========================================

    async def _run(self, context: str, method: str, *args, **kwargs) -> Any:
        """Run a blocking SDK method of the "quote" or "trade" context in a thread."""
        ctx = self._quote_ctx if context == "quote" else self._trade_ctx
        if ctx is None:
            raise TransientBackendError("Backend not connected")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(getattr(ctx, method), *args, **kwargs),
                timeout=self.timeout
            )
        except Exception as e:
            error = translate_error(e)
            if isinstance(error, TransientBackendError):
                self._check_disconnect(error, e)
            if error is e:
                raise
            raise error from e

    def _check_disconnect(self, error: BackendError, cause: Exception):
        """
        Report a lost connection to the adapter.

        The SDK reconnects internally and gives no connection-state callback,
        so loss is inferred: socket-level exceptions, or a codeless SDK error
        whose message matches DISCONNECT_MARKERS. Timeouts alone do not count
        since a slow endpoint still holds its session. A disconnect the SDK
        reports under other wording goes unnoticed until a later call matches.
        """
        if isinstance(cause, ConnectionError):
            lost = True
        else:
            message = str(error).lower()
            lost = any(marker in message for marker in DISCONNECT_MARKERS)
        if lost:
            logger.warning(f"Backend connection lost: {error}")
            if self._disconnect_handler is not None:
                self._disconnect_handler(error)

    async def call(self, operation: Operation, params: Dict[str, Any]) -> Any:
        handler = getattr(self, f"_op_{operation.value}", None)
        if handler is None:
            raise BackendRejectedError(f"Unsupported operation: {operation.value}")
        return await handler(params)

    async def subscribe(self, channel: str) -> Hashable:
        kind, symbol = parse_channel(channel)
        if kind == ORDERS_CHANNEL:
            await self._run("trade", "subscribe", [TopicType.Private])
        else:
            sub_type = getattr(SubType, MARKET_CHANNEL_KINDS[kind])
            await self._run("quote", "subscribe", [symbol], [sub_type])
        logger.info(f"Backend subscribed {channel}")
        return channel

    async def unsubscribe(self, handle: Hashable) -> None:
        kind, symbol = parse_channel(str(handle))
        if kind == ORDERS_CHANNEL:
            await self._run("trade", "unsubscribe", [TopicType.Private])
        else:
            sub_type = getattr(SubType, MARKET_CHANNEL_KINDS[kind])
            await self._run("quote", "unsubscribe", [symbol], [sub_type])
        logger.info(f"Backend unsubscribed {handle}")

    # ==========================================
    # Trading
    # ==========================================

    async def _op_submit_order(self, params: Dict[str, Any]) -> Dict[str, Any]:
        outside_rth = params.get("outside_rth")
        kwargs = _drop_none({
            "submitted_price": _decimal(params.get("submitted_price")),
            "trigger_price": _decimal(params.get("trigger_price")),
            "limit_offset": _decimal(params.get("limit_offset")),
            "trailing_amount": _decimal(params.get("trailing_amount")),
            "trailing_percent": _decimal(params.get("trailing_percent")),
            "expire_date": params.get("expire_date"),
            "outside_rth": None if outside_rth is None else (
                OutsideRTH.AnyTime if outside_rth else OutsideRTH.RTHOnly),
            "remark": params.get("remark"),
        })
        response = await self._run(
            "trade", "submit_order",
            symbol=params["symbol"],
            order_type=_enum(OrderType, params["order_type"]),
            side=_enum(OrderSide, params["side"]),
            submitted_quantity=_decimal(params["quantity"]),
            time_in_force=_enum(TimeInForceType, params["time_in_force"]),
            **kwargs
        )
        return {"order_id": str(response.order_id)}

    async def _op_replace_order(self, params: Dict[str, Any]) -> Dict[str, Any]:
        kwargs = _drop_none({
            "price": _decimal(params.get("price")),
            "trigger_price": _decimal(params.get("trigger_price")),
            "remark": params.get("remark"),
        })
        await self._run(
            "trade", "replace_order",
            order_id=params["order_id"],
            quantity=_decimal(params["quantity"]),
            **kwargs
        )
        return {"order_id": params["order_id"]}

    async def _op_cancel_order(self, params: Dict[str, Any]) -> Dict[str, Any]:
        await self._run("trade", "cancel_order", params["order_id"])
        return {"order_id": params["order_id"]}

    async def _op_today_orders(self, params: Dict[str, Any]) -> Any:
        orders = await self._run("trade", "today_orders", **_drop_none({
            "symbol": params.get("symbol"),
            "side": _enum(OrderSide, params.get("side")),
            "market": _enum(Market, params.get("market")),
            "order_id": params.get("order_id"),
        }))
        return to_jsonable(orders)

    async def _op_history_orders(self, params: Dict[str, Any]) -> Any:
        orders = await self._run("trade", "history_orders", **_drop_none({
            "symbol": params.get("symbol"),
            "side": _enum(OrderSide, params.get("side")),
            "market": _enum(Market, params.get("market")),
            "start_at": params.get("start_at"),
            "end_at": params.get("end_at"),
        }))
        return to_jsonable(orders)

    async def _op_today_executions(self, params: Dict[str, Any]) -> Any:
        executions = await self._run("trade", "today_executions", **_drop_none({
            "symbol": params.get("symbol"),
            "order_id": params.get("order_id"),
        }))
        return to_jsonable(executions)

    async def _op_order_detail(self, params: Dict[str, Any]) -> Any:
        detail = await self._run("trade", "order_detail", params["order_id"])
        return to_jsonable(detail)

    # ==========================================
    # Quote
    # ==========================================

    async def _op_quote(self, params: Dict[str, Any]) -> Any:
        quotes = await self._run("quote", "quote", list(params["symbols"]))
        return to_jsonable(quotes)

    async def _op_candlesticks(self, params: Dict[str, Any]) -> Any:
        candles = await self._run(
            "quote", "candlesticks",
            params["symbol"],
            _enum(Period, params["period"]),
            params["count"],
            _enum(AdjustType, params["adjust_type"]),
        )
        return to_jsonable(candles)

    # ==========================================
    # Portfolio
    # ==========================================

    async def _op_account_balance(self, params: Dict[str, Any]) -> Any:
        balances = await self._run("trade", "account_balance",
                                   **_drop_none({"currency": params.get("currency")}))
        return to_jsonable(balances)

    async def _op_stock_positions(self, params: Dict[str, Any]) -> Any:
        positions = await self._run("trade", "stock_positions",
                                    **_drop_none({"symbols": params.get("symbols")}))
        return to_jsonable(positions)

    async def _op_fund_positions(self, params: Dict[str, Any]) -> Any:
        positions = await self._run("trade", "fund_positions",
                                    **_drop_none({"symbols": params.get("symbols")}))
        return to_jsonable(positions)
