"""
Tool input models
=================
Every tool validates its arguments against one of these models before
anything is sent to the backend. The JSON schema advertised to clients is
generated from the same model.
"""

import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9.\-]*\.(US|HK|SH|SZ|SG)$")
MAX_SYMBOLS = 50

# ==========================================
# Enums
# ==========================================

class OrderTypeName(str, Enum):
    """Order types accepted by the backend."""
    LIMIT = "LO"
    ENHANCED_LIMIT = "ELO"
    MARKET = "MO"
    AT_AUCTION = "AO"
    AT_AUCTION_LIMIT = "ALO"
    ODD_LOT = "ODD"
    LIMIT_IF_TOUCHED = "LIT"
    MARKET_IF_TOUCHED = "MIT"
    TRAILING_STOP_AMOUNT = "TSLPAMT"
    TRAILING_STOP_PERCENT = "TSLPPCT"
    SPECIAL_LIMIT = "SLO"


LIMIT_PRICE_ORDER_TYPES = {"LO", "ELO", "ALO", "ODD", "LIT", "SLO"}
TRIGGER_PRICE_ORDER_TYPES = {"LIT", "MIT"}


class OrderSideName(str, Enum):
    BUY = "Buy"
    SELL = "Sell"


class TimeInForce(str, Enum):
    DAY = "Day"
    GOOD_TIL_CANCELED = "GoodTilCanceled"
    GOOD_TIL_DATE = "GoodTilDate"


class MarketName(str, Enum):
    US = "US"
    HK = "HK"
    CN = "CN"
    SG = "SG"


class PeriodName(str, Enum):
    MIN_1 = "Min_1"
    MIN_5 = "Min_5"
    MIN_15 = "Min_15"
    MIN_30 = "Min_30"
    MIN_60 = "Min_60"
    DAY = "Day"
    WEEK = "Week"
    MONTH = "Month"
    YEAR = "Year"


class AdjustTypeName(str, Enum):
    NO_ADJUST = "NoAdjust"
    FORWARD_ADJUST = "ForwardAdjust"


class SubscriptionKind(str, Enum):
    """Market data stream kinds; each maps to a channel prefix."""
    QUOTE = "quote"
    DEPTH = "depth"
    TRADES = "trades"
    BROKERS = "brokers"


SUB_TYPE_ALIASES = {
    "quote": "quote",
    "depth": "depth",
    "trade": "trades",
    "trades": "trades",
    "broker": "brokers",
    "brokers": "brokers",
}

# ==========================================
# Helpers
# ==========================================

def normalize_symbol(value: str) -> str:
    symbol = value.strip().upper()
    if not SYMBOL_PATTERN.match(symbol):
        raise ValueError(
            f"Invalid symbol '{value}'. Use TICKER.MARKET, e.g. 'AAPL.US' or '700.HK'"
        )
    return symbol


class ToolInput(BaseModel):
    """Base for tool inputs: strict about unknown fields."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        use_enum_values=True,
        validate_default=True,
        extra="forbid",
    )


class EmptyInput(ToolInput):
    """Tools without arguments."""


class SymbolsInput(ToolInput):
    symbols: List[str] = Field(
        ...,
        description="Security symbols, e.g. ['AAPL.US', '700.HK']",
        min_length=1,
        max_length=MAX_SYMBOLS
    )

    @field_validator("symbols")
    @classmethod
    def validate_symbols(cls, v: List[str]) -> List[str]:
        symbols = [normalize_symbol(s) for s in v]
        # Keep caller order, drop duplicates
        return list(dict.fromkeys(symbols))

# ==========================================
# Trading
# ==========================================

class SubmitOrderInput(ToolInput):
    """Input for submitting an order."""
    symbol: str = Field(..., description="Security symbol, e.g. 'AAPL.US'")
    order_type: OrderTypeName = Field(..., description="Order type (LO=limit, MO=market, ...)")
    side: OrderSideName = Field(..., description="Buy or Sell")
    quantity: Decimal = Field(..., description="Order quantity", gt=0)
    time_in_force: TimeInForce = Field(
        default=TimeInForce.DAY,
        description="Day, GoodTilCanceled or GoodTilDate"
    )
    submitted_price: Optional[Decimal] = Field(
        default=None, description="Limit price (required for limit-type orders)", gt=0
    )
    trigger_price: Optional[Decimal] = Field(
        default=None, description="Trigger price for LIT/MIT orders", gt=0
    )
    limit_offset: Optional[Decimal] = Field(
        default=None, description="Limit offset for trailing orders", ge=0
    )
    trailing_amount: Optional[Decimal] = Field(
        default=None, description="Trailing amount for TSLPAMT orders", gt=0
    )
    trailing_percent: Optional[Decimal] = Field(
        default=None, description="Trailing percent for TSLPPCT orders", gt=0, le=100
    )
    expire_date: Optional[date] = Field(
        default=None, description="Expiry date (YYYY-MM-DD) for GoodTilDate orders"
    )
    outside_rth: Optional[bool] = Field(
        default=None, description="Allow execution outside regular trading hours (US)"
    )
    remark: Optional[str] = Field(default=None, description="Order remark", max_length=64)

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return normalize_symbol(v)

    @model_validator(mode="after")
    def validate_prices(self) -> "SubmitOrderInput":
        if self.order_type in LIMIT_PRICE_ORDER_TYPES and self.submitted_price is None:
            raise ValueError(f"submitted_price is required for {self.order_type} orders")
        if self.order_type in TRIGGER_PRICE_ORDER_TYPES and self.trigger_price is None:
            raise ValueError(f"trigger_price is required for {self.order_type} orders")
        if self.order_type == "TSLPAMT" and self.trailing_amount is None:
            raise ValueError("trailing_amount is required for TSLPAMT orders")
        if self.order_type == "TSLPPCT" and self.trailing_percent is None:
            raise ValueError("trailing_percent is required for TSLPPCT orders")
        if self.time_in_force == "GoodTilDate" and self.expire_date is None:
            raise ValueError("expire_date is required for GoodTilDate orders")
        return self


class ReplaceOrderInput(ToolInput):
    """Input for amending an open order."""
    order_id: str = Field(..., description="Order ID to amend", min_length=1)
    quantity: Decimal = Field(..., description="New quantity", gt=0)
    price: Optional[Decimal] = Field(default=None, description="New limit price", gt=0)
    trigger_price: Optional[Decimal] = Field(default=None, description="New trigger price", gt=0)
    remark: Optional[str] = Field(default=None, max_length=64)


class OrderIdInput(ToolInput):
    order_id: str = Field(..., description="Order ID", min_length=1)


class TodayOrdersInput(ToolInput):
    symbol: Optional[str] = Field(default=None, description="Filter by symbol")
    side: Optional[OrderSideName] = Field(default=None, description="Filter by side")
    market: Optional[MarketName] = Field(default=None, description="Filter by market")
    order_id: Optional[str] = Field(default=None, description="Filter by order ID")

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: Optional[str]) -> Optional[str]:
        return normalize_symbol(v) if v else None


class HistoryOrdersInput(ToolInput):
    symbol: Optional[str] = Field(default=None, description="Filter by symbol")
    side: Optional[OrderSideName] = Field(default=None, description="Filter by side")
    market: Optional[MarketName] = Field(default=None, description="Filter by market")
    start_at: Optional[datetime] = Field(default=None, description="Start time (ISO 8601)")
    end_at: Optional[datetime] = Field(default=None, description="End time (ISO 8601)")

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: Optional[str]) -> Optional[str]:
        return normalize_symbol(v) if v else None

    @model_validator(mode="after")
    def validate_range(self) -> "HistoryOrdersInput":
        if self.start_at and self.end_at and self.start_at > self.end_at:
            raise ValueError("start_at must not be after end_at")
        return self


class TodayExecutionsInput(ToolInput):
    symbol: Optional[str] = Field(default=None, description="Filter by symbol")
    order_id: Optional[str] = Field(default=None, description="Filter by order ID")

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: Optional[str]) -> Optional[str]:
        return normalize_symbol(v) if v else None

# ==========================================
# Quote
# ==========================================

class QuoteInput(SymbolsInput):
    """Input for a quote snapshot."""


class CandlesticksInput(ToolInput):
    """Input for historical candlesticks."""
    symbol: str = Field(..., description="Security symbol")
    period: PeriodName = Field(default=PeriodName.DAY, description="Candle period")
    count: int = Field(default=100, description="Number of candles", ge=1, le=1000)
    adjust_type: AdjustTypeName = Field(
        default=AdjustTypeName.NO_ADJUST, description="Price adjustment"
    )

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return normalize_symbol(v)


class SubscribeQuoteInput(SymbolsInput):
    """Input for (un)subscribing to real-time market data."""
    sub_types: List[SubscriptionKind] = Field(
        default=[SubscriptionKind.QUOTE],
        description="Streams to (un)subscribe: quote, depth, trades, brokers",
        min_length=1
    )

    @field_validator("sub_types", mode="before")
    @classmethod
    def normalize_sub_types(cls, v):
        # Accept the SDK spelling too: Quote, Depth, Trade, Brokers
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, list):
            return v
        return [SUB_TYPE_ALIASES.get(s.strip().lower(), s) if isinstance(s, str) else s for s in v]

# ==========================================
# Portfolio
# ==========================================

class AccountBalanceInput(ToolInput):
    currency: Optional[str] = Field(
        default=None, description="Currency filter, e.g. 'HKD', 'USD'",
        min_length=3, max_length=3
    )

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else None


class PositionsInput(ToolInput):
    symbols: Optional[List[str]] = Field(
        default=None, description="Only these symbols", max_length=MAX_SYMBOLS
    )

    @field_validator("symbols")
    @classmethod
    def validate_symbols(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if not v:
            return None
        return [normalize_symbol(s) for s in v]


class FundPositionsInput(ToolInput):
    symbols: Optional[List[str]] = Field(
        default=None, description="Only these fund codes (ISIN)", max_length=MAX_SYMBOLS
    )
