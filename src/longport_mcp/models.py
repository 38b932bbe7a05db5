"""Core data types shared by the gateway components."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple
import uuid

# ==========================================
# Backend Operations
# ==========================================

class Operation(str, Enum):
    """Synchronous backend operations reachable through BackendAdapter.call()."""
    # Trading
    SUBMIT_ORDER = "submit_order"
    REPLACE_ORDER = "replace_order"
    CANCEL_ORDER = "cancel_order"
    TODAY_ORDERS = "today_orders"
    HISTORY_ORDERS = "history_orders"
    TODAY_EXECUTIONS = "today_executions"
    ORDER_DETAIL = "order_detail"
    # Quote
    QUOTE = "quote"
    CANDLESTICKS = "candlesticks"
    # Portfolio
    ACCOUNT_BALANCE = "account_balance"
    STOCK_POSITIONS = "stock_positions"
    FUND_POSITIONS = "fund_positions"

    @property
    def read_only(self) -> bool:
        return self not in WRITE_OPERATIONS


WRITE_OPERATIONS = frozenset({
    Operation.SUBMIT_ORDER,
    Operation.REPLACE_ORDER,
    Operation.CANCEL_ORDER,
})


class BackendState(str, Enum):
    """Lifecycle of the single backend session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    DEGRADED = "degraded"
    CLOSED = "closed"

# ==========================================
# Channels
# ==========================================

ORDERS_CHANNEL = "orders"

# channel prefix -> longport SubType attribute name
MARKET_CHANNEL_KINDS = {
    "quote": "Quote",
    "depth": "Depth",
    "trades": "Trade",
    "brokers": "Brokers",
}


def market_channel(kind: str, symbol: str) -> str:
    """Channel name for a market data stream, e.g. quote:AAPL.US."""
    if kind not in MARKET_CHANNEL_KINDS:
        raise ValueError(f"Unknown market channel kind: {kind}")
    return f"{kind}:{symbol.strip().upper()}"


def parse_channel(channel: str) -> Tuple[str, Optional[str]]:
    """Split a channel into (kind, symbol). The orders channel has no symbol."""
    if channel == ORDERS_CHANNEL:
        return ORDERS_CHANNEL, None
    kind, sep, symbol = channel.partition(":")
    if not sep or kind not in MARKET_CHANNEL_KINDS or not symbol:
        raise ValueError(f"Invalid channel: {channel}")
    return kind, symbol

# ==========================================
# Transient Messages
# ==========================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PushEvent:
    """A backend push for one channel."""
    channel: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=_utcnow)

    def to_notification(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


@dataclass
class ToolInvocation:
    """One inbound tool call."""
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
