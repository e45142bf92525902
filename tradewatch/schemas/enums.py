"""Shared enumerations for Tradewatch schemas.

All enums used across the engine are defined here to ensure
consistency and avoid circular imports.
"""

from enum import Enum


class NormalizedOrderStatus(str, Enum):
    """Broker-agnostic order status."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELED = "canceled"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    NormalizedOrderStatus.FILLED,
    NormalizedOrderStatus.CANCELED,
    NormalizedOrderStatus.REJECTED,
    NormalizedOrderStatus.EXPIRED,
})


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderKind(str, Enum):
    """Order type as placed at the broker."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"


class PositionDirection(str, Enum):
    LONG = "long"
    SHORT = "short"


class PositionStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


class ExecutionType(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"


class NoteType(str, Enum):
    """Category of an operational note attached to a position."""
    SYSTEM = "system"
    USER = "user"


class BrokerKind(str, Enum):
    """Closed set of brokers the engine can build clients for."""
    ALPACA_PAPER = "alpaca_paper"
    ALPACA_LIVE = "alpaca_live"


class ExitTrigger(str, Enum):
    """Exit condition detected against the latest broker price."""
    STOP_LOSS = "Stop loss triggered"
    TAKE_PROFIT = "Take profit triggered"
