"""Tradewatch schemas — enums, normalized broker snapshots, and records."""

from tradewatch.schemas.broker import NormalizedOrder, NormalizedPosition
from tradewatch.schemas.enums import (
    TERMINAL_STATUSES,
    BrokerKind,
    ExecutionType,
    ExitTrigger,
    NormalizedOrderStatus,
    NoteType,
    OrderKind,
    OrderSide,
    PositionDirection,
    PositionStatus,
)
from tradewatch.schemas.records import (
    ExecutionRecord,
    OrderRecord,
    PositionNote,
    PositionRecord,
)

__all__ = [
    "TERMINAL_STATUSES",
    "BrokerKind",
    "ExecutionRecord",
    "ExecutionType",
    "ExitTrigger",
    "NormalizedOrder",
    "NormalizedOrderStatus",
    "NormalizedPosition",
    "NoteType",
    "OrderKind",
    "OrderRecord",
    "OrderSide",
    "PositionDirection",
    "PositionNote",
    "PositionRecord",
    "PositionStatus",
]
