"""Persistent records — order mirror, positions, executions, notes.

Order and position records are mutable and upserted in place; execution
records and notes are append-only. Each record serializes to a flat dict
for JSON-lines persistence.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from tradewatch.schemas.broker import NormalizedOrder
from tradewatch.schemas.enums import (
    ExecutionType,
    NormalizedOrderStatus,
    NoteType,
    OrderKind,
    OrderSide,
    PositionDirection,
    PositionStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dec(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _parse_dec(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class OrderRecord:
    """Local shadow of a broker order, keyed by broker order id."""

    broker_order_id: str
    owner_id: str
    broker: str
    symbol: str
    side: OrderSide
    order_kind: OrderKind
    status: NormalizedOrderStatus
    quantity: Decimal
    submitted_at: datetime
    limit_price: Decimal | None = None
    stop_price: Decimal | None = None
    filled_quantity: Decimal | None = None
    filled_avg_price: Decimal | None = None
    accepted_at: datetime | None = None
    filled_at: datetime | None = None
    canceled_at: datetime | None = None
    last_synced_at: datetime = field(default_factory=utcnow)
    raw_broker_data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))

    # Fields replaced on every upsert after creation
    MUTABLE_FIELDS = (
        "status",
        "filled_quantity",
        "filled_avg_price",
        "accepted_at",
        "filled_at",
        "canceled_at",
        "last_synced_at",
        "raw_broker_data",
    )

    @classmethod
    def from_normalized(
        cls,
        order: NormalizedOrder,
        *,
        owner_id: str,
        broker: str,
        synced_at: datetime | None = None,
    ) -> OrderRecord:
        return cls(
            broker_order_id=order.order_id,
            owner_id=owner_id,
            broker=broker,
            symbol=order.symbol,
            side=order.side,
            order_kind=order.order_type,
            status=order.status,
            quantity=order.quantity,
            submitted_at=order.submitted_at,
            limit_price=order.limit_price,
            stop_price=order.stop_price,
            filled_quantity=order.filled_quantity,
            filled_avg_price=order.filled_avg_price,
            accepted_at=order.accepted_at,
            filled_at=order.filled_at,
            canceled_at=order.canceled_at,
            last_synced_at=synced_at or utcnow(),
            raw_broker_data=dict(order.raw_broker_data),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for persistence."""
        return {
            "id": self.id,
            "broker_order_id": self.broker_order_id,
            "owner_id": self.owner_id,
            "broker": self.broker,
            "symbol": self.symbol,
            "side": self.side.value,
            "order_kind": self.order_kind.value,
            "status": self.status.value,
            "quantity": _dec(self.quantity),
            "submitted_at": _ts(self.submitted_at),
            "limit_price": _dec(self.limit_price),
            "stop_price": _dec(self.stop_price),
            "filled_quantity": _dec(self.filled_quantity),
            "filled_avg_price": _dec(self.filled_avg_price),
            "accepted_at": _ts(self.accepted_at),
            "filled_at": _ts(self.filled_at),
            "canceled_at": _ts(self.canceled_at),
            "last_synced_at": _ts(self.last_synced_at),
            "raw_broker_data": self.raw_broker_data,
        }

    @staticmethod
    def from_dict(data: dict) -> OrderRecord:
        """Deserialize from persistence."""
        return OrderRecord(
            id=data["id"],
            broker_order_id=data["broker_order_id"],
            owner_id=data["owner_id"],
            broker=data["broker"],
            symbol=data["symbol"],
            side=OrderSide(data["side"]),
            order_kind=OrderKind(data["order_kind"]),
            status=NormalizedOrderStatus(data["status"]),
            quantity=Decimal(data["quantity"]),
            submitted_at=_parse_ts(data["submitted_at"]),
            limit_price=_parse_dec(data.get("limit_price")),
            stop_price=_parse_dec(data.get("stop_price")),
            filled_quantity=_parse_dec(data.get("filled_quantity")),
            filled_avg_price=_parse_dec(data.get("filled_avg_price")),
            accepted_at=_parse_ts(data.get("accepted_at")),
            filled_at=_parse_ts(data.get("filled_at")),
            canceled_at=_parse_ts(data.get("canceled_at")),
            last_synced_at=_parse_ts(data.get("last_synced_at")) or utcnow(),
            raw_broker_data=data.get("raw_broker_data") or {},
        )


@dataclass
class PositionRecord:
    """Local view of a holding at a broker."""

    owner_id: str
    symbol: str
    direction: PositionDirection
    quantity: Decimal = Decimal("0")
    avg_entry_price: Decimal = Decimal("0")
    status: PositionStatus = PositionStatus.PENDING
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None
    unrealized_pnl: Decimal = Decimal("0")
    broker: str | None = None
    broker_order_ref: str | None = None  # order that opened the position
    last_synced_at: datetime | None = None
    last_execution_at: datetime | None = None
    opened_at: datetime = field(default_factory=utcnow)
    closed_at: datetime | None = None
    position_id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def to_dict(self) -> dict[str, Any]:
        """Serialize for persistence."""
        return {
            "position_id": self.position_id,
            "owner_id": self.owner_id,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "quantity": _dec(self.quantity),
            "avg_entry_price": _dec(self.avg_entry_price),
            "status": self.status.value,
            "stop_loss": _dec(self.stop_loss),
            "take_profit": _dec(self.take_profit),
            "unrealized_pnl": _dec(self.unrealized_pnl),
            "broker": self.broker,
            "broker_order_ref": self.broker_order_ref,
            "last_synced_at": _ts(self.last_synced_at),
            "last_execution_at": _ts(self.last_execution_at),
            "opened_at": _ts(self.opened_at),
            "closed_at": _ts(self.closed_at),
        }

    @staticmethod
    def from_dict(data: dict) -> PositionRecord:
        """Deserialize from persistence."""
        return PositionRecord(
            position_id=data["position_id"],
            owner_id=data["owner_id"],
            symbol=data["symbol"],
            direction=PositionDirection(data["direction"]),
            quantity=Decimal(data.get("quantity") or "0"),
            avg_entry_price=Decimal(data.get("avg_entry_price") or "0"),
            status=PositionStatus(data["status"]),
            stop_loss=_parse_dec(data.get("stop_loss")),
            take_profit=_parse_dec(data.get("take_profit")),
            unrealized_pnl=Decimal(data.get("unrealized_pnl") or "0"),
            broker=data.get("broker"),
            broker_order_ref=data.get("broker_order_ref"),
            last_synced_at=_parse_ts(data.get("last_synced_at")),
            last_execution_at=_parse_ts(data.get("last_execution_at")),
            opened_at=_parse_ts(data.get("opened_at")) or utcnow(),
            closed_at=_parse_ts(data.get("closed_at")),
        )


@dataclass(frozen=True)
class ExecutionRecord:
    """Append-only fact of a fill."""

    position_id: str
    type: ExecutionType
    quantity: Decimal
    price: Decimal
    broker_order_id: str
    executed_at: datetime
    execution_id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def gross_value(self) -> Decimal:
        return self.quantity * self.price

    @property
    def net_value(self) -> Decimal:
        # No fee model yet; net equals gross
        return self.gross_value

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "position_id": self.position_id,
            "type": self.type.value,
            "quantity": _dec(self.quantity),
            "price": _dec(self.price),
            "gross_value": _dec(self.gross_value),
            "net_value": _dec(self.net_value),
            "broker_order_id": self.broker_order_id,
            "executed_at": _ts(self.executed_at),
        }

    @staticmethod
    def from_dict(data: dict) -> ExecutionRecord:
        return ExecutionRecord(
            execution_id=data["execution_id"],
            position_id=data["position_id"],
            type=ExecutionType(data["type"]),
            quantity=Decimal(data["quantity"]),
            price=Decimal(data["price"]),
            broker_order_id=data["broker_order_id"],
            executed_at=_parse_ts(data["executed_at"]),
        )


@dataclass(frozen=True)
class PositionNote:
    """Free-text operational note attached to a position."""

    position_id: str
    note_type: NoteType
    content: str
    created_at: datetime = field(default_factory=utcnow)
    note_id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "note_id": self.note_id,
            "position_id": self.position_id,
            "note_type": self.note_type.value,
            "content": self.content,
            "created_at": _ts(self.created_at),
        }

    @staticmethod
    def from_dict(data: dict) -> PositionNote:
        return PositionNote(
            note_id=data["note_id"],
            position_id=data["position_id"],
            note_type=NoteType(data["note_type"]),
            content=data["content"],
            created_at=_parse_ts(data["created_at"]),
        )
