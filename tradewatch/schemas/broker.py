"""Normalized broker snapshots.

Broker-agnostic shapes produced by every BrokerAdapter. The engine never
sees a broker's wire format; adapters map their responses into these.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tradewatch.schemas.enums import (
    NormalizedOrderStatus,
    OrderKind,
    OrderSide,
    PositionDirection,
)


class NormalizedOrder(BaseModel):
    """Point-in-time view of a broker order."""

    model_config = ConfigDict(frozen=True)

    order_id: str = Field(..., min_length=1, description="Broker-assigned order id")
    symbol: str = Field(..., min_length=1)
    side: OrderSide
    quantity: Decimal = Field(..., ge=0)
    order_type: OrderKind
    status: NormalizedOrderStatus
    time_in_force: str = Field(default="day")
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    filled_quantity: Optional[Decimal] = None
    filled_avg_price: Optional[Decimal] = None
    submitted_at: datetime
    accepted_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    reject_reason: Optional[str] = None
    raw_broker_data: dict[str, Any] = Field(
        default_factory=dict,
        description="Original broker payload, kept for audit",
    )

    @field_validator("submitted_at")
    @classmethod
    def must_have_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("Timestamp must include timezone information")
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class NormalizedPosition(BaseModel):
    """Point-in-time view of a broker position for one symbol."""

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., min_length=1)
    quantity: Decimal
    current_price: Decimal
    avg_entry_price: Optional[Decimal] = None
    unrealized_pnl: Optional[Decimal] = None
    market_value: Optional[Decimal] = None
    side: PositionDirection = PositionDirection.LONG
