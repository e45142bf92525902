"""Fake broker, virtual clock, and record builders shared by the unit tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tradewatch.schemas.broker import NormalizedOrder, NormalizedPosition
from tradewatch.schemas.enums import (
    BrokerKind,
    NormalizedOrderStatus,
    OrderKind,
    OrderSide,
    PositionDirection,
    PositionStatus,
)
from tradewatch.schemas.records import PositionRecord


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------
SAMPLE_TIMESTAMP = datetime(2026, 2, 9, 14, 30, 0, tzinfo=timezone.utc)
OWNER_ID = "user-1"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------
def make_order(
    status: NormalizedOrderStatus,
    *,
    order_id: str = "order-1",
    symbol: str = "AAPL",
    side: OrderSide = OrderSide.BUY,
    order_type: OrderKind = OrderKind.MARKET,
    quantity: str = "10",
    filled_quantity: str | None = None,
    filled_avg_price: str | None = None,
) -> NormalizedOrder:
    filled = status == NormalizedOrderStatus.FILLED
    return NormalizedOrder(
        order_id=order_id,
        symbol=symbol,
        side=side,
        quantity=Decimal(quantity),
        order_type=order_type,
        status=status,
        filled_quantity=Decimal(filled_quantity) if filled_quantity else None,
        filled_avg_price=Decimal(filled_avg_price) if filled_avg_price else None,
        submitted_at=SAMPLE_TIMESTAMP,
        filled_at=SAMPLE_TIMESTAMP + timedelta(seconds=1) if filled else None,
        raw_broker_data={"id": order_id, "status": status.value},
    )


def make_snapshot(
    symbol: str = "AAPL",
    price: str = "100",
    quantity: str = "10",
    side: PositionDirection = PositionDirection.LONG,
) -> NormalizedPosition:
    return NormalizedPosition(
        symbol=symbol,
        quantity=Decimal(quantity),
        current_price=Decimal(price),
        side=side,
    )


def make_position(
    *,
    symbol: str = "AAPL",
    direction: PositionDirection = PositionDirection.LONG,
    quantity: str = "10",
    avg_entry_price: str = "100",
    stop_loss: str | None = None,
    take_profit: str | None = None,
    last_synced_at: datetime | None = None,
    broker: str | None = BrokerKind.ALPACA_PAPER.value,
    owner_id: str = OWNER_ID,
    status: PositionStatus = PositionStatus.OPEN,
) -> PositionRecord:
    return PositionRecord(
        owner_id=owner_id,
        symbol=symbol,
        direction=direction,
        quantity=Decimal(quantity),
        avg_entry_price=Decimal(avg_entry_price),
        status=status,
        stop_loss=Decimal(stop_loss) if stop_loss else None,
        take_profit=Decimal(take_profit) if take_profit else None,
        broker=broker,
        last_synced_at=last_synced_at,
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class VirtualClock:
    """Virtual time: sleep() advances `now` instantly and yields to the loop."""

    def __init__(self, start: datetime = SAMPLE_TIMESTAMP) -> None:
        self.start = start
        self.elapsed = 0.0
        self.delays: list[float] = []

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)
        self.elapsed += delay
        await asyncio.sleep(0)


async def blocking_sleep(delay: float) -> None:
    """A sleep that never returns unless cancelled."""
    await asyncio.Event().wait()


async def settle(rounds: int = 20) -> None:
    """Let scheduled tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeBroker:
    """In-memory BrokerAdapter.

    Order responses are consumed in sequence; the last one repeats. An
    Exception in the sequence is raised instead of returned.
    """

    def __init__(
        self,
        order_responses: list | None = None,
        positions: dict[str, NormalizedPosition | None] | None = None,
        *,
        kind: BrokerKind = BrokerKind.ALPACA_PAPER,
        clock: VirtualClock | None = None,
    ) -> None:
        self._kind = kind
        self._order_responses = list(order_responses or [])
        self.positions = dict(positions or {})
        self.clock = clock
        self.poll_times: list[float] = []
        self.position_calls: list[str] = []
        self.connect_calls = 0
        self.close_calls = 0
        self.order_gate: asyncio.Event | None = None
        self.position_gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def kind(self) -> BrokerKind:
        return self._kind

    async def connect(self) -> bool:
        self.connect_calls += 1
        return True

    async def get_order_tracked(self, order_id: str) -> NormalizedOrder:
        self.poll_times.append(self.clock.elapsed if self.clock else 0.0)
        if self.order_gate is not None:
            await self.order_gate.wait()
        if len(self._order_responses) > 1:
            response = self._order_responses.pop(0)
        else:
            response = self._order_responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    async def get_position_normalized(self, symbol: str) -> NormalizedPosition | None:
        self.position_calls.append(symbol)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.position_gate is not None:
                await self.position_gate.wait()
            else:
                await asyncio.sleep(0)
            response = self.positions.get(symbol)
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.close_calls += 1

    @property
    def poll_count(self) -> int:
        return len(self.poll_times)
