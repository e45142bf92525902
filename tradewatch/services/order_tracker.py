"""Order tracker — adaptive polling of freshly placed orders.

Drives a single order from "just placed" to a terminal status, polling
the broker at a cadence matched to how quickly the order is expected to
fill:

    MARKET                  poll every market_poll_interval until terminal
                            or max_poll_attempts polls
    LIMIT/STOP/STOP_LIMIT   poll now, at each confirmation offset from
                            tracking start (2s, 5s), then every
                            limit_monitor_interval while the order is open

Every successful poll upserts the order mirror. A FILLED order is handed
off to position creation/update and an execution record is appended.
Broker errors never end a chain; the next poll is scheduled at the
cadence that would have applied on success.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Iterator

import structlog

from tradewatch.config.settings import OrderTrackerConfig
from tradewatch.infra.broker import BrokerAdapter
from tradewatch.schemas.broker import NormalizedOrder
from tradewatch.schemas.enums import (
    ExecutionType,
    NormalizedOrderStatus,
    OrderKind,
    OrderSide,
    PositionDirection,
    PositionStatus,
)
from tradewatch.schemas.records import (
    ExecutionRecord,
    OrderRecord,
    PositionRecord,
    utcnow,
)
from tradewatch.storage.tracking_store import PersistenceStore

logger = structlog.get_logger()


@dataclass(eq=False)
class _TrackingChain:
    """Poll state for one tracked order."""
    order_id: str
    owner_id: str
    order_kind: OrderKind
    broker: BrokerAdapter
    poll_count: int = 0
    cancelled: bool = False
    waiting: bool = False  # True only while sleeping between polls
    task: asyncio.Task | None = field(default=None, repr=False)


class OrderTracker:
    """Tracks orders with adaptive polling.

    At most one chain runs per order id; track_order() on an order that
    is already tracked cancels the old chain first. Stopping a chain
    cancels its pending wait immediately; a poll already in flight
    completes but its result is discarded.
    """

    def __init__(
        self,
        store: PersistenceStore,
        config: OrderTrackerConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the tracker.

        Args:
            store: Persistence store for order mirrors, positions, executions.
            config: Polling cadence; defaults to OrderTrackerConfig().
            sleep: Awaitable delay used between polls (injectable for tests).
        """
        self._store = store
        self._config = config or OrderTrackerConfig()
        self._sleep = sleep
        self._active: dict[str, _TrackingChain] = {}

    @property
    def config(self) -> OrderTrackerConfig:
        return self._config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def track_order(
        self,
        broker: BrokerAdapter,
        order_id: str,
        owner_id: str,
        order_kind: OrderKind | str,
    ) -> asyncio.Task:
        """Start tracking an order. Must be called inside a running event loop.

        Returns:
            The task driving the chain; it completes when tracking ends.
        """
        kind = OrderKind(order_kind)
        logger.info(
            "Starting order tracking",
            order_id=order_id,
            owner_id=owner_id,
            order_kind=kind.value,
            broker=broker.kind.value,
        )

        self.stop_tracking(order_id)

        chain = _TrackingChain(
            order_id=order_id,
            owner_id=owner_id,
            order_kind=kind,
            broker=broker,
        )
        self._active[order_id] = chain
        chain.task = asyncio.get_running_loop().create_task(
            self._run_chain(chain), name=f"track-order-{order_id}"
        )
        return chain.task

    def stop_tracking(self, order_id: str) -> None:
        """Stop tracking an order. Safe to call when nothing is tracked."""
        chain = self._active.pop(order_id, None)
        if chain is None:
            return
        chain.cancelled = True
        if chain.waiting and chain.task is not None and not chain.task.done():
            chain.task.cancel()
        logger.debug("Order tracking stopped", order_id=order_id, poll_count=chain.poll_count)

    def stop_all(self) -> None:
        """Stop every active tracking chain."""
        for order_id in list(self._active):
            self.stop_tracking(order_id)

    def get_active_tracking_count(self) -> int:
        return len(self._active)

    def get_poll_count(self, order_id: str) -> int:
        """Polls issued so far for an actively tracked order (0 if untracked)."""
        chain = self._active.get(order_id)
        return chain.poll_count if chain else 0

    def is_tracking(self, order_id: str) -> bool:
        return order_id in self._active

    # ------------------------------------------------------------------
    # Chain
    # ------------------------------------------------------------------

    def _poll_delays(self, kind: OrderKind) -> Iterator[float]:
        """Seconds to wait after each poll, in order."""
        if kind == OrderKind.MARKET:
            while True:
                yield self._config.market_poll_interval

        previous = 0.0
        for offset in self._config.limit_confirm_offsets:
            yield max(offset - previous, 0.0)
            previous = offset
        while True:
            yield self._config.limit_monitor_interval

    async def _run_chain(self, chain: _TrackingChain) -> None:
        delays = self._poll_delays(chain.order_kind)
        try:
            while not chain.cancelled:
                if not await self._poll_once(chain):
                    return
                chain.waiting = True
                try:
                    await self._sleep(next(delays))
                finally:
                    chain.waiting = False
        except asyncio.CancelledError:
            if not chain.cancelled:
                raise
            logger.debug("Pending order poll cancelled", order_id=chain.order_id)
        finally:
            self._finish(chain)

    async def _poll_once(self, chain: _TrackingChain) -> bool:
        """Run one poll. Returns True if the chain should keep polling."""
        chain.poll_count += 1
        poll_count = chain.poll_count

        try:
            order = await chain.broker.get_order_tracked(chain.order_id)
            if chain.cancelled:
                logger.debug(
                    "Discarding poll result for stopped order",
                    order_id=chain.order_id,
                    poll_count=poll_count,
                )
                return False
            self._store.upsert_order(
                OrderRecord.from_normalized(
                    order,
                    owner_id=chain.owner_id,
                    broker=chain.broker.kind.value,
                )
            )
        except Exception as e:
            if chain.cancelled:
                return False
            logger.error(
                "Error polling order",
                order_id=chain.order_id,
                order_kind=chain.order_kind.value,
                poll_count=poll_count,
                error=str(e),
            )
            return not self._ceiling_reached(chain)

        logger.info(
            "Order polled",
            order_id=chain.order_id,
            order_kind=chain.order_kind.value,
            poll_count=poll_count,
            status=order.status.value,
        )

        if order.is_terminal:
            logger.info(
                "Order reached terminal status, stopping tracking",
                order_id=chain.order_id,
                status=order.status.value,
                poll_count=poll_count,
            )
            self._finish(chain)
            if order.status == NormalizedOrderStatus.FILLED:
                try:
                    self._handle_order_filled(chain, order)
                except Exception as e:
                    logger.error(
                        "Failed to apply order fill to position",
                        order_id=chain.order_id,
                        error=str(e),
                    )
            return False

        return not self._ceiling_reached(chain)

    def _ceiling_reached(self, chain: _TrackingChain) -> bool:
        """Apply the market-order poll ceiling; stops the chain when hit."""
        if chain.order_kind != OrderKind.MARKET:
            return False
        if chain.poll_count < self._config.max_poll_attempts:
            return False
        logger.warning(
            "Max poll attempts reached, abandoning order tracking",
            order_id=chain.order_id,
            poll_count=chain.poll_count,
            max_poll_attempts=self._config.max_poll_attempts,
        )
        self._finish(chain)
        return True

    def _finish(self, chain: _TrackingChain) -> None:
        # A restarted chain may already own the slot
        if self._active.get(chain.order_id) is chain:
            del self._active[chain.order_id]

    # ------------------------------------------------------------------
    # Fill handoff
    # ------------------------------------------------------------------

    def _handle_order_filled(self, chain: _TrackingChain, order: NormalizedOrder) -> None:
        """Open/update the position for a filled order and record the execution.

        Replaying the same fill is a no-op: the broker order id is the
        idempotency key for executions.
        """
        if self._store.has_execution(order.order_id):
            logger.info("Fill already recorded, skipping", order_id=order.order_id)
            return

        now = utcnow()
        quantity = order.filled_quantity or order.quantity
        price = order.filled_avg_price or Decimal("0")
        executed_at = order.filled_at or now
        is_buy = order.side == OrderSide.BUY

        position = self._store.find_position_by_order(order.order_id)
        if position is None:
            position = self._store.create_position(
                PositionRecord(
                    owner_id=chain.owner_id,
                    symbol=order.symbol,
                    direction=PositionDirection.LONG if is_buy else PositionDirection.SHORT,
                    quantity=quantity,
                    avg_entry_price=price,
                    status=PositionStatus.OPEN,
                    broker=chain.broker.kind.value,
                    broker_order_ref=order.order_id,
                    last_synced_at=now,
                    last_execution_at=executed_at,
                    opened_at=executed_at,
                )
            )
            logger.info(
                "Position created from fill",
                position_id=position.position_id,
                order_id=order.order_id,
                symbol=order.symbol,
                quantity=str(quantity),
                avg_entry_price=str(price),
            )
        elif position.status == PositionStatus.CLOSED:
            logger.warning(
                "Fill observed for closed position, leaving it closed",
                position_id=position.position_id,
                order_id=order.order_id,
            )
        else:
            position = self._store.update_position(
                position.position_id,
                status=PositionStatus.OPEN,
                quantity=quantity,
                avg_entry_price=price,
                last_synced_at=now,
                last_execution_at=executed_at,
            )
            logger.info(
                "Position opened from fill",
                position_id=position.position_id,
                order_id=order.order_id,
                quantity=str(quantity),
                avg_entry_price=str(price),
            )

        self._store.create_execution(
            ExecutionRecord(
                position_id=position.position_id,
                type=ExecutionType.ENTRY if is_buy else ExecutionType.EXIT,
                quantity=quantity,
                price=price,
                broker_order_id=order.order_id,
                executed_at=executed_at,
            )
        )
