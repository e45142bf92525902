"""Position sync — periodic reconciliation of open positions with brokers.

Runs independently of OrderTracker: OrderTracker owns new orders, this
service owns every open position regardless of how it was created. Each
cycle:

1. selects a bounded batch of stale open positions (oldest sync first);
2. fetches each position's broker snapshot concurrently;
3. closes positions the broker no longer reports;
4. recomputes quantity and unrealized P&L;
5. records a note when a stop-loss or take-profit level is crossed.

Exit triggers are recorded, never acted on: no closing order is
submitted and the position stays open until the broker stops reporting
it.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from tradewatch.config.connections import ConnectionRegistry
from tradewatch.config.settings import PositionSyncConfig
from tradewatch.exceptions import BrokerConnectionError, PositionNotFoundError
from tradewatch.infra.broker import BrokerAdapter, BrokerFactory, create_broker_client
from tradewatch.schemas.broker import NormalizedPosition
from tradewatch.schemas.enums import (
    ExitTrigger,
    NoteType,
    PositionDirection,
    PositionStatus,
)
from tradewatch.schemas.records import PositionRecord, utcnow
from tradewatch.storage.tracking_store import PersistenceStore

logger = structlog.get_logger()

EXTERNAL_CLOSE_REASON = "Position closed at broker"


class SyncOutcome(str, Enum):
    """Result of syncing one position."""
    SYNCED = "synced"
    CLOSED = "closed"      # broker no longer reports the position
    SKIPPED = "skipped"    # another sync for the position is in flight
    FAILED = "failed"


def compute_unrealized_pnl(
    direction: PositionDirection,
    avg_entry_price: Decimal,
    current_price: Decimal,
    quantity: Decimal,
) -> Decimal:
    """(price - entry) * qty for longs, sign-flipped for shorts."""
    if direction == PositionDirection.LONG:
        return (current_price - avg_entry_price) * quantity
    return (avg_entry_price - current_price) * quantity


def evaluate_exit_trigger(
    direction: PositionDirection,
    price: Decimal,
    stop_loss: Decimal | None,
    take_profit: Decimal | None,
) -> ExitTrigger | None:
    """Return the exit trigger crossed at price, stop-loss taking precedence."""
    is_long = direction == PositionDirection.LONG

    if stop_loss is not None:
        if (is_long and price <= stop_loss) or (not is_long and price >= stop_loss):
            return ExitTrigger.STOP_LOSS

    if take_profit is not None:
        if (is_long and price >= take_profit) or (not is_long and price <= take_profit):
            return ExitTrigger.TAKE_PROFIT

    return None


class PositionSync:
    """Reconciles open positions with their brokers on a fixed cycle.

    Concurrency:
    - a cycle syncs at most max_concurrent_syncs positions at once;
    - a position id in _active_syncs is never synced a second time
      concurrently (cyclic pass vs. sync_position_now);
    - stop() halts scheduling; in-flight syncs finish on their own.

    All operations are async and run on the caller's event loop.
    """

    def __init__(
        self,
        store: PersistenceStore,
        connections: ConnectionRegistry,
        config: PositionSyncConfig | None = None,
        *,
        broker_factory: BrokerFactory = create_broker_client,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the syncer.

        Args:
            store: Persistence store holding positions and notes.
            connections: Registry resolving owner/broker to credentials.
            config: Cycle settings; defaults to PositionSyncConfig().
            broker_factory: Builds a BrokerAdapter from (broker, credentials).
            clock: Returns the current UTC time (injectable for tests).
            sleep: Awaitable delay between cycles (injectable for tests).
        """
        self._store = store
        self._connections = connections
        self._config = config or PositionSyncConfig()
        self._broker_factory = broker_factory
        self._clock = clock
        self._sleep = sleep

        self._running = False
        self._loop_task: asyncio.Task | None = None
        self._cycle_tasks: set[asyncio.Task] = set()
        self._active_syncs: set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run one cycle now, then every sync_interval. Needs a running loop."""
        if self._running:
            logger.warning("Position sync already running")
            return

        # Raises RuntimeError outside a loop, before any state changes
        loop = asyncio.get_running_loop()
        logger.info(
            "Starting position sync",
            sync_interval=self._config.sync_interval,
            max_concurrent_syncs=self._config.max_concurrent_syncs,
        )
        self._running = True
        self._loop_task = loop.create_task(
            self._schedule_cycles(), name="position-sync-scheduler"
        )

    def stop(self) -> None:
        """Stop scheduling cycles. In-flight syncs are left to finish."""
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
        self._loop_task = None
        self._running = False
        logger.info("Position sync stopped", active_syncs=len(self._active_syncs))

    async def drain(self) -> None:
        """Wait for cycles that are already in flight to finish."""
        if self._cycle_tasks:
            await asyncio.gather(*list(self._cycle_tasks), return_exceptions=True)

    async def _schedule_cycles(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            # Cycles run as their own tasks so stop() never aborts one
            task = loop.create_task(self.run_cycle(), name="position-sync-cycle")
            self._cycle_tasks.add(task)
            task.add_done_callback(self._cycle_tasks.discard)
            await self._sleep(self._config.sync_interval)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> dict[str, Any]:
        """Run one reconciliation pass over stale open positions.

        Returns:
            Summary dict:
            {
                "selected": int,
                "synced": int,
                "closed": int,
                "skipped": int,
                "failed": int,
                "position_ids": [str, ...],
            }
        """
        summary: dict[str, Any] = {
            "selected": 0,
            **{outcome.value: 0 for outcome in SyncOutcome},
            "position_ids": [],
        }

        if len(self._active_syncs) >= self._config.max_concurrent_syncs:
            logger.info(
                "Max concurrent syncs reached, skipping cycle",
                active_syncs=len(self._active_syncs),
            )
            return summary

        try:
            stale_before = self._clock() - timedelta(
                seconds=self._config.stale_position_threshold
            )
            positions = self._store.list_stale_open_positions(
                stale_before, limit=self._config.max_concurrent_syncs
            )
        except Exception as e:
            logger.error("Error selecting positions to sync", error=str(e))
            summary[SyncOutcome.FAILED.value] += 1
            return summary

        if not positions:
            return summary

        summary["selected"] = len(positions)
        summary["position_ids"] = [p.position_id for p in positions]
        logger.info("Syncing positions", count=len(positions))

        results = await asyncio.gather(
            *(self._sync_position(p) for p in positions),
            return_exceptions=True,
        )

        for position, result in zip(positions, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Position sync task raised",
                    position_id=position.position_id,
                    error=str(result),
                )
                summary[SyncOutcome.FAILED.value] += 1
            else:
                summary[result.value] += 1

        logger.info(
            "Position sync cycle complete",
            **{k: v for k, v in summary.items() if k != "position_ids"},
        )
        return summary

    async def sync_position_now(self, position_id: str) -> SyncOutcome:
        """Sync one position immediately, ignoring staleness.

        Raises:
            PositionNotFoundError: Unknown position id.
            BrokerConnectionError: Position has no broker assigned.
        """
        position = self._store.get_position(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        if not position.broker:
            raise BrokerConnectionError(f"Position {position_id} has no broker")

        return await self._sync_position(position)

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self._running,
            "active_syncs": len(self._active_syncs),
            "config": asdict(self._config),
        }

    # ------------------------------------------------------------------
    # Single position
    # ------------------------------------------------------------------

    async def _sync_position(self, position: PositionRecord) -> SyncOutcome:
        position_id = position.position_id
        if position_id in self._active_syncs:
            logger.debug("Position sync already in flight", position_id=position_id)
            return SyncOutcome.SKIPPED

        self._active_syncs.add(position_id)
        client: BrokerAdapter | None = None
        try:
            connection = self._connections.find_active(position.owner_id, position.broker)
            if connection is None:
                logger.warning(
                    "No active broker connection",
                    position_id=position_id,
                    owner_id=position.owner_id,
                    broker=position.broker,
                )
                return SyncOutcome.FAILED

            client = self._broker_factory(position.broker, connection.credentials)
            if not await client.connect():
                raise BrokerConnectionError(
                    f"Broker {position.broker} refused connection", broker=position.broker
                )

            snapshot = await client.get_position_normalized(position.symbol)
            if snapshot is None:
                self._handle_position_closed(position_id, EXTERNAL_CLOSE_REASON)
                return SyncOutcome.CLOSED

            updated = self._update_position(position_id, snapshot)
            if updated is not None:
                self._check_exit_triggers(updated, snapshot.current_price)
            return SyncOutcome.SYNCED

        except Exception as e:
            logger.error(
                "Error syncing position",
                position_id=position_id,
                symbol=position.symbol,
                broker=position.broker,
                error=str(e),
            )
            return SyncOutcome.FAILED

        finally:
            if client is not None:
                await self._close_client(client, position_id)
            self._active_syncs.discard(position_id)

    async def _close_client(self, client: BrokerAdapter, position_id: str) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.warning("Failed to close broker client", position_id=position_id, error=str(e))

    def _update_position(
        self, position_id: str, snapshot: NormalizedPosition
    ) -> PositionRecord | None:
        # Re-read: OrderTracker may have written since selection
        current = self._store.get_position(position_id)
        if current is None:
            return None

        pnl = compute_unrealized_pnl(
            current.direction,
            current.avg_entry_price,
            snapshot.current_price,
            snapshot.quantity,
        )
        updated = self._store.update_position(
            position_id,
            quantity=snapshot.quantity,
            unrealized_pnl=pnl,
            last_synced_at=self._clock(),
        )

        logger.info(
            "Position synced",
            position_id=position_id,
            symbol=snapshot.symbol,
            current_price=str(snapshot.current_price),
            quantity=str(snapshot.quantity),
            unrealized_pnl=f"{pnl:.2f}",
        )
        return updated

    def _check_exit_triggers(self, position: PositionRecord, price: Decimal) -> None:
        trigger = evaluate_exit_trigger(
            position.direction, price, position.stop_loss, position.take_profit
        )
        if trigger is None:
            return

        logger.warning(
            "Exit trigger detected",
            position_id=position.position_id,
            trigger=trigger.value,
            price=str(price),
        )
        self._store.append_note(
            position.position_id,
            NoteType.SYSTEM,
            f"{trigger.value} detected at {price}. Manual close required.",
        )

    def _handle_position_closed(self, position_id: str, reason: str) -> None:
        logger.info("Closing position", position_id=position_id, reason=reason)

        now = self._clock()
        self._store.update_position(
            position_id,
            status=PositionStatus.CLOSED,
            closed_at=now,
            last_synced_at=now,
        )
        self._store.append_note(position_id, NoteType.SYSTEM, reason)
