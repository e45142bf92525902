"""Engine factory — assembles the store, connections, tracker, and syncer.

Build the engine once at process start and pass it (or its services) to
whatever needs them. Nothing starts on import.

Usage:
    engine = build_engine()
    engine.start()                       # inside a running event loop
    engine.order_tracker.track_order(broker, order_id, owner_id, "market")
    ...
    await engine.shutdown()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tradewatch.config.connections import ConnectionRegistry
from tradewatch.config.settings import TradewatchSettings, get_settings
from tradewatch.infra.broker import BrokerFactory, create_broker_client
from tradewatch.services.order_tracker import OrderTracker
from tradewatch.services.position_sync import PositionSync
from tradewatch.storage.tracking_store import PersistenceStore, TrackingStore
from tradewatch.utils.logging import configure_logging, get_logger

logger = get_logger("engine")


@dataclass
class ReconciliationEngine:
    """The assembled order tracking and position reconciliation services."""

    settings: TradewatchSettings
    store: PersistenceStore
    connections: ConnectionRegistry
    order_tracker: OrderTracker
    position_sync: PositionSync

    def start(self) -> None:
        """Start the position reconciliation cycle."""
        self.position_sync.start()
        logger.info("Reconciliation engine started", connections=len(self.connections))

    async def shutdown(self) -> None:
        """Stop all tracking and sync scheduling, then let in-flight cycles finish."""
        self.order_tracker.stop_all()
        self.position_sync.stop()
        await self.position_sync.drain()
        logger.info("Reconciliation engine stopped")

    def status(self) -> dict[str, Any]:
        return {
            "active_order_tracking": self.order_tracker.get_active_tracking_count(),
            "position_sync": self.position_sync.get_status(),
        }


def build_engine(
    settings: TradewatchSettings | None = None,
    *,
    store: PersistenceStore | None = None,
    connections: ConnectionRegistry | None = None,
    broker_factory: BrokerFactory = create_broker_client,
    configure_logs: bool = False,
) -> ReconciliationEngine:
    """Build the engine from settings, allowing any dependency to be injected.

    Args:
        settings: Defaults to get_settings() (environment).
        store: Defaults to a TrackingStore at settings.store_path.
        connections: Defaults to loading settings.connections_path.
        broker_factory: Builds broker clients for position sync.
        configure_logs: Configure structlog from settings (process entry points).
    """
    settings = settings or get_settings()
    if configure_logs:
        configure_logging(json_output=settings.json_logs, level=settings.log_level)
    if store is None:
        store = TrackingStore(persist_path=settings.store_path)
    if connections is None:
        connections = ConnectionRegistry.load(settings.connections_path)

    engine = ReconciliationEngine(
        settings=settings,
        store=store,
        connections=connections,
        order_tracker=OrderTracker(store, settings.order_tracker),
        position_sync=PositionSync(
            store,
            connections,
            settings.position_sync,
            broker_factory=broker_factory,
        ),
    )

    logger.info(
        "Reconciliation engine built",
        persist_path=str(settings.store_path) if settings.store_path else None,
        connections=len(connections),
    )
    return engine
