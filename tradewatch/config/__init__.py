"""Tradewatch configuration — environment settings and broker connections."""

from tradewatch.config.connections import BrokerConnection, ConnectionRegistry
from tradewatch.config.settings import (
    OrderTrackerConfig,
    PositionSyncConfig,
    TradewatchSettings,
    get_settings,
)

__all__ = [
    "BrokerConnection",
    "ConnectionRegistry",
    "OrderTrackerConfig",
    "PositionSyncConfig",
    "TradewatchSettings",
    "get_settings",
]
