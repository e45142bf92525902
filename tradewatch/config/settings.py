"""Centralized environment-based settings for Tradewatch.

Reads configuration from environment variables with sensible defaults.
Broker credentials are not read here; they live in the connections file
(see tradewatch.config.connections).

Usage:
    from tradewatch.config.settings import get_settings
    settings = get_settings()
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from tradewatch.utils.logging import LOG_LEVELS


@dataclass(frozen=True)
class OrderTrackerConfig:
    """Polling cadence for freshly placed orders. All durations in seconds."""

    # Market orders fill in seconds; poll tightly
    market_poll_interval: float = 1.0
    # Limit/stop orders: offsets from tracking start for fast accept/reject
    limit_confirm_offsets: tuple[float, ...] = (2.0, 5.0)
    limit_monitor_interval: float = 60.0
    # Market branch ceiling (~5 minutes at 1s)
    max_poll_attempts: int = 300


@dataclass(frozen=True)
class PositionSyncConfig:
    """Reconciliation cycle settings. All durations in seconds."""

    sync_interval: float = 60.0
    stale_position_threshold: float = 300.0
    # Batch size per cycle; caps concurrent broker calls
    max_concurrent_syncs: int = 3


@dataclass(frozen=True)
class TradewatchSettings:
    """Immutable application settings loaded from environment."""

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    # Storage
    data_dir: Path = Path("data")
    persist_storage: bool = True

    # Broker connections
    connections_path: Path = Path("config/connections.yaml")

    order_tracker: OrderTrackerConfig = field(default_factory=OrderTrackerConfig)
    position_sync: PositionSyncConfig = field(default_factory=PositionSyncConfig)

    @property
    def store_path(self) -> Path | None:
        """JSON-lines file for the tracking store, or None when not persisting."""
        if not self.persist_storage:
            return None
        return self.data_dir / "tracking.jsonl"


def _parse_offsets(raw: str, default: tuple[float, ...]) -> tuple[float, ...]:
    if not raw.strip():
        return default
    return tuple(float(part) for part in raw.split(",") if part.strip())


def get_settings() -> TradewatchSettings:
    """Load settings from environment variables.

    Environment variables (all optional):
        TRADEWATCH_LOG_LEVEL: Logging level; unknown names use INFO (default: INFO)
        TRADEWATCH_JSON_LOGS: Render logs as JSON (default: true)
        TRADEWATCH_DATA_DIR: Storage directory (default: data)
        TRADEWATCH_PERSIST_STORAGE: Enable JSONL persistence (default: true)
        TRADEWATCH_CONNECTIONS_PATH: Broker connections YAML
            (default: config/connections.yaml)
        TRADEWATCH_MARKET_POLL_INTERVAL: Market order poll interval (default: 1.0)
        TRADEWATCH_LIMIT_CONFIRM_OFFSETS: Comma-separated offsets (default: 2,5)
        TRADEWATCH_LIMIT_MONITOR_INTERVAL: Limit order monitor interval (default: 60)
        TRADEWATCH_MAX_POLL_ATTEMPTS: Market order poll ceiling (default: 300)
        TRADEWATCH_SYNC_INTERVAL: Position sync cycle interval (default: 60)
        TRADEWATCH_STALE_THRESHOLD: Position staleness threshold (default: 300)
        TRADEWATCH_MAX_CONCURRENT_SYNCS: Positions per cycle (default: 3)
    """
    def _bool(key: str, default: bool = False) -> bool:
        val = os.environ.get(key, "").lower()
        if val in ("1", "true", "yes"):
            return True
        if val in ("0", "false", "no"):
            return False
        return default

    log_level = os.environ.get("TRADEWATCH_LOG_LEVEL", "INFO").upper()
    tracker_defaults = OrderTrackerConfig()
    sync_defaults = PositionSyncConfig()

    order_tracker = OrderTrackerConfig(
        market_poll_interval=float(
            os.environ.get("TRADEWATCH_MARKET_POLL_INTERVAL", tracker_defaults.market_poll_interval)
        ),
        limit_confirm_offsets=_parse_offsets(
            os.environ.get("TRADEWATCH_LIMIT_CONFIRM_OFFSETS", ""),
            tracker_defaults.limit_confirm_offsets,
        ),
        limit_monitor_interval=float(
            os.environ.get("TRADEWATCH_LIMIT_MONITOR_INTERVAL", tracker_defaults.limit_monitor_interval)
        ),
        max_poll_attempts=int(
            os.environ.get("TRADEWATCH_MAX_POLL_ATTEMPTS", tracker_defaults.max_poll_attempts)
        ),
    )
    position_sync = PositionSyncConfig(
        sync_interval=float(
            os.environ.get("TRADEWATCH_SYNC_INTERVAL", sync_defaults.sync_interval)
        ),
        stale_position_threshold=float(
            os.environ.get("TRADEWATCH_STALE_THRESHOLD", sync_defaults.stale_position_threshold)
        ),
        max_concurrent_syncs=int(
            os.environ.get("TRADEWATCH_MAX_CONCURRENT_SYNCS", sync_defaults.max_concurrent_syncs)
        ),
    )

    return TradewatchSettings(
        log_level=log_level if log_level in LOG_LEVELS else "INFO",
        json_logs=_bool("TRADEWATCH_JSON_LOGS", True),
        data_dir=Path(os.environ.get("TRADEWATCH_DATA_DIR", "data")),
        persist_storage=_bool("TRADEWATCH_PERSIST_STORAGE", True),
        connections_path=Path(
            os.environ.get("TRADEWATCH_CONNECTIONS_PATH", "config/connections.yaml")
        ),
        order_tracker=order_tracker,
        position_sync=position_sync,
    )
