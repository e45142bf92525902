from tradewatch.services.order_tracker import OrderTracker
from tradewatch.services.position_sync import (
    PositionSync,
    SyncOutcome,
    compute_unrealized_pnl,
    evaluate_exit_trigger,
)

__all__ = [
    "OrderTracker",
    "PositionSync",
    "SyncOutcome",
    "compute_unrealized_pnl",
    "evaluate_exit_trigger",
]
