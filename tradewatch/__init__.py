"""Tradewatch — order lifecycle tracking and position reconciliation.

Keeps a local mirror of broker orders and positions consistent with the
broker: an adaptive order poller drives freshly placed orders to a
terminal status, and a periodic reconciliation loop re-derives P&L,
detects externally closed positions, and records exit triggers.
"""

__version__ = "0.1.0"
