"""Tradewatch storage layer.

PersistenceStore is the contract the services depend on; TrackingStore
is the in-memory, JSON-lines-backed implementation.
"""

from tradewatch.storage.tracking_store import PersistenceStore, TrackingStore

__all__ = [
    "PersistenceStore",
    "TrackingStore",
]
