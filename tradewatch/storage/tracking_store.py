"""TrackingStore — durable order mirror, positions, executions, and notes.

PersistenceStore defines the operations the engine needs; TrackingStore
implements them in memory with optional JSON-lines persistence. Every
write appends a full record snapshot to the log; loading replays the log
so the last write per key wins.
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from tradewatch.exceptions import PositionNotFoundError
from tradewatch.schemas.enums import NoteType, PositionStatus
from tradewatch.schemas.records import (
    ExecutionRecord,
    OrderRecord,
    PositionNote,
    PositionRecord,
)

logger = structlog.get_logger()


class PersistenceStore(ABC):
    """Operations the tracker and syncer require from durable storage."""

    # Orders
    @abstractmethod
    def upsert_order(self, record: OrderRecord) -> OrderRecord:
        """Create or update the order mirror keyed by broker order id."""

    @abstractmethod
    def get_order(self, broker_order_id: str) -> OrderRecord | None: ...

    # Executions
    @abstractmethod
    def create_execution(self, record: ExecutionRecord) -> bool:
        """Append an execution. Returns False if the id already exists."""

    @abstractmethod
    def has_execution(self, broker_order_id: str) -> bool: ...

    @abstractmethod
    def executions_for(self, position_id: str) -> list[ExecutionRecord]: ...

    # Positions
    @abstractmethod
    def create_position(self, record: PositionRecord) -> PositionRecord: ...

    @abstractmethod
    def get_position(self, position_id: str) -> PositionRecord | None: ...

    @abstractmethod
    def find_position_by_order(self, broker_order_id: str) -> PositionRecord | None: ...

    @abstractmethod
    def update_position(self, position_id: str, **fields: Any) -> PositionRecord:
        """Apply a partial update and return the new record."""

    @abstractmethod
    def list_stale_open_positions(
        self, stale_before: datetime, limit: int
    ) -> list[PositionRecord]:
        """Open positions with a broker whose last sync is missing or older
        than stale_before, never-synced first then oldest first."""

    # Notes
    @abstractmethod
    def append_note(
        self, position_id: str, note_type: NoteType, content: str
    ) -> PositionNote: ...

    @abstractmethod
    def notes_for(self, position_id: str) -> list[PositionNote]: ...


class TrackingStore(PersistenceStore):
    """In-memory PersistenceStore with optional JSON-lines persistence.

    Thread-safe. Returned records are copies; mutate through the store.
    """

    def __init__(self, persist_path: Path | None = None) -> None:
        self._lock = threading.RLock()
        self._orders: dict[str, OrderRecord] = {}
        self._positions: dict[str, PositionRecord] = {}
        self._executions: dict[str, ExecutionRecord] = {}
        self._notes: list[PositionNote] = []

        # Secondary indexes
        self._executions_by_order: dict[str, list[str]] = {}
        self._positions_by_order: dict[str, str] = {}

        self._persist_path = persist_path
        if persist_path and persist_path.exists():
            self._load_from_disk()

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def upsert_order(self, record: OrderRecord) -> OrderRecord:
        with self._lock:
            existing = self._orders.get(record.broker_order_id)
            if existing is None:
                stored = replace(record)
                created = True
            else:
                stored = replace(
                    existing,
                    **{name: getattr(record, name) for name in OrderRecord.MUTABLE_FIELDS},
                )
                created = False

            self._orders[stored.broker_order_id] = stored
            self._persist("order", stored.to_dict())

            logger.debug(
                "Order upserted",
                broker_order_id=stored.broker_order_id,
                status=stored.status.value,
                created=created,
            )
            return replace(stored)

    def get_order(self, broker_order_id: str) -> OrderRecord | None:
        with self._lock:
            record = self._orders.get(broker_order_id)
            return replace(record) if record else None

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def create_execution(self, record: ExecutionRecord) -> bool:
        with self._lock:
            if record.execution_id in self._executions:
                return False
            self._index_execution(record)
            self._persist("execution", record.to_dict())

            logger.debug(
                "Execution recorded",
                execution_id=record.execution_id,
                position_id=record.position_id,
                broker_order_id=record.broker_order_id,
            )
            return True

    def has_execution(self, broker_order_id: str) -> bool:
        with self._lock:
            return bool(self._executions_by_order.get(broker_order_id))

    def executions_for(self, position_id: str) -> list[ExecutionRecord]:
        with self._lock:
            results = [e for e in self._executions.values() if e.position_id == position_id]
            results.sort(key=lambda e: e.executed_at)
            return results

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def create_position(self, record: PositionRecord) -> PositionRecord:
        with self._lock:
            stored = replace(record)
            self._index_position(stored)
            self._persist("position", stored.to_dict())

            logger.debug(
                "Position created",
                position_id=stored.position_id,
                symbol=stored.symbol,
                status=stored.status.value,
            )
            return replace(stored)

    def get_position(self, position_id: str) -> PositionRecord | None:
        with self._lock:
            record = self._positions.get(position_id)
            return replace(record) if record else None

    def find_position_by_order(self, broker_order_id: str) -> PositionRecord | None:
        with self._lock:
            position_id = self._positions_by_order.get(broker_order_id)
            if position_id is None:
                return None
            return self.get_position(position_id)

    def update_position(self, position_id: str, **fields: Any) -> PositionRecord:
        with self._lock:
            existing = self._positions.get(position_id)
            if existing is None:
                raise PositionNotFoundError(position_id)
            # Raises TypeError on unknown field names
            updated = replace(existing, **fields)
            self._index_position(updated)
            self._persist("position", updated.to_dict())
            return replace(updated)

    def list_stale_open_positions(
        self, stale_before: datetime, limit: int
    ) -> list[PositionRecord]:
        with self._lock:
            candidates = [
                p for p in self._positions.values()
                if p.status == PositionStatus.OPEN
                and p.broker
                and (p.last_synced_at is None or p.last_synced_at < stale_before)
            ]
            candidates.sort(
                key=lambda p: (
                    p.last_synced_at is not None,
                    p.last_synced_at.timestamp() if p.last_synced_at else 0.0,
                )
            )
            return [replace(p) for p in candidates[:limit]]

    def all_positions(self) -> list[PositionRecord]:
        with self._lock:
            return [replace(p) for p in self._positions.values()]

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def append_note(
        self, position_id: str, note_type: NoteType, content: str
    ) -> PositionNote:
        note = PositionNote(position_id=position_id, note_type=note_type, content=content)
        with self._lock:
            self._notes.append(note)
            self._persist("note", note.to_dict())

        logger.info(
            "Position note added",
            position_id=position_id,
            note_type=note_type.value,
            content=content,
        )
        return note

    def notes_for(self, position_id: str) -> list[PositionNote]:
        with self._lock:
            return [n for n in self._notes if n.position_id == position_id]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _index_execution(self, record: ExecutionRecord) -> None:
        self._executions[record.execution_id] = record
        self._executions_by_order.setdefault(record.broker_order_id, []).append(
            record.execution_id
        )

    def _index_position(self, record: PositionRecord) -> None:
        self._positions[record.position_id] = record
        if record.broker_order_ref:
            self._positions_by_order[record.broker_order_ref] = record.position_id

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, kind: str, data: dict[str, Any]) -> None:
        """Append a single record snapshot to the JSON-lines file."""
        if not self._persist_path:
            return
        try:
            self._persist_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._persist_path, "a") as f:
                f.write(json.dumps({"kind": kind, "data": data}) + "\n")
        except OSError as exc:
            logger.error(
                "Failed to persist record",
                kind=kind,
                path=str(self._persist_path),
                error=str(exc),
            )

    def _load_from_disk(self) -> None:
        """Replay the JSON-lines file into memory."""
        count = 0
        try:
            with open(self._persist_path) as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    entry = json.loads(line)
                    kind, data = entry["kind"], entry["data"]
                    if kind == "order":
                        order = OrderRecord.from_dict(data)
                        self._orders[order.broker_order_id] = order
                    elif kind == "position":
                        self._index_position(PositionRecord.from_dict(data))
                    elif kind == "execution":
                        execution = ExecutionRecord.from_dict(data)
                        if execution.execution_id not in self._executions:
                            self._index_execution(execution)
                    elif kind == "note":
                        self._notes.append(PositionNote.from_dict(data))
                    else:
                        logger.warning("Unknown record kind in store log", kind=kind)
                        continue
                    count += 1
        except OSError as exc:
            logger.error(
                "Failed to load tracking store from disk",
                path=str(self._persist_path),
                error=str(exc),
            )
        logger.info("Tracking store loaded from disk", records=count)
