"""
Local write-through cache for ChanDB.

Holds, per table, a snapshot of every row (in log order) together with the
row's message location and the log cursor the snapshot was built up to.

Invariants:
    - A table is either fully loaded or absent; there are no partial
      snapshots, so a loaded snapshot answers scans on its own
    - Write-through updates keep a row's position; new rows go to the end
    - Snapshot state is only touched while holding the cache lock; readers
      get copies
    - The cache is advisory; the channel log is the source of truth

How to change safely:
    - Loads and mutations of one table are serialized through
      table_lock(); keep it that way or a load can miss a concurrent write
    - Keep invalidation cheap; it is the recovery path for every
      inconsistent state
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .codec import AssembledRow, Row, RowLocation
from .reader import Cursor

logger = logging.getLogger(__name__)


@dataclass
class TableSnapshot:
    """Cached state of one table.

    Attributes:
        rows: Row id -> row, in log order
        locations: Row id -> messages holding the row
        cursor: Log position the snapshot reflects
        loaded_at: Wall-clock time of the full load
    """
    rows: Dict[str, Row]
    locations: Dict[str, RowLocation]
    cursor: Cursor
    loaded_at: float = field(default_factory=time.time)

    @classmethod
    def empty(cls, channel_id: str) -> TableSnapshot:
        return cls(rows={}, locations={}, cursor=Cursor(channel_id))

    @classmethod
    def from_rows(cls, rows: List[AssembledRow], cursor: Cursor) -> TableSnapshot:
        return cls(
            rows={r.row_id: r.row for r in rows},
            locations={r.row_id: r.location for r in rows},
            cursor=cursor,
        )


class LocalCache:
    """Per-table row snapshots.

    Thread safety:
        Snapshot state is guarded by a threading lock. Loads and mutations
        of a table are serialized by a per-table asyncio lock.

    Example:
        >>> cache = LocalCache()
        >>> rows = await cache.get_or_load("users", load_users)
        >>> cache.put("users", row_id, row, location)
    """

    def __init__(self) -> None:
        self._snapshots: Dict[str, TableSnapshot] = {}
        self._table_locks: Dict[str, asyncio.Lock] = {}
        self._lock = threading.Lock()

    def table_lock(self, table: str) -> asyncio.Lock:
        """Lock serializing loads and mutations of one table."""
        with self._lock:
            lock = self._table_locks.get(table)
            if lock is None:
                lock = asyncio.Lock()
                self._table_locks[table] = lock
            return lock

    def is_loaded(self, table: str) -> bool:
        with self._lock:
            return table in self._snapshots

    def get(self, table: str, row_id: str) -> Optional[Row]:
        with self._lock:
            snapshot = self._snapshots.get(table)
            return snapshot.rows.get(row_id) if snapshot else None

    def location(self, table: str, row_id: str) -> Optional[RowLocation]:
        with self._lock:
            snapshot = self._snapshots.get(table)
            return snapshot.locations.get(row_id) if snapshot else None

    def cursor(self, table: str) -> Optional[Cursor]:
        with self._lock:
            snapshot = self._snapshots.get(table)
            return snapshot.cursor if snapshot else None

    def scan_all(self, table: str) -> Optional[List[Tuple[str, Row]]]:
        """All cached rows in log order, or None if the table isn't loaded."""
        with self._lock:
            snapshot = self._snapshots.get(table)
            return list(snapshot.rows.items()) if snapshot else None

    def put(self, table: str, row_id: str, row: Row, location: RowLocation) -> None:
        """Write a row through to a loaded snapshot (no-op when not loaded)."""
        with self._lock:
            snapshot = self._snapshots.get(table)
            if snapshot is None:
                return
            snapshot.rows[row_id] = row
            snapshot.locations[row_id] = location

    def remove(self, table: str, row_id: str) -> None:
        with self._lock:
            snapshot = self._snapshots.get(table)
            if snapshot is None:
                return
            snapshot.rows.pop(row_id, None)
            snapshot.locations.pop(row_id, None)

    def advance(self, table: str, cursor: Cursor) -> None:
        with self._lock:
            snapshot = self._snapshots.get(table)
            if snapshot is not None:
                snapshot.cursor = cursor

    def replace(self, table: str, snapshot: TableSnapshot) -> None:
        """Install a freshly loaded snapshot atomically."""
        with self._lock:
            self._snapshots[table] = snapshot
        logger.debug(
            f"Cached {len(snapshot.rows)} rows of table {table}",
            extra={"table": table, "rows": len(snapshot.rows), "cursor": str(snapshot.cursor)},
        )

    def invalidate(self, table: Optional[str] = None) -> None:
        """Drop one table's snapshot, or every snapshot."""
        with self._lock:
            if table is None:
                self._snapshots.clear()
            else:
                self._snapshots.pop(table, None)

    async def get_or_load(
        self,
        table: str,
        loader: Callable[[], Awaitable[TableSnapshot]],
    ) -> List[Tuple[str, Row]]:
        """Rows of a table, loading a full snapshot on a miss.

        Args:
            table: Table name
            loader: Coroutine factory performing a full log scan

        Returns:
            (row id, row) pairs in log order
        """
        rows = self.scan_all(table)
        if rows is not None:
            return rows

        async with self.table_lock(table):
            rows = self.scan_all(table)
            if rows is not None:
                return rows
            snapshot = await loader()
            self.replace(table, snapshot)
            return list(snapshot.rows.items())
