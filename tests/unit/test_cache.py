"""
Unit tests for the local write-through cache.

Tests cover:
- Loading on miss
- Write-through ordering
- Invalidation
- Load serialization
"""

import asyncio

import pytest

from chandb.storage.cache import LocalCache, TableSnapshot
from chandb.storage.codec import AssembledRow, RowLocation
from chandb.storage.reader import Cursor


def snapshot(*row_ids):
    rows = [AssembledRow(r, (int(r),), RowLocation(r, (r,))) for r in row_ids]
    return TableSnapshot.from_rows(rows, Cursor("c", after=row_ids[-1] if row_ids else None))


class TestLocalCache:
    """Tests for LocalCache."""

    def test_unloaded_table(self):
        """An unloaded table has no rows and ignores write-through."""
        cache = LocalCache()

        cache.put("t", "1", (1,), RowLocation("1", ("1",)))

        assert not cache.is_loaded("t")
        assert cache.scan_all("t") is None
        assert cache.get("t", "1") is None

    def test_write_through_keeps_order(self):
        """Updates keep a row's position; inserts go to the end."""
        cache = LocalCache()
        cache.replace("t", snapshot("1", "2"))

        cache.put("t", "1", (10,), RowLocation("1", ("1",)))
        cache.put("t", "3", (3,), RowLocation("3", ("3",)))
        cache.remove("t", "2")

        assert cache.scan_all("t") == [("1", (10,)), ("3", (3,))]
        assert cache.location("t", "3") == RowLocation("3", ("3",))

    def test_scan_returns_copy(self):
        """Callers can't mutate the snapshot through a scan result."""
        cache = LocalCache()
        cache.replace("t", snapshot("1"))

        rows = cache.scan_all("t")
        rows.clear()

        assert cache.scan_all("t") == [("1", (1,))]

    def test_invalidate(self):
        """Invalidation drops one table or all."""
        cache = LocalCache()
        cache.replace("a", snapshot("1"))
        cache.replace("b", snapshot("2"))

        cache.invalidate("a")
        assert not cache.is_loaded("a")
        assert cache.is_loaded("b")

        cache.invalidate()
        assert not cache.is_loaded("b")

    def test_advance_cursor(self):
        """The cursor moves independently of the rows."""
        cache = LocalCache()
        cache.replace("t", snapshot("1"))

        cache.advance("t", Cursor("c", after="9"))

        assert cache.cursor("t") == Cursor("c", after="9")
        assert cache.cursor("missing") is None

    def test_empty_snapshot(self):
        """A new table starts loaded and empty."""
        cache = LocalCache()
        cache.replace("t", TableSnapshot.empty("c"))

        assert cache.scan_all("t") == []
        assert cache.cursor("t") == Cursor("c")

    @pytest.mark.asyncio
    async def test_get_or_load(self):
        """A miss loads once; later scans are served from memory."""
        cache = LocalCache()
        loads = []

        async def loader():
            loads.append(1)
            return snapshot("1", "2")

        first = await cache.get_or_load("t", loader)
        second = await cache.get_or_load("t", loader)

        assert first == second == [("1", (1,)), ("2", (2,))]
        assert len(loads) == 1

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_scan(self):
        """Concurrent misses on one table run a single load."""
        cache = LocalCache()
        loads = []

        async def loader():
            loads.append(1)
            await asyncio.sleep(0)
            return snapshot("1")

        results = await asyncio.gather(*(cache.get_or_load("t", loader) for _ in range(5)))

        assert len(loads) == 1
        assert all(r == [("1", (1,))] for r in results)
